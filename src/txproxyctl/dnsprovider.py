"""
DNS providers supplied by the operator as Python source.

A provider script defines two functions::

    def create_record(domain, value):
        ...
        return True

    def delete_record(domain, value):
        ...
        return True

which publish or remove the ``dns-01`` TXT record for ``domain``.  They may
block; they are run in a private worker thread.
"""
import traceback
from threading import Thread

import attr
from twisted._threads import pool
from twisted.internet.defer import Deferred, succeed
from twisted.logger import Logger
from twisted.python.failure import Failure
from zope.interface import implementer

from txproxyctl.errors import DNSProviderCompileError
from txproxyctl.interfaces import IDNSProvider
from txproxyctl.util import const


REQUIRED_FUNCTIONS = (u'create_record', u'delete_record')


def _daemon_thread(*a, **kw):
    """
    Create a `threading.Thread`, but always set ``daemon``.
    """
    thread = Thread(*a, **kw)
    thread.daemon = True
    return thread


def _defer_to_worker(deliver, worker, work, *args, **kwargs):
    """
    Run a task in a worker, delivering the result as a ``Deferred`` in the
    reactor thread.
    """
    deferred = Deferred()

    def wrapped_work():
        try:
            result = work(*args, **kwargs)
        except BaseException:
            f = Failure()
            deliver(lambda: deferred.errback(f))
        else:
            deliver(lambda: deferred.callback(result))
    worker.do(wrapped_work)
    return deferred


def _script_line(tb, filename):
    """
    The innermost line of the script in a traceback, or 1.
    """
    line = 1
    for frame, lineno in traceback.walk_tb(tb):
        if frame.f_code.co_filename == filename:
            line = lineno
    return line


def compile_script(provider_id, source):
    """
    Compile a provider script and pull out its two functions.

    :param str provider_id: Used to name the script in tracebacks.
    :param str source: The script.

    :raises ~txproxyctl.errors.DNSProviderCompileError: With ``Line N:``
        messages, if the script does not compile, fails when run, or does not
        define both functions.

    :return: The ``create_record`` and ``delete_record`` callables.
    """
    filename = u'<dns-provider {}>'.format(provider_id)
    try:
        code = compile(source, filename, 'exec')
    except SyntaxError as e:
        raise DNSProviderCompileError(
            provider_id, [u'Line {}: {}'.format(e.lineno or 1, e.msg)])
    namespace = {u'__name__': u'dns_provider'}
    try:
        exec(code, namespace)
    except Exception as e:
        raise DNSProviderCompileError(
            provider_id,
            [u'Line {}: {}: {}'.format(
                _script_line(e.__traceback__, filename),
                type(e).__name__, e)])
    missing = [
        name for name in REQUIRED_FUNCTIONS
        if not callable(namespace.get(name))]
    if missing:
        raise DNSProviderCompileError(
            provider_id,
            [u'Line 1: {} is not defined'.format(name) for name in missing])
    return tuple(namespace[name] for name in REQUIRED_FUNCTIONS)


@attr.s(hash=False)
@implementer(IDNSProvider)
class ScriptedDNSProvider(object):
    """
    A compiled provider script.

    ..  note:: Cancelling a call does not interrupt the script; its eventual
        result is discarded.
    """
    provider_id = attr.ib()
    _reactor = attr.ib(repr=False)
    _worker = attr.ib(repr=False)
    _create = attr.ib(repr=False)
    _delete = attr.ib(repr=False)

    def _defer(self, f, *args):
        """
        Run a function in the worker.
        """
        return _defer_to_worker(
            self._reactor.callFromThread, self._worker, f, *args
            ).addCallback(bool)

    def create_record(self, domain, value):
        return self._defer(self._create, domain, value)

    def delete_record(self, domain, value):
        return self._defer(self._delete, domain, value)


@attr.s(eq=False, hash=False)
class DNSProviderCompiler(object):
    """
    Compiles provider scripts and caches the resulting providers by id.

    Compilation failures are never cached; after a script is edited,
    `invalidate` must be called for the new version to be picked up.

    :param scripts: An `~txproxyctl.interfaces.IBlobStore` holding the
        scripts, keyed by provider id.
    :param reactor: An ``IReactorFromThreads`` provider.
    :param worker: The ``IWorker`` scripts run in; by default a single
        daemon thread.
    :param compile: Turns ``(provider_id, source)`` into the two provider
        functions.
    """
    log = Logger()

    _scripts = attr.ib()
    _reactor = attr.ib()
    _worker = attr.ib(
        default=attr.Factory(
            lambda: pool(const(1), threadFactory=_daemon_thread)))
    _compile = attr.ib(default=compile_script)
    _providers = attr.ib(default=attr.Factory(dict), init=False)

    def compile(self, provider_id, source):
        """
        Compile a script without caching it.

        :raises ~txproxyctl.errors.DNSProviderCompileError: If it does not
            compile.

        :rtype: `ScriptedDNSProvider`
        """
        create, delete = self._compile(provider_id, source)
        return ScriptedDNSProvider(
            provider_id=provider_id,
            reactor=self._reactor,
            worker=self._worker,
            create=create,
            delete=delete)

    def get_provider(self, provider_id):
        """
        Get the provider for an id, compiling its stored script if needed.

        :rtype: ``Deferred[ScriptedDNSProvider]``
        """
        provider = self._providers.get(provider_id)
        if provider is not None:
            return succeed(provider)

        def cb_compile(data):
            if isinstance(data, bytes):
                data = data.decode('utf-8')
            try:
                provider = self.compile(provider_id, data)
            except DNSProviderCompileError:
                self.log.failure(
                    'Compiling DNS provider {provider_id}',
                    provider_id=provider_id)
                raise
            self._providers[provider_id] = provider
            return provider

        return self._scripts.get(provider_id).addCallback(cb_compile)

    def invalidate(self, provider_id):
        """
        Drop the cached provider for an id.
        """
        self._providers.pop(provider_id, None)


__all__ = [
    'REQUIRED_FUNCTIONS', 'compile_script', 'ScriptedDNSProvider',
    'DNSProviderCompiler']
