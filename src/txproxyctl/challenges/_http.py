"""
``http-01`` challenge implementation.
"""
import attr
from twisted.internet.defer import CancelledError, Deferred, succeed
from twisted.web.resource import NoResource, Resource
from twisted.web.server import NOT_DONE_YET
from zope.interface import implementer

from txproxyctl.errors import AcmeTimeout
from txproxyctl.interfaces import IResponder


HTTP01_TIMEOUT = 2 * 60


@attr.s(eq=False, hash=False)
class _PendingChallenge(object):
    """
    A key authorization waiting to be fetched by the ACME server.
    """
    key_authorization = attr.ib()
    served = attr.ib(default=False)
    _waiters = attr.ib(default=attr.Factory(list))

    def signal(self):
        """
        Record that the key authorization was served.
        """
        self.served = True
        waiters, self._waiters = self._waiters, []
        for d in waiters:
            d.callback(None)

    def wait(self):
        if self.served:
            return succeed(None)
        d = Deferred(lambda d: self._waiters.remove(d))
        self._waiters.append(d)
        return d

    def cancel(self):
        waiters, self._waiters = self._waiters, []
        for d in waiters:
            d.errback(CancelledError())


@implementer(IResponder)
class HTTP01Responder(object):
    """
    An ``http-01`` challenge responder.

    Key authorizations are kept in memory, keyed by token; the HTTP listener
    serves them from `resource`, mounted at
    ``/.well-known/acme-challenge/``, or looks them up itself with
    `try_get`.

    :param clock: ``IReactorTime`` used for the wait deadline.
    :param float timeout: How long `when_responded` waits for the challenge
        to be fetched.
    """
    challenge_type = u'http-01'

    def __init__(self, clock, timeout=HTTP01_TIMEOUT):
        self._clock = clock
        self._timeout = timeout
        self._pending = {}
        self.resource = HTTP01Resource(self)

    def start_responding(self, host, challenge, account_key):
        """
        Publish the key authorization for the challenge's token.
        """
        token = challenge.encode('token')
        stale = self._pending.pop(token, None)
        if stale is not None:
            stale.cancel()
        self._pending[token] = _PendingChallenge(
            key_authorization=challenge.validation(
                account_key).encode('ascii'))
        return succeed(None)

    def try_get(self, token):
        """
        Look up the response for a token.

        :param str token: The token from the request path.

        :rtype: ``Optional[Tuple[bytes, Callable[[], None]]]``
        :return: The key authorization bytes to serve and a function to call
            once they were written, or ``None`` if the token is unknown.
        """
        pending = self._pending.get(token)
        if pending is None:
            return None
        return pending.key_authorization, pending.signal

    def when_responded(self, host, challenge):
        """
        Wait for the ACME server to fetch the key authorization.

        :raises ~txproxyctl.errors.AcmeTimeout: If it wasn't fetched within
            the timeout.
        """
        pending = self._pending.get(challenge.encode('token'))
        if pending is None:
            return succeed(None)

        def on_timeout(result, timeout):
            raise AcmeTimeout(
                u'Serving http-01 challenge for {}'.format(host.host),
                timeout)
        d = pending.wait()
        d.addTimeout(self._timeout, self._clock, onTimeoutCancel=on_timeout)
        return d

    def stop_responding(self, host, challenge, account_key):
        """
        Forget the challenge's key authorization.
        """
        pending = self._pending.pop(challenge.encode('token'), None)
        if pending is not None:
            pending.cancel()
        return succeed(None)


class HTTP01Resource(Resource):
    """
    Serves pending key authorizations at ``/<token>``.
    """
    def __init__(self, responder):
        Resource.__init__(self)
        self._responder = responder

    def getChild(self, path, request):
        found = self._responder.try_get(path.decode('ascii', 'replace'))
        if found is None:
            return NoResource()
        return _KeyAuthorization(*found)


class _KeyAuthorization(Resource):
    isLeaf = True

    def __init__(self, key_authorization, signal):
        Resource.__init__(self)
        self._key_authorization = key_authorization
        self._signal = signal

    def render_GET(self, request):
        request.setHeader(b'content-type', b'text/plain')
        request.write(self._key_authorization)
        self._signal()
        request.finish()
        return NOT_DONE_YET


__all__ = ['HTTP01Responder', 'HTTP01Resource', 'HTTP01_TIMEOUT']
