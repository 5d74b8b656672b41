"""
The certificate store: decoded certificates for the serving path, and the
background loop keeping ACME certificates renewed.
"""
from collections.abc import Mapping
from datetime import timedelta

import attr
from twisted.application.internet import TimerService
from twisted.application.service import Service
from twisted.internet import defer
from twisted.logger import Logger
from txsni.snimap import SNIMap

from txproxyctl.certificates import (
    KIND_ACME,
    ServerCertificate,
    encode_pem_objects,
    generate_self_signed,
    )
from txproxyctl.util import clock_now


log = Logger()

ADMIN_HOSTS = (u'localhost', u'127.0.0.1', u'::1')


@attr.s(frozen=True)
class RenewalEntry(object):
    """
    An ACME certificate in use, and when it is due for renewal.
    """
    certificate_id = attr.ib()
    renew_at = attr.ib()


@attr.s(eq=False, hash=False)
class CertificateService(Service):
    """
    A service holding the certificates served by the proxy, and renewing the
    ones obtained through ACME.

    The serving path only reads `select_certificate` (or the `sni_mapping`
    built on it), which never waits: everything it needs is loaded whenever a
    new running snapshot is published.

    :param clock: ``IReactorTime`` provider; usually the reactor, when not
        testing.
    :param state: The `~txproxyctl.state.ProxyState` to follow.
    :param repository: The `~txproxyctl.interfaces.ICertificateRepository`.
    :param store: An `~txproxyctl.interfaces.IBlobStore` holding certificate
        material, keyed by certificate id.
    :param client: The `~txproxyctl.client.AcmeClient` used for renewals.
    :param ~datetime.timedelta check_interval: How often to look for
        certificates due for renewal.
    :param ~datetime.timedelta retry_interval: How long to wait before
        retrying a certificate after an attempt.
    """
    _clock = attr.ib()
    state = attr.ib()
    _repository = attr.ib()
    _store = attr.ib()
    _client = attr.ib()
    check_interval = attr.ib(default=timedelta(hours=1))
    retry_interval = attr.ib(default=timedelta(hours=12))

    admin_certificate = attr.ib(default=None, init=False)
    fallback_certificate = attr.ib(default=None, init=False)
    worklist = attr.ib(default=(), init=False)
    _cache = attr.ib(default=attr.Factory(dict), init=False)
    _issuing = attr.ib(default=attr.Factory(dict), init=False)
    _ephemeral = attr.ib(default=None, init=False)
    _unsubscribe = attr.ib(default=None, init=False)
    _rebuilding = attr.ib(default=attr.Factory(defer.DeferredLock), init=False)
    _timer_service = None
    # Deferred of the current renewal pass.
    _ongoing_check = None

    def _now(self):
        """
        Get the current time.
        """
        return clock_now(self._clock)

    def get_certificate(self, certificate_id, reload=False):
        """
        Get a decoded certificate, loading it from the store if it is not
        cached (or if ``reload`` is set).

        :raises KeyError: If there is nothing stored for ``certificate_id``.

        :rtype: ``Deferred[ServerCertificate]``
        """
        if not reload:
            cached = self._cache.get(certificate_id)
            if cached is not None:
                return defer.succeed(cached)

        def decoded(data):
            certificate = ServerCertificate.from_pem(certificate_id, data)
            self._cache[certificate_id] = certificate
            return certificate
        return self._store.get(certificate_id).addCallback(decoded)

    def select_certificate(self, server_name):
        """
        Choose the certificate to present for an SNI server name.

        :param str server_name: The name, or ``None`` / empty when the client
            sent none.

        :return: The `ServerCertificate`, or ``None`` if the connection should
            be refused.
        """
        if server_name:
            snapshot = self.state.snapshot
            if snapshot is not None:
                certificate_id = snapshot.sni.lookup(server_name)
                if certificate_id is not None:
                    certificate = self._cache.get(certificate_id)
                    if certificate is not None:
                        return certificate
        return self.fallback_certificate

    def sni_mapping(self):
        """
        A read-only mapping of server names to context factories, for
        ``txsni.snimap.SNIMap``.
        """
        return _SNIMapping(self)

    def context_factory(self):
        """
        A TLS context factory for the proxy's https listeners, presenting
        the certificate `select_certificate` chooses for each connection.

        :rtype: ``txsni.snimap.SNIMap``
        """
        return SNIMap(self.sni_mapping())

    def admin_options(self):
        """
        The context factory for the administrative listener.
        """
        return self.admin_certificate.options()

    def _ephemeral_admin_certificate(self):
        if self._ephemeral is None:
            self._ephemeral = generate_self_signed(
                list(ADMIN_HOSTS), self._now())
            log.warn(
                u'Serving the admin listener with an ephemeral self-signed '
                u'certificate.')
        return self._ephemeral

    @defer.inlineCallbacks
    def _resolve_admin_certificate(self, certificate_id):
        if certificate_id is not None:
            try:
                certificate = yield self.get_certificate(certificate_id)
                return certificate
            except Exception:
                log.failure(
                    u'Unable to load admin certificate {certificate_id}',
                    certificate_id=certificate_id)
        return self._ephemeral_admin_certificate()

    def rebuild(self, snapshot=None):
        """
        Rebuild everything derived from the running snapshot: the admin and
        fallback certificates, the cache, and the renewal worklist.

        Rebuilds run one at a time, in the order they were asked for, so the
        last snapshot published is the one the serving path ends up with.

        :rtype: ``Deferred``
        """
        if snapshot is None:
            snapshot = self.state.snapshot
        return self._rebuilding.run(self._rebuild, snapshot)

    @defer.inlineCallbacks
    def _rebuild(self, snapshot):
        admin = yield self._resolve_admin_certificate(
            snapshot.admin.certificate_id)

        fallback = None
        if snapshot.fallback_certificate_id is not None:
            try:
                fallback = yield self.get_certificate(
                    snapshot.fallback_certificate_id)
            except Exception:
                log.failure(
                    u'Unable to load fallback certificate {certificate_id}',
                    certificate_id=snapshot.fallback_certificate_id)

        referenced = snapshot.certificate_ids
        worklist = []
        for certificate_id in sorted(referenced):
            try:
                certificate = yield self.get_certificate(certificate_id)
            except Exception:
                log.failure(
                    u'Unable to load certificate {certificate_id}',
                    certificate_id=certificate_id)
                continue
            try:
                record = yield self._repository.get(certificate_id)
            except KeyError:
                continue
            if record.kind == KIND_ACME:
                worklist.append(
                    RenewalEntry(certificate_id, certificate.renew_at))

        # Nothing is evicted until everything the snapshot needs is loaded.
        keep = set(referenced)
        keep.update(
            c.certificate_id for c in [admin, fallback] if c is not None)
        for certificate_id in list(self._cache):
            if certificate_id not in keep:
                del self._cache[certificate_id]
        self.admin_certificate = admin
        self.fallback_certificate = fallback
        self.worklist = tuple(worklist)
        log.info(
            u'Loaded {count} certificates for configuration revision '
            u'{revision}; {acme} renewed through ACME.',
            count=len(self._cache), revision=snapshot.revision,
            acme=len(worklist))

    def _due(self, entry, record, now):
        if entry.renew_at > now:
            return False
        return (
            record.last_attempt is None or
            now - record.last_attempt >= self.retry_interval)

    def check_renewals(self):
        """
        Renew every certificate in the worklist that is due.  Failures are
        logged, and retried on a later pass.

        :rtype: ``Deferred``
        """
        d = self._check_renewals()
        self._ongoing_check = d
        return d

    @defer.inlineCallbacks
    def _check_renewals(self):
        log.info('Starting scheduled check for certificates due for renewal.')
        now = self._now()
        renewed = 0
        for entry in self.worklist:
            try:
                record = yield self._repository.get(entry.certificate_id)
            except KeyError:
                continue
            if not self._due(entry, record, now):
                continue
            try:
                yield self.issue_certificate(record)
            except defer.CancelledError:
                raise
            except Exception:
                log.failure(
                    u'Error renewing certificate {certificate_id}',
                    certificate_id=entry.certificate_id)
            else:
                renewed += 1
        if renewed:
            yield self.rebuild()

    def issue_certificate(self, record):
        """
        Obtain a new certificate for an ACME certificate record now, and
        store it.

        ``last_attempt`` is recorded before the ACME server is contacted.  If
        issuing is already in progress for the record, a second issuing
        process will *not* be started.  Cancelling the returned ``Deferred``
        cancels the issuing.

        :rtype: ``Deferred[ServerCertificate]``
        """
        certificate_id = record.id

        def finish(result):
            _, waiting = self._issuing.pop(certificate_id)
            for d in waiting:
                d.callback(result)

        # d_issue is assigned below, in the conditional, since we may be
        # creating it or using the existing one.
        d = defer.Deferred(lambda _: d_issue.cancel())
        if certificate_id in self._issuing:
            d_issue, waiting = self._issuing[certificate_id]
            waiting.append(d)
        else:
            d_issue = self._issue_certificate(record)
            waiting = [d]
            self._issuing[certificate_id] = (d_issue, waiting)
            # Add the callback afterwards in case the client isn't actually
            # async.
            d_issue.addBoth(finish)
        return d

    @defer.inlineCallbacks
    def _issue_certificate(self, record):
        attempted = attr.evolve(record, last_attempt=self._now())
        yield self._repository.save(attempted)
        log.info(
            u'Requesting a certificate for {hosts!r}.',
            hosts=[h.host for h in record.hosts])
        objects = yield self._client.request_certificate(attempted)
        yield self._store.store(record.id, encode_pem_objects(objects))
        certificate = yield self.get_certificate(record.id, reload=True)
        log.info(
            u'Stored certificate {certificate_id}, valid until '
            u'{not_after}.',
            certificate_id=record.id, not_after=certificate.not_after)
        return certificate

    @defer.inlineCallbacks
    def purge_certificate(self, certificate_id):
        """
        Delete a certificate: its record, its material and its cache entry.
        """
        yield self._repository.delete(certificate_id)
        yield self._store.delete(certificate_id)
        self._cache.pop(certificate_id, None)
        self.worklist = tuple(
            e for e in self.worklist if e.certificate_id != certificate_id)

    def trigger_renewal(self):
        """
        Run a renewal pass now rather than waiting for the next one, unless
        one is already running.
        """
        if self._ongoing_check is not None and not self._ongoing_check.called:
            return
        self._timer_check()

    def _timer_check(self):
        def failed(f):
            if f.check(defer.CancelledError):
                return None
            log.failure(
                u'Error in scheduled certificate renewal check.', f)
        return self.check_renewals().addErrback(failed)

    def startService(self):
        """
        Follow the running snapshot and start the renewal loop.
        """
        Service.startService(self)
        self._unsubscribe = self.state.subscribe(self.rebuild)
        self._timer_service = TimerService(
            self.check_interval.total_seconds(), self._timer_check)
        self._timer_service.clock = self._clock
        self._timer_service.startService()

    def stopService(self):
        Service.stopService(self)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for d_issue, _ in list(self._issuing.values()):
            d_issue.cancel()
        if self._ongoing_check is not None:
            self._ongoing_check.cancel()
        if self._timer_service is None:
            return defer.succeed(None)
        d = self._timer_service.stopService()
        self._timer_service = None
        return d


class _SNIMapping(Mapping):
    """
    Server names to context factories, as expected by
    ``txsni.snimap.SNIMap``; ``DEFAULT`` (or ``None``) gives the fallback.
    """
    def __init__(self, service):
        self._service = service

    def __getitem__(self, server_name):
        if isinstance(server_name, bytes):
            server_name = server_name.decode('ascii', 'replace')
        if server_name == u'DEFAULT':
            server_name = None
        certificate = self._service.select_certificate(server_name)
        if certificate is None:
            raise KeyError(server_name)
        return certificate.options()

    def __iter__(self):
        snapshot = self._service.state.snapshot
        if snapshot is None:
            return iter(())
        return iter([b.host for b in snapshot.bindings])

    def __len__(self):
        snapshot = self._service.state.snapshot
        if snapshot is None:
            return 0
        return len(snapshot.bindings)


__all__ = ['CertificateService', 'RenewalEntry', 'ADMIN_HOSTS']
