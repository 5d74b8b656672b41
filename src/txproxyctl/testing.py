"""
In-memory collaborators, for testing with txproxyctl and for embedders that
keep their state elsewhere.
"""
import attr
from twisted.internet.defer import fail, succeed
from zope.interface import implementer

from txproxyctl.certificates import KIND_ACME
from txproxyctl.interfaces import (
    IBlobStore,
    ICertificateRepository,
    IDNSProvider,
    IResponder,
    IRevisionRepository,
    )


def _lookup(mapping, key):
    try:
        return succeed(mapping[key])
    except KeyError:
        return fail()


@implementer(IBlobStore)
class MemoryStore(object):
    """
    A blob store that keeps everything in memory only.
    """
    def __init__(self, blobs=None):
        if blobs is None:
            self.blobs = {}
        else:
            self.blobs = dict(blobs)

    def get(self, key):
        return _lookup(self.blobs, key)

    def store(self, key, data):
        self.blobs[key] = data
        return succeed(None)

    def delete(self, key):
        self.blobs.pop(key, None)
        return succeed(None)


@implementer(IRevisionRepository)
class MemoryRevisionRepository(object):
    """
    Configuration revisions in a dict.

    :ivar int fail_transactions: Make this many upcoming calls to `transact`
        fail without changing anything.
    """
    def __init__(self, revisions=()):
        self.revisions = {r.revision: r for r in revisions}
        self._last_revision = max(self.revisions, default=0)
        self.fail_transactions = 0

    def get(self, revision):
        return _lookup(self.revisions, revision)

    def _running(self, below=None):
        running = [
            r for r in self.revisions.values()
            if r.is_running and (below is None or r.revision < below)]
        if not running:
            return None
        return max(running, key=lambda r: r.revision)

    def latest_running(self):
        return succeed(self._running())

    def previous_running(self, revision):
        return succeed(self._running(below=revision))

    def uncommitted(self):
        return succeed(sorted(
            (r for r in self.revisions.values() if r.is_candidate),
            key=lambda r: r.revision))

    def next_revision(self):
        self._last_revision += 1
        return succeed(self._last_revision)

    def transact(self, save=(), delete=()):
        if self.fail_transactions:
            self.fail_transactions -= 1
            return fail(RuntimeError('Transaction failed'))
        for revision in delete:
            self.revisions.pop(revision, None)
        for row in save:
            self.revisions[row.revision] = row
        return succeed(None)

    def running(self):
        """
        Every committed, unreverted revision.
        """
        return [r for r in self.revisions.values() if r.is_running]

    def candidates(self):
        """
        Every uncommitted, unreverted revision.
        """
        return [r for r in self.revisions.values() if r.is_candidate]


@implementer(ICertificateRepository)
class MemoryCertificateRepository(object):
    """
    Certificate records and ACME accounts in dicts.
    """
    def __init__(self, records=(), accounts=()):
        self.records = {r.id: r for r in records}
        self.accounts = {a.id: a for a in accounts}

    def get(self, certificate_id):
        return _lookup(self.records, certificate_id)

    def acme_certificates(self):
        return succeed([
            r for r in self.records.values() if r.kind == KIND_ACME])

    def save(self, record):
        self.records[record.id] = record
        return succeed(None)

    def delete(self, certificate_id):
        self.records.pop(certificate_id, None)
        return succeed(None)

    def get_account(self, account_id):
        return _lookup(self.accounts, account_id)

    def save_account(self, account):
        self.accounts[account.id] = account
        return succeed(None)

    def delete_account(self, account_id):
        self.accounts.pop(account_id, None)
        return succeed(None)


@implementer(IResponder)
@attr.s
class NullResponder(object):
    """
    A responder that does absolutely nothing.
    """
    challenge_type = attr.ib()

    def start_responding(self, host, challenge, account_key):
        return succeed(None)

    def when_responded(self, host, challenge):
        return succeed(None)

    def stop_responding(self, host, challenge, account_key):
        return succeed(None)


@implementer(IDNSProvider)
@attr.s
class FakeDNSProvider(object):
    """
    A DNS provider keeping its TXT records in a dict.

    :ivar bool result: What `create_record` reports.
    :ivar bool delete_result: What `delete_record` reports.
    """
    records = attr.ib(default=attr.Factory(dict))
    result = attr.ib(default=True)
    delete_result = attr.ib(default=True)
    calls = attr.ib(default=attr.Factory(list))

    def create_record(self, domain, value):
        self.calls.append((u'create', domain, value))
        if self.result:
            self.records.setdefault(domain, set()).add(value)
        return succeed(self.result)

    def delete_record(self, domain, value):
        self.calls.append((u'delete', domain, value))
        if self.delete_result:
            self.records.get(domain, set()).discard(value)
        return succeed(self.delete_result)


@attr.s
class StaticDNSProviders(object):
    """
    Resolves DNS provider ids from a dict, like
    `~txproxyctl.dnsprovider.DNSProviderCompiler` does from scripts.
    """
    providers = attr.ib(default=attr.Factory(dict))

    def get_provider(self, provider_id):
        return _lookup(self.providers, provider_id)


__all__ = [
    'MemoryStore', 'MemoryRevisionRepository',
    'MemoryCertificateRepository', 'NullResponder', 'FakeDNSProvider',
    'StaticDNSProviders']
