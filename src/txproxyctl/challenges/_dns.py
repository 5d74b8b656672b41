"""
``dns-01`` challenge implementation.
"""
from twisted.internet.defer import inlineCallbacks, succeed
from twisted.logger import Logger
from zope.interface import implementer

from txproxyctl.errors import ConfigurationError, DNSRecordFailed
from txproxyctl.interfaces import IResponder


def _zone_apex(host):
    if host.startswith(u'*.'):
        return host[2:]
    return host


@implementer(IResponder)
class DNS01Responder(object):
    """
    A ``dns-01`` challenge responder publishing TXT records through the
    host's configured DNS provider.

    :param providers: Resolves provider ids to
        `~txproxyctl.interfaces.IDNSProvider`; usually a
        `~txproxyctl.dnsprovider.DNSProviderCompiler`.
    """
    challenge_type = u'dns-01'
    log = Logger()

    def __init__(self, providers):
        self._providers = providers
        self._records = {}

    @inlineCallbacks
    def start_responding(self, host, challenge, account_key):
        """
        Create the TXT record.

        :raises ~txproxyctl.errors.DNSRecordFailed: If the provider reports
            that it did not create the record.
        """
        if host.dns_provider_id is None:
            raise ConfigurationError(
                'No DNS provider configured for {}'.format(host.host))
        provider = yield self._providers.get_provider(host.dns_provider_id)
        domain = _zone_apex(host.host)
        value = challenge.validation(account_key)
        created = yield provider.create_record(domain, value)
        if not created:
            raise DNSRecordFailed(domain, value)
        self._records[(host.host, challenge.encode('token'))] = (
            provider, domain, value)

    def when_responded(self, host, challenge):
        return succeed(None)

    @inlineCallbacks
    def stop_responding(self, host, challenge, account_key):
        """
        Delete the TXT record created by `start_responding`.  A provider
        reporting that it did not delete the record is only warned about: the
        record has done its job either way.
        """
        record = self._records.pop(
            (host.host, challenge.encode('token')), None)
        if record is None:
            return
        provider, domain, value = record
        deleted = yield provider.delete_record(domain, value)
        if not deleted:
            self.log.warn(
                'DNS provider did not delete the dns-01 record for '
                '{domain}', domain=domain)
            return
        self.log.debug(
            'Deleted dns-01 record for {domain}', domain=domain)


__all__ = ['DNS01Responder']
