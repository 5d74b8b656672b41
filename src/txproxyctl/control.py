"""
Putting a control plane together from `~txproxyctl.config.Settings`.
"""
import attr
from twisted.application.service import MultiService

from txproxyctl.challenges import DNS01Responder, HTTP01Responder
from txproxyctl.client import AcmeClient
from txproxyctl.dnsprovider import DNSProviderCompiler
from txproxyctl.errors import ConfigurationError
from txproxyctl.revisions import ConfigRevisionManager
from txproxyctl.service import CertificateService
from txproxyctl.state import ProxyState
from txproxyctl.store import DirectoryStore


def _directory(settings, name):
    path = getattr(settings, name)
    if path is None:
        raise ConfigurationError('Setting {!r} is required'.format(name))
    return path


@attr.s(frozen=True)
class ControlPlane(object):
    """
    The long-lived objects of a control plane.

    :ivar http01: The `~txproxyctl.challenges.HTTP01Responder`; its
        ``resource`` belongs at ``/.well-known/acme-challenge`` on the plain
        HTTP listeners.
    :ivar service: A ``MultiService`` starting the revision manager, then the
        certificate service.
    """
    state = attr.ib()
    http01 = attr.ib()
    dns_providers = attr.ib()
    client = attr.ib()
    certificates = attr.ib()
    revisions = attr.ib()
    service = attr.ib()


def control_plane(reactor, settings, certificate_repository,
                  revision_repository, treq_client=None):
    """
    Build the control plane ``settings`` describe.

    Certificates are kept in ``certificate_dir`` as ``<id>.pem``, ACME
    account keys in ``account_key_dir`` as ``<id>.key`` and DNS provider
    scripts in ``dns_provider_dir`` as ``<id>.py``.

    :param reactor: Provides ``IReactorTime`` and ``IReactorFromThreads``.
    :param ~txproxyctl.config.Settings settings: The settings.
    :param certificate_repository: The embedder's
        `~txproxyctl.interfaces.ICertificateRepository`.
    :param revision_repository: The embedder's
        `~txproxyctl.interfaces.IRevisionRepository`.
    :param treq_client: The ``treq.client.HTTPClient`` for talking to ACME
        providers, or ``None`` to construct one.

    :raises ~txproxyctl.errors.ConfigurationError: If one of the directories
        is not configured.

    :rtype: `ControlPlane`
    """
    certificate_dir = _directory(settings, 'certificate_dir')
    account_key_dir = _directory(settings, 'account_key_dir')
    dns_provider_dir = _directory(settings, 'dns_provider_dir')

    state = ProxyState()
    http01 = HTTP01Responder(reactor)
    dns_providers = DNSProviderCompiler(
        DirectoryStore(dns_provider_dir, extension=u'.py'), reactor)
    client = AcmeClient(
        clock=reactor,
        providers=settings.providers,
        repository=certificate_repository,
        account_keys=DirectoryStore(account_key_dir, extension=u'.key'),
        responders=[http01, DNS01Responder(dns_providers)],
        treq_client=treq_client,
        staging=settings.staging,
        user_agent=settings.user_agent)
    certificates = CertificateService(
        clock=reactor,
        state=state,
        repository=certificate_repository,
        store=DirectoryStore(certificate_dir),
        client=client)
    revisions = ConfigRevisionManager(
        clock=reactor, repository=revision_repository, state=state)

    service = MultiService()
    revisions.setServiceParent(service)
    certificates.setServiceParent(service)
    return ControlPlane(
        state=state,
        http01=http01,
        dns_providers=dns_providers,
        client=client,
        certificates=certificates,
        revisions=revisions,
        service=service)


__all__ = ['ControlPlane', 'control_plane']
