from datetime import datetime, timezone

from treq.testing import StubTreq
from twisted.internet.task import Clock
from twisted.python.filepath import FilePath
from twisted.trial.unittest import TestCase

from txproxyctl.certificates import generate_self_signed
from txproxyctl.config import AcmeProvider, Settings
from txproxyctl.control import control_plane
from txproxyctl.errors import ConfigurationError
from txproxyctl.test.doubles import FakeAcmeServer
from txproxyctl.testing import (
    MemoryCertificateRepository, MemoryRevisionRepository)


START = 1704067200


class ControlPlaneTests(TestCase):
    """
    `.control_plane` wires everything up from `.Settings`.
    """
    def setUp(self):
        self.clock = Clock()
        self.clock.advance(START)
        self.server = FakeAcmeServer(self.clock)
        self.treq = StubTreq(self.server)
        self.root = FilePath(self.mktemp())
        self.provider = AcmeProvider(
            id=u'fake',
            directory_url=u'https://acme.invalid/directory',
            staging_url=self.server.url(u'directory'))
        self.settings = Settings(
            providers=[self.provider],
            certificate_dir=self.root.child(u'certificates'),
            account_key_dir=self.root.child(u'accounts'),
            dns_provider_dir=self.root.child(u'dns'),
            staging=True)
        self.repository = MemoryCertificateRepository()
        self.plane = control_plane(
            self.clock, self.settings, self.repository,
            MemoryRevisionRepository(), treq_client=self.treq)

    def test_directories_required(self):
        for name in [u'certificate_dir', u'account_key_dir',
                     u'dns_provider_dir']:
            settings = Settings(**{
                key: self.root.child(key)
                for key in [u'certificate_dir', u'account_key_dir',
                            u'dns_provider_dir']
                if key != name})
            with self.assertRaises(ConfigurationError) as cm:
                control_plane(
                    self.clock, settings, self.repository,
                    MemoryRevisionRepository())
            self.assertIn(name, str(cm.exception))

    def test_services(self):
        """
        The revision manager starts before the certificate service, and both
        follow the same state.
        """
        self.assertEqual(
            [self.plane.revisions, self.plane.certificates],
            list(self.plane.service))
        self.assertIs(self.plane.state, self.plane.revisions.state)
        self.assertIs(self.plane.state, self.plane.certificates.state)

    def test_certificate_dir(self):
        """
        Certificates are read from ``<id>.pem`` in the certificate directory.
        """
        certificate = generate_self_signed(
            [u'example.com'],
            datetime.fromtimestamp(START, tz=timezone.utc),
            certificate_id=u'cert-1')
        self.settings.certificate_dir.makedirs()
        self.settings.certificate_dir.child(u'cert-1.pem').setContent(
            certificate.as_bytes())
        loaded = self.successResultOf(
            self.plane.certificates.get_certificate(u'cert-1'))
        self.assertEqual([u'example.com'], loaded.hosts)

    def test_account_keys(self):
        """
        Account keys are written to ``<id>.key`` in the account directory,
        after registering with the provider's staging directory.
        """
        d = self.plane.client.create_account(u'account-1', self.provider)
        for _ in range(10):
            self.treq.flush()
            if d.called:
                break
            self.clock.advance(1)
        account = self.successResultOf(d)
        self.assertIn(account.url, self.server.accounts)
        self.assertTrue(
            self.settings.account_key_dir.child(u'account-1.key').isfile())
