import json

from twisted.python.filepath import FilePath
from twisted.python.url import URL
from twisted.trial.unittest import TestCase

from txproxyctl.config import (
    AcmeProvider, LETSENCRYPT, Settings, load_settings, settings_from_dict)
from txproxyctl.errors import ConfigurationError
from txproxyctl.urls import LETSENCRYPT_STAGING_DIRECTORY


EXAMPLE_DIRECTORY = u'https://acme.example.com/directory'


class AcmeProviderTests(TestCase):
    """
    `.AcmeProvider` validates its settings as it is built.
    """
    def test_defaults(self):
        provider = AcmeProvider(u'example', EXAMPLE_DIRECTORY)
        self.assertEqual(u'example', provider.name)
        self.assertEqual(
            URL.fromText(EXAMPLE_DIRECTORY), provider.directory_url)
        self.assertEqual((u'http-01', u'dns-01'), provider.challenges)
        self.assertIsNone(provider.staging_url)
        self.assertEqual(provider.directory_url, provider.url(staging=True))

    def test_staging(self):
        self.assertEqual(
            LETSENCRYPT_STAGING_DIRECTORY, LETSENCRYPT.url(staging=True))
        self.assertNotEqual(
            LETSENCRYPT_STAGING_DIRECTORY, LETSENCRYPT.url())

    def test_invalid_url(self):
        for value in [u'not a url', u'ftp://example.com/', 42]:
            with self.assertRaises(ConfigurationError):
                AcmeProvider(u'example', value)

    def test_challenges(self):
        """
        Unsupported challenge types are ignored, but at least one supported
        one is needed.
        """
        provider = AcmeProvider(
            u'example', EXAMPLE_DIRECTORY,
            challenges=[u'DNS-01', u'tls-alpn-01'])
        self.assertEqual((u'dns-01',), provider.challenges)
        with self.assertRaises(ConfigurationError):
            AcmeProvider(
                u'example', EXAMPLE_DIRECTORY, challenges=[u'tls-alpn-01'])

    def test_id_required(self):
        with self.assertRaises(ConfigurationError):
            AcmeProvider(u'', EXAMPLE_DIRECTORY)


class SettingsTests(TestCase):
    """
    `.Settings` and building it from a settings document.
    """
    def test_defaults(self):
        settings = Settings()
        self.assertEqual((LETSENCRYPT,), settings.providers)
        self.assertIs(LETSENCRYPT, settings.provider(u'letsencrypt'))
        self.assertFalse(settings.staging)
        self.assertTrue(settings.user_agent.startswith(u'txproxyctl/'))

    def test_unknown_provider(self):
        with self.assertRaises(ConfigurationError):
            Settings().provider(u'example')

    def test_duplicate_providers(self):
        with self.assertRaises(ConfigurationError) as cm:
            Settings(providers=[
                LETSENCRYPT, AcmeProvider(u'letsencrypt', EXAMPLE_DIRECTORY)])
        self.assertIn(u'letsencrypt', str(cm.exception))

    def test_from_dict(self):
        settings = settings_from_dict({
            u'providers': [
                {u'id': u'example',
                 u'directory_url': EXAMPLE_DIRECTORY,
                 u'contact_emails_optional': False}],
            u'certificate_dir': u'/var/lib/txproxyctl/certificates',
            u'staging': True})
        provider = settings.provider(u'example')
        self.assertFalse(provider.contact_emails_optional)
        self.assertEqual(
            FilePath(u'/var/lib/txproxyctl/certificates'),
            settings.certificate_dir)
        self.assertIsNone(settings.account_key_dir)
        self.assertTrue(settings.staging)

    def test_from_dict_invalid(self):
        """
        Unknown keys, missing provider keys and the wrong types are all
        rejected.
        """
        for mapping in [
                [],
                {u'bogus': 1},
                {u'providers': [u'letsencrypt']},
                {u'providers': [{u'id': u'example'}]},
                {u'providers': [
                    {u'id': u'example', u'directory_url': EXAMPLE_DIRECTORY,
                     u'bogus': 1}]}]:
            with self.assertRaises(ConfigurationError):
                settings_from_dict(mapping)


class LoadSettingsTests(TestCase):
    def setUp(self):
        self.path = FilePath(self.mktemp())

    def test_load(self):
        self.path.setContent(json.dumps({u'staging': True}).encode('utf-8'))
        self.assertTrue(load_settings(self.path).staging)

    def test_missing(self):
        with self.assertRaises(ConfigurationError):
            load_settings(self.path)

    def test_invalid_json(self):
        self.path.setContent(b'{"staging": ')
        with self.assertRaises(ConfigurationError):
            load_settings(self.path)
