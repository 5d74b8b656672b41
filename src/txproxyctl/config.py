"""
Settings: the ACME providers and where keys and certificates are kept.

Settings are read from a JSON document such as::

    {
        "providers": [
            {"id": "letsencrypt",
             "name": "Let's Encrypt",
             "directory_url": "https://acme-v02.api.letsencrypt.org/directory",
             "staging_url":
                 "https://acme-staging-v02.api.letsencrypt.org/directory",
             "challenges": ["http-01", "dns-01"],
             "contact_emails_optional": true}
        ],
        "certificate_dir": "/var/lib/txproxyctl/certificates",
        "account_key_dir": "/var/lib/txproxyctl/accounts",
        "dns_provider_dir": "/var/lib/txproxyctl/dns-providers",
        "staging": false
    }

When ``providers`` is missing, Let's Encrypt is the only provider.
"""
import json

import attr
from twisted.python.filepath import FilePath
from twisted.python.url import URL

from txproxyctl import __version__
from txproxyctl.certificates import CHALLENGE_DNS_01, CHALLENGE_HTTP_01
from txproxyctl.errors import ConfigurationError
from txproxyctl.urls import (
    LETSENCRYPT_DIRECTORY,
    LETSENCRYPT_STAGING_DIRECTORY,
    )


SUPPORTED_CHALLENGES = (CHALLENGE_HTTP_01, CHALLENGE_DNS_01)


def _url(value):
    if isinstance(value, URL):
        return value
    try:
        url = URL.fromText(value)
    except (TypeError, AttributeError, ValueError):
        raise ConfigurationError('Invalid URL: {!r}'.format(value))
    if url.scheme not in (u'http', u'https') or not url.host:
        raise ConfigurationError('Invalid URL: {!r}'.format(value))
    return url


def _optional_url(value):
    if value is None:
        return None
    return _url(value)


def _challenges(values):
    challenges = tuple(
        c.lower() for c in values if c.lower() in SUPPORTED_CHALLENGES)
    if not challenges:
        raise ConfigurationError(
            'At least one of {} challenges is required, got {!r}'.format(
                u', '.join(SUPPORTED_CHALLENGES), values))
    return challenges


@attr.s(frozen=True)
class AcmeProvider(object):
    """
    An ACME certificate authority.

    :ivar directory_url: ``twisted.python.url.URL`` of its directory.
    :ivar staging_url: The directory used when testing, if it has one.
    :ivar challenges: The challenge types it supports.
    :ivar bool contact_emails_optional: Whether accounts may be created
        without a contact email address.
    """
    id = attr.ib()
    directory_url = attr.ib(converter=_url)
    name = attr.ib(default=None)
    staging_url = attr.ib(default=None, converter=_optional_url)
    challenges = attr.ib(default=SUPPORTED_CHALLENGES, converter=_challenges)
    contact_emails_optional = attr.ib(default=True)

    def __attrs_post_init__(self):
        if not self.id:
            raise ConfigurationError('ACME provider id is required')
        if self.name is None:
            object.__setattr__(self, 'name', self.id)

    def url(self, staging=False):
        """
        The directory to use.
        """
        if staging and self.staging_url is not None:
            return self.staging_url
        return self.directory_url


LETSENCRYPT = AcmeProvider(
    id=u'letsencrypt',
    name=u"Let's Encrypt",
    directory_url=LETSENCRYPT_DIRECTORY,
    staging_url=LETSENCRYPT_STAGING_DIRECTORY)


def _file_path(value):
    if value is None or isinstance(value, FilePath):
        return value
    return FilePath(value)


@attr.s(frozen=True)
class Settings(object):
    """
    Everything the control plane needs to know at startup.
    """
    providers = attr.ib(default=(LETSENCRYPT,), converter=tuple)
    certificate_dir = attr.ib(default=None, converter=_file_path)
    account_key_dir = attr.ib(default=None, converter=_file_path)
    dns_provider_dir = attr.ib(default=None, converter=_file_path)
    user_agent = attr.ib(default=u'txproxyctl/{}'.format(__version__))
    staging = attr.ib(default=False)

    def __attrs_post_init__(self):
        ids = [p.id for p in self.providers]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ConfigurationError(
                'Duplicate ACME provider ids: {}'.format(
                    u', '.join(duplicates)))

    def provider(self, provider_id):
        """
        Look up a provider by id.

        :raises ~txproxyctl.errors.ConfigurationError: If there is no such
            provider.
        """
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        raise ConfigurationError(
            'Unknown ACME provider {!r}'.format(provider_id))


_PROVIDER_KEYS = {
    u'id', u'name', u'directory_url', u'staging_url', u'challenges',
    u'contact_emails_optional'}
_SETTINGS_KEYS = {
    u'providers', u'certificate_dir', u'account_key_dir',
    u'dns_provider_dir', u'user_agent', u'staging'}


def _provider_from_dict(mapping):
    if not isinstance(mapping, dict):
        raise ConfigurationError(
            'ACME provider must be an object, got {!r}'.format(mapping))
    unknown = set(mapping) - _PROVIDER_KEYS
    if unknown:
        raise ConfigurationError(
            'Unknown ACME provider settings: {}'.format(
                u', '.join(sorted(unknown))))
    for key in (u'id', u'directory_url'):
        if key not in mapping:
            raise ConfigurationError(
                'ACME provider setting {!r} is required'.format(key))
    return AcmeProvider(**mapping)


def settings_from_dict(mapping):
    """
    Build `Settings` from a parsed settings document.

    :raises ~txproxyctl.errors.ConfigurationError: If it is invalid.
    """
    if not isinstance(mapping, dict):
        raise ConfigurationError('Settings must be an object')
    unknown = set(mapping) - _SETTINGS_KEYS
    if unknown:
        raise ConfigurationError(
            'Unknown settings: {}'.format(u', '.join(sorted(unknown))))
    kwargs = dict(mapping)
    if u'providers' in kwargs:
        kwargs[u'providers'] = [
            _provider_from_dict(p) for p in kwargs[u'providers']]
    return Settings(**kwargs)


def load_settings(path):
    """
    Read `Settings` from a JSON file.

    :param ~twisted.python.filepath.FilePath path: The file.

    :raises ~txproxyctl.errors.ConfigurationError: If it can't be read or is
        invalid.
    """
    try:
        content = path.getContent()
    except (IOError, OSError) as e:
        raise ConfigurationError(
            'Unable to read settings from {}: {}'.format(path.path, e))
    try:
        mapping = json.loads(content.decode('utf-8'))
    except ValueError as e:
        raise ConfigurationError(
            'Invalid settings in {}: {}'.format(path.path, e))
    return settings_from_dict(mapping)


__all__ = [
    'SUPPORTED_CHALLENGES', 'AcmeProvider', 'LETSENCRYPT', 'Settings',
    'settings_from_dict', 'load_settings']
