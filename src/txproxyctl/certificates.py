"""
Certificate records and the decoded certificate material served by the proxy.

A certificate record describes where a certificate comes from; its key and
chain live in a blob store under the record's id, as concatenated PEM
objects, and are decoded into a `ServerCertificate` on demand.
"""
import ipaddress
import uuid
from datetime import datetime, timedelta

import attr
import pem
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from OpenSSL import crypto
from twisted.internet.ssl import CertificateOptions

from txproxyctl.util import generate_private_key, private_key_bytes


KIND_CA = u'ca'
KIND_ISSUED = u'issued'
KIND_ACME = u'acme'
KIND_IMPORTED = u'imported'

CHALLENGE_HTTP_01 = u'http-01'
CHALLENGE_DNS_01 = u'dns-01'


@attr.s(frozen=True)
class CertificateAuthority(object):
    """
    A local certificate authority used to issue certificates.
    """
    kind = KIND_CA
    id = attr.ib()
    name = attr.ib()
    hidden = attr.ib(default=False)


@attr.s(frozen=True)
class IssuedCertificate(object):
    """
    A certificate issued by one of our certificate authorities.
    """
    kind = KIND_ISSUED
    id = attr.ib()
    name = attr.ib()
    hidden = attr.ib(default=False)
    issuer_id = attr.ib(default=None)


@attr.s(frozen=True)
class AcmeHost(object):
    """
    One name on an ACME certificate, and how to prove control of it.

    :ivar str dns_provider_id: The DNS provider used for ``dns-01``.
    """
    host = attr.ib()
    challenge_type = attr.ib(default=CHALLENGE_HTTP_01)
    dns_provider_id = attr.ib(default=None)


@attr.s(frozen=True)
class AcmeCertificate(object):
    """
    A certificate obtained, and kept renewed, through an ACME account.

    ``last_attempt`` is the time of the last issuance attempt; it is written
    before each attempt is made.
    """
    kind = KIND_ACME
    id = attr.ib()
    name = attr.ib()
    hidden = attr.ib(default=False)
    account_id = attr.ib(default=None)
    hosts = attr.ib(default=(), converter=tuple)
    last_attempt = attr.ib(default=None)


@attr.s(frozen=True)
class ImportedCertificate(object):
    """
    A certificate and key uploaded by the operator.
    """
    kind = KIND_IMPORTED
    id = attr.ib()
    name = attr.ib()
    hidden = attr.ib(default=False)


RECORD_TYPES = {
    cls.kind: cls
    for cls in [CertificateAuthority, IssuedCertificate, AcmeCertificate,
                ImportedCertificate]}


@attr.s(frozen=True)
class AcmeAccount(object):
    """
    A registered account with an ACME provider; its key is stored
    separately, under the account id.
    """
    id = attr.ib()
    provider_id = attr.ib()
    url = attr.ib()
    contact_emails = attr.ib(default=(), converter=tuple)


def record_to_json(record):
    """
    Project a certificate record onto a JSON-compatible dict, tagged with its
    kind.
    """
    jobj = {
        u'kind': record.kind,
        u'id': record.id,
        u'name': record.name,
        u'hidden': record.hidden,
    }
    if record.kind == KIND_ISSUED:
        jobj[u'issuer_id'] = record.issuer_id
    elif record.kind == KIND_ACME:
        jobj[u'account_id'] = record.account_id
        jobj[u'hosts'] = [attr.asdict(h) for h in record.hosts]
        jobj[u'last_attempt'] = (
            None if record.last_attempt is None
            else record.last_attempt.isoformat())
    elif record.kind not in (KIND_CA, KIND_IMPORTED):
        raise ValueError('Unknown certificate kind {!r}'.format(record.kind))
    return jobj


def record_from_json(jobj):
    """
    The inverse of `record_to_json`.

    :raises ValueError: if the kind is unknown.
    """
    kind = jobj.get(u'kind')
    common = dict(
        id=jobj[u'id'], name=jobj[u'name'], hidden=jobj.get(u'hidden', False))
    if kind == KIND_CA:
        return CertificateAuthority(**common)
    if kind == KIND_IMPORTED:
        return ImportedCertificate(**common)
    if kind == KIND_ISSUED:
        return IssuedCertificate(issuer_id=jobj.get(u'issuer_id'), **common)
    if kind == KIND_ACME:
        last_attempt = jobj.get(u'last_attempt')
        return AcmeCertificate(
            account_id=jobj.get(u'account_id'),
            hosts=[AcmeHost(**h) for h in jobj.get(u'hosts', [])],
            last_attempt=(
                None if last_attempt is None
                else datetime.fromisoformat(last_attempt)),
            **common)
    raise ValueError('Unknown certificate kind {!r}'.format(kind))


def renew_at(not_before, not_after):
    """
    When a certificate with the given validity window should be renewed.

    Certificates valid for 30 days or less are renewed half way through their
    lifetime, longer ones two thirds of the way through.

    :rtype: `~datetime.datetime`
    """
    validity = not_after - not_before
    if validity <= timedelta(days=30):
        return not_before + validity // 2
    return not_before + validity * 2 // 3


def encode_pem_objects(objects):
    """
    Concatenate :ref:`pem-objects` into the blob stored for a certificate.
    """
    return b''.join(o.as_bytes() for o in objects)


def _load_certificate(obj):
    return x509.load_pem_x509_certificate(obj.as_bytes(), default_backend())


def _public_bytes(public_key):
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo)


@attr.s(eq=False, hash=False)
class ServerCertificate(object):
    """
    Decoded certificate material: a private key, the certificate for that
    key, and any intermediate certificates.

    :ivar pem_objects: The PEM objects this was decoded from; encoding them
        again gives back the original bytes.
    :ivar chain: ``cryptography`` certificates, leaf first.
    """
    certificate_id = attr.ib()
    key = attr.ib(repr=False)
    chain = attr.ib(converter=tuple, repr=False)
    pem_objects = attr.ib(converter=tuple, repr=False)
    _options = attr.ib(default=None, init=False, repr=False)

    @classmethod
    def from_pem_objects(cls, certificate_id, objects):
        """
        Decode PEM objects holding exactly one private key, the certificate
        for that key, and zero or more chain certificates.

        :raises ValueError: if the objects do not form such a set.
        """
        keys = [o for o in objects if isinstance(o, pem.PrivateKey)]
        if len(keys) != 1:
            raise ValueError(
                'Expected exactly one private key, found {}'.format(len(keys)))
        key = serialization.load_pem_private_key(
            keys[0].as_bytes(), password=None, backend=default_backend())
        certificates = [
            _load_certificate(o) for o in objects
            if isinstance(o, pem.Certificate)]
        key_bytes = _public_bytes(key.public_key())
        leaves = [
            c for c in certificates
            if _public_bytes(c.public_key()) == key_bytes]
        if not leaves:
            raise ValueError('No certificate matches the private key')
        leaf = leaves[0]
        return cls(
            certificate_id=certificate_id,
            key=key,
            chain=[leaf] + [c for c in certificates if c is not leaf],
            pem_objects=objects)

    @classmethod
    def from_pem(cls, certificate_id, data):
        """
        Decode the blob stored for a certificate.
        """
        return cls.from_pem_objects(certificate_id, pem.parse(data))

    def as_bytes(self):
        return encode_pem_objects(self.pem_objects)

    @property
    def leaf(self):
        return self.chain[0]

    @property
    def hosts(self):
        """
        The DNS names (and IP addresses, as text) the leaf certificate is
        valid for.
        """
        try:
            san = self.leaf.extensions.get_extension_for_class(
                x509.SubjectAlternativeName).value
        except x509.ExtensionNotFound:
            return [
                a.value for a in
                self.leaf.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
        return (
            san.get_values_for_type(x509.DNSName) +
            [str(ip) for ip in san.get_values_for_type(x509.IPAddress)])

    @property
    def not_before(self):
        return self.leaf.not_valid_before_utc

    @property
    def not_after(self):
        return self.leaf.not_valid_after_utc

    @property
    def renew_at(self):
        return renew_at(self.not_before, self.not_after)

    @property
    def subject(self):
        return self.leaf.subject.rfc4514_string()

    @property
    def issuer(self):
        return self.leaf.issuer.rfc4514_string()

    @property
    def self_signed(self):
        return self.leaf.issuer == self.leaf.subject

    def options(self):
        """
        A Twisted context factory serving this certificate and its chain.

        :rtype: ``twisted.internet.ssl.CertificateOptions``
        """
        if self._options is None:
            self._options = CertificateOptions(
                privateKey=crypto.PKey.from_cryptography_key(self.key),
                certificate=crypto.X509.from_cryptography(self.leaf),
                extraCertChain=[
                    crypto.X509.from_cryptography(c) for c in self.chain[1:]])
        return self._options

    def pkcs12(self, passphrase=None):
        """
        Export the key and chain as PKCS#12.

        :param bytes passphrase: Encrypt the bundle with this passphrase.

        :rtype: bytes
        """
        if passphrase is None:
            encryption = serialization.NoEncryption()
        else:
            encryption = serialization.BestAvailableEncryption(passphrase)
        return pkcs12.serialize_key_and_certificates(
            name=None,
            key=self.key,
            cert=self.leaf,
            cas=list(self.chain[1:]) or None,
            encryption_algorithm=encryption)


def _general_name(host):
    try:
        return x509.IPAddress(ipaddress.ip_address(host))
    except ValueError:
        return x509.DNSName(host)


def generate_self_signed(hosts, now, days=365, key=None,
                         certificate_id=None):
    """
    Generate a self-signed certificate for ``hosts``.

    :param ``List[str]`` hosts: DNS names or IP addresses; the first becomes
        the common name.
    :param ~datetime.datetime now: The start of the validity window.
    :param key: The private key to use; an EC P-256 key is generated if not
        given.

    :rtype: `ServerCertificate`
    """
    if key is None:
        key = generate_private_key(u'ec')
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hosts[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .serial_number(int(uuid.uuid4()))
        .public_key(key.public_key())
        .add_extension(
            x509.SubjectAlternativeName([_general_name(h) for h in hosts]),
            critical=False)
        .sign(
            private_key=key,
            algorithm=hashes.SHA256(),
            backend=default_backend())
        )
    return ServerCertificate.from_pem_objects(
        certificate_id,
        [pem.PrivateKey(private_key_bytes(key)),
         pem.Certificate(cert.public_bytes(serialization.Encoding.PEM))])


__all__ = [
    'KIND_CA', 'KIND_ISSUED', 'KIND_ACME', 'KIND_IMPORTED',
    'CHALLENGE_HTTP_01', 'CHALLENGE_DNS_01', 'CertificateAuthority',
    'IssuedCertificate', 'AcmeCertificate', 'ImportedCertificate', 'AcmeHost',
    'AcmeAccount', 'RECORD_TYPES', 'record_to_json', 'record_from_json',
    'renew_at', 'encode_pem_objects', 'ServerCertificate',
    'generate_self_signed']
