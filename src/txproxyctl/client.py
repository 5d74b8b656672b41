"""
ACME v2 (RFC 8555) client for Twisted.

One `AcmeClient` serves every configured provider.  Requests to a provider go
through a `JWSClient`, which signs them, keeps the provider's nonce pool
topped up and applies the provider's rate-limit backoff.  Issuing a
certificate walks the order through its states::

    pending --> ready --> processing --> valid
       |          |            |
       +----------+------------+------> invalid

while each pending authorization is completed with the configured responder
for the matching host's challenge type.
"""
from datetime import timedelta

import josepy as jose
import pem
from acme import errors, messages
from acme.jws import JWS, Header
from acme.messages import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_READY,
    STATUS_VALID,
    )
from eliot.twisted import DeferredContext
from josepy.errors import DeserializationError
from josepy.jwa import ES256, RS256
from treq import json_content
from treq.client import HTTPClient
from twisted.internet import defer
from twisted.internet.task import deferLater
from twisted.logger import Logger
from twisted.web import http
from twisted.web.client import Agent, HTTPConnectionPool
from twisted.web.http_headers import Headers

from txproxyctl import __version__
from txproxyctl.cache import ExpiringObjectCache, NonceCache
from txproxyctl.certificates import AcmeAccount
from txproxyctl.errors import (
    AcmeTimeout,
    AuthorizationFailed,
    ConfigurationError,
    NoSupportedChallenges,
    OrderFailed,
    RateLimited,
    ServerError,
    )
from txproxyctl.logging import (
    LOG_ACME_ANSWER_CHALLENGE,
    LOG_ACME_CREATE_ACCOUNT,
    LOG_ACME_FETCH_CERTIFICATE,
    LOG_ACME_FINALIZE,
    LOG_ACME_GET_DIRECTORY,
    LOG_ACME_PROCESS_AUTHORIZATION,
    LOG_ACME_REQUEST_CERTIFICATE,
    LOG_JWS_ADD_NONCE,
    LOG_JWS_CHECK_RESPONSE,
    LOG_JWS_GET_NONCE,
    LOG_JWS_HEAD,
    LOG_JWS_POST,
    LOG_JWS_REQUEST,
    LOG_JWS_SIGN,
    )
from txproxyctl.util import (
    csr_for_names,
    decode_csr,
    encode_csr,
    generate_private_key,
    private_key_bytes,
    tap,
    )

_DEFAULT_TIMEOUT = 40

POLL_INTERVAL = 2
ORDER_TIMEOUT = 5 * 60
DIRECTORY_TTL = timedelta(hours=6, minutes=30)
DEFAULT_RETRY_AFTER = 60 * 60

JSON_CONTENT_TYPE = b'application/json'
JOSE_CONTENT_TYPE = b'application/jose+json'
JSON_ERROR_CONTENT_TYPE = b'application/problem+json'
PEM_CHAIN_TYPE = b'application/pem-certificate-chain'
REPLAY_NONCE_HEADER = b'Replay-Nonce'


def fqdn_identifier(fqdn):
    """
    Construct an identifier from an FQDN.

    :param str fqdn: The domain name.

    :rtype: `~acme.messages.Identifier`
    """
    return messages.Identifier(
        typ=messages.IDENTIFIER_FQDN, value=fqdn)


class Finalize(jose.JSONObjectWithFields):
    """
    ACME order finalize request.

    :ivar csr: A `cryptography.x509.CertificateSigningRequest`.
    """
    csr = jose.Field('csr', decoder=decode_csr, encoder=encode_csr)


def _location(response, default=None):
    """
    Get the Location: if there is one.
    """
    location = response.headers.getRawHeaders(b'location', [None])[0]
    if location is not None:
        return location.decode('ascii')
    return default


def _fail_and_consume(response, error):
    """
    Fail the deferred, but before the read all the pending data from the
    response.
    """
    def fail(_):
        raise error
    return response.text().addBoth(fail)


def _expect_response(response, codes):
    """
    Ensure we got one of the expected response codes.
    """
    if response.code not in codes:
        return _fail_and_consume(response, errors.ClientError(
            'Expected {!r} response but got {!r}'.format(
                codes, response.code)))
    return defer.succeed(response)


def _retry_after(value, now):
    """
    Work out how many seconds a ``Retry-After`` header value asks us to wait.

    :param bytes value: The header value, either delta-seconds or an
        HTTP-date; may be ``None``.
    """
    if value is None:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        return max(0, http.stringToDatetime(value) - now)
    except (ValueError, IndexError, KeyError):
        return DEFAULT_RETRY_AFTER


def _signing_algorithm(key):
    if isinstance(key, jose.JWKEC):
        return ES256
    return RS256


def _default_client(reactor):
    """
    Make an HTTP client if we didn't get one.
    """
    pool = HTTPConnectionPool(reactor)
    return HTTPClient(agent=Agent(reactor, pool=pool))


class JWSClient(object):
    """
    HTTP client using JWS-signed messages for one ACME provider.

    :ivar new_nonce: The provider's ``newNonce`` URL, set from its directory.
    :ivar limited_until: While the provider is rate limiting us, the time
        (on ``clock``) at which we may try again.
    """
    timeout = _DEFAULT_TIMEOUT

    def __init__(self, provider_id, clock, treq_client, nonces,
                 user_agent=u'txproxyctl/{}'.format(__version__)):
        self.provider_id = provider_id
        self._clock = clock
        self._treq = treq_client
        self._nonces = nonces
        self._user_agent = user_agent.encode('ascii')
        self.new_nonce = None
        self.limited_until = None

    def _check_rate_limit(self):
        if self.limited_until is None:
            return None
        if self._clock.seconds() < self.limited_until:
            return RateLimited(self.provider_id, self.limited_until)
        self.limited_until = None
        return None

    def _cb_rate_limited(self, f):
        """
        Record the backoff requested by a ``rateLimited`` problem.
        """
        f.trap(ServerError)
        if f.value.code != u'rateLimited':
            return f
        now = self._clock.seconds()
        retry_after = f.value.response.headers.getRawHeaders(
            b'retry-after', [None])[0]
        self.limited_until = now + _retry_after(retry_after, now)
        raise RateLimited(self.provider_id, self.limited_until)

    def _wrap_in_jws(self, nonce, obj, url, key, kid):
        """
        Wrap ``JSONDeSerializable`` object in ACME JWS.

        :param bytes nonce:
        :param ~josepy.interfaces.JSONDeSerializable obj: The payload, or
            ``None`` for a POST-as-GET.
        :param str url: URL to the request for which we wrap the payload.
        :param ~josepy.jwk.JWK key: The signing key.
        :param str kid: The account URL; when ``None`` the public key is
            embedded instead.

        :rtype: `bytes`
        :return: JSON-encoded data
        """
        alg = _signing_algorithm(key)
        with LOG_JWS_SIGN(key_type=key.typ, alg=alg.name,
                          nonce=nonce, kid=kid):
            if obj is None:
                payload = b''
            else:
                payload = obj.json_dumps().encode()
            return (
                JWS.sign(
                    payload=payload,
                    key=key,
                    alg=alg,
                    nonce=nonce,
                    url=url,
                    kid=kid,
                    )
                .json_dumps()
                .encode())

    @classmethod
    def _check_response(cls, response, content_type=JSON_CONTENT_TYPE):
        """
        Check response content and its type.

        :param bytes content_type: Expected Content-Type response header.  If
            the response Content-Type does not match, :exc:`ClientError` is
            raised.

        :raises ~txproxyctl.errors.ServerError: If server response body
            carries an HTTP Problem.
        :raises ~acme.errors.ClientError: In case of other protocol errors.
        """
        def _got_failure(f):
            f.trap(ValueError)
            return None

        def _got_json(jobj):
            if 400 <= response.code < 600:
                if (
                    response_ct.lower().startswith(JSON_ERROR_CONTENT_TYPE)
                    and jobj is not None
                        ):
                    raise ServerError(
                        messages.Error.from_json(jobj), response)
                else:
                    return _fail_and_consume(
                        response, errors.ClientError('Response is not JSON.'))
            elif content_type not in response_ct.lower():
                return _fail_and_consume(response, errors.ClientError(
                    'Unexpected response Content-Type: {0!r}. '
                    'Expecting {1!r}.'.format(
                        response_ct, content_type)))
            elif JSON_CONTENT_TYPE in content_type.lower() and jobj is None:
                return _fail_and_consume(
                    response, errors.ClientError('Missing JSON body.'))
            return response

        response_ct = response.headers.getRawHeaders(
            b'Content-Type', [b''])[0]
        action = LOG_JWS_CHECK_RESPONSE(
            expected_content_type=content_type,
            response_content_type=response_ct)
        with action.context():
            return (
                DeferredContext(response.json())
                .addErrback(_got_failure)
                .addCallback(_got_json)
                .addActionFinish())

    def _send_request(self, method, url, **kwargs):
        """
        Send HTTP request.

        :param str method: The HTTP method to use.
        :param str url: The URL to make the request to.

        :return: Deferred firing with the HTTP response.
        """
        limited = self._check_rate_limit()
        if limited is not None:
            return defer.fail(limited)

        action = LOG_JWS_REQUEST(method=method, url=url)
        with action.context():
            headers = kwargs.setdefault('headers', Headers())
            headers.setRawHeaders(b'user-agent', [self._user_agent])
            kwargs.setdefault('timeout', self.timeout)
            kwargs.setdefault('reactor', self._clock)
            return (
                DeferredContext(self._treq.request(method, url, **kwargs))
                .addCallback(
                    tap(lambda r: action.add_success_fields(
                        code=r.code,
                        content_type=r.headers.getRawHeaders(
                            b'content-type', [None])[0])))
                .addActionFinish())

    def head(self, url):
        """
        Send HEAD request without checking the response.
        """
        with LOG_JWS_HEAD().context():
            return DeferredContext(
                self._send_request(u'HEAD', url)
                ).addActionFinish()

    def get(self, url, content_type=JSON_CONTENT_TYPE):
        """
        Send GET request and check response.

        :raises ~txproxyctl.errors.ServerError: If server response body
            carries an HTTP Problem.

        :return: Deferred firing with the checked HTTP response.
        """
        return (
            self._send_request(u'GET', url)
            .addCallback(self._check_response, content_type=content_type)
            .addErrback(self._cb_rate_limited))

    def _add_nonce(self, response):
        """
        Store the nonce from a response we received, if it carries one.

        :return: The response, unmodified.
        """
        raw_nonce = response.headers.getRawHeaders(
            REPLAY_NONCE_HEADER, [None])[0]
        if raw_nonce is None:
            return response
        with LOG_JWS_ADD_NONCE(raw_nonce=raw_nonce) as action:
            try:
                nonce = Header._fields['nonce'].decode(
                    raw_nonce.decode('ascii'))
            except DeserializationError as error:
                raise errors.BadNonce(raw_nonce, error)
            action.add_success_fields(nonce=nonce)
            self._nonces.add(self.provider_id, nonce)
            return response

    def _cb_new_nonce(self, response):
        self._add_nonce(response)
        nonce = self._nonces.pop(self.provider_id)
        if nonce is None:
            raise errors.ClientError(
                'No Replay-Nonce header in newNonce response')
        return nonce

    def _get_nonce(self):
        """
        Get a nonce to use in a request, removing it from the nonces on hand.
        """
        action = LOG_JWS_GET_NONCE(provider=self.provider_id)
        nonce = self._nonces.pop(self.provider_id)
        if nonce is not None:
            with action:
                action.add_success_fields(nonce=nonce)
                return defer.succeed(nonce)
        with action.context():
            return (
                DeferredContext(self.head(self.new_nonce))
                .addCallback(self._cb_new_nonce)
                .addCallback(tap(
                    lambda nonce: action.add_success_fields(nonce=nonce)))
                .addActionFinish())

    def _post(self, url, obj, key, kid, response_type):
        with LOG_JWS_POST(url=url).context():
            headers = Headers()
            headers.setRawHeaders(b'content-type', [JOSE_CONTENT_TYPE])
            return (
                DeferredContext(self._get_nonce())
                .addCallback(self._wrap_in_jws, obj, url, key, kid)
                .addCallback(
                    lambda data: self._send_request(
                        u'POST', url, data=data, headers=headers))
                .addCallback(self._add_nonce)
                .addCallback(self._check_response, content_type=response_type)
                .addErrback(self._cb_rate_limited)
                .addActionFinish())

    def post(self, url, obj, key, kid=None,
             response_type=JSON_CONTENT_TYPE):
        """
        POST a signed object and check the response.  A ``badNonce`` problem
        is retried once, re-signed with a fresh nonce.

        :param str url: The URL to request.
        :param ~josepy.interfaces.JSONDeSerializable obj: The payload, or
            ``None`` for a POST-as-GET.
        :param ~josepy.jwk.JWK key: The account key.
        :param str kid: The account URL, or ``None`` to embed the key.
        :param bytes response_type: The expected content type of the
            response.

        :raises ~txproxyctl.errors.ServerError: If server response body
            carries an HTTP Problem.
        :raises ~txproxyctl.errors.RateLimited: If the provider is asking us
            to back off.
        :raises acme.errors.ClientError: In case of other protocol errors.
        """
        def retry_bad_nonce(f):
            f.trap(ServerError)
            if f.value.code == u'badNonce':
                # If one nonce is bad, others likely are too. Let's clear them
                # and re-add the one we just got.
                self._nonces.clear(self.provider_id)
                self._add_nonce(f.value.response)
                return self._post(url, obj, key, kid, response_type)
            return f
        return (
            self._post(url, obj, key, kid, response_type)
            .addErrback(retry_bad_nonce))


class AcmeClient(object):
    """
    ACME client for every configured provider.

    :param clock: The ``IReactorTime`` used for deadlines and polling;
        usually the reactor.
    :param providers: The configured `~txproxyctl.config.AcmeProvider` list.
    :param repository: An
        `~txproxyctl.interfaces.ICertificateRepository` holding the ACME
        accounts.
    :param account_keys: An `~txproxyctl.interfaces.IBlobStore` holding
        account private keys, keyed by account id.
    :param responders: `~txproxyctl.interfaces.IResponder` providers; one is
        used per challenge type.
    :param treq_client: The ``treq.client.HTTPClient`` to use, or ``None`` to
        construct one.
    :param bool staging: Use the providers' staging directories.
    """
    log = Logger()

    def __init__(self, clock, providers, repository, account_keys,
                 responders, treq_client=None, staging=False,
                 user_agent=u'txproxyctl/{}'.format(__version__),
                 timeout=_DEFAULT_TIMEOUT):
        self._clock = clock
        self._providers = {p.id: p for p in providers}
        self._repository = repository
        self._account_keys = account_keys
        self._responders = {
            r.challenge_type.lower(): r for r in responders}
        if treq_client is None:
            treq_client = _default_client(clock)
        self._treq = treq_client
        self._staging = staging
        self._user_agent = user_agent
        self._timeout = timeout
        self._nonces = NonceCache()
        self._directories = ExpiringObjectCache(clock)
        self._jws_clients = {}

    def provider(self, provider_id):
        """
        Look up a configured provider.

        :raises KeyError: if there is no such provider.
        """
        return self._providers[provider_id]

    def _jws_client(self, provider):
        jws_client = self._jws_clients.get(provider.id)
        if jws_client is None:
            jws_client = JWSClient(
                provider.id, self._clock, self._treq, self._nonces,
                user_agent=self._user_agent)
            jws_client.timeout = self._timeout
            self._jws_clients[provider.id] = jws_client
        return jws_client

    def get_directory(self, provider):
        """
        Get the directory of a provider, fetching it if it is not cached.

        :rtype: Deferred[`~acme.messages.Directory`]
        """
        directory = self._directories.get(provider.id)
        if directory is not None:
            return defer.succeed(directory)
        jws_client = self._jws_client(provider)

        def cb_extract_new_nonce(directory):
            try:
                jws_client.new_nonce = directory.newNonce
            except AttributeError:
                raise errors.ClientError(
                    'Directory has no newNonce URL', directory)
            self._directories.set(provider.id, directory, DIRECTORY_TTL)
            return directory

        url = provider.url(self._staging).asText()
        action = LOG_ACME_GET_DIRECTORY(provider=provider.id, url=url)
        with action.context():
            return (
                DeferredContext(jws_client.get(url))
                .addCallback(json_content)
                .addCallback(messages.Directory.from_json)
                .addCallback(cb_extract_new_nonce)
                .addCallback(
                    tap(lambda d: action.add_success_fields(directory=d)))
                .addActionFinish())

    def _account_key(self, account_id):
        """
        Load an account's private key as a JWK.
        """
        return self._account_keys.get(account_id).addCallback(jose.JWK.load)

    def create_account(self, account_id, provider, emails=()):
        """
        Register a new account with ``provider``.

        A fresh EC P-256 key is generated for the account; it is only written
        to the account key store once the provider has told us the account
        URL.

        :param str account_id: The id to store the account under.
        :param provider: The `~txproxyctl.config.AcmeProvider`.
        :param emails: Contact email addresses.

        :rtype: Deferred[`~txproxyctl.certificates.AcmeAccount`]
        """
        action = LOG_ACME_CREATE_ACCOUNT(
            provider=provider.id, account_id=account_id)
        with action.context():
            return (
                DeferredContext(
                    self._create_account(account_id, provider, tuple(emails)))
                .addCallback(
                    tap(lambda account: action.add_success_fields(
                        uri=account.url)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _create_account(self, account_id, provider, emails):
        if not emails and not provider.contact_emails_optional:
            raise ConfigurationError(
                'ACME provider {!r} requires a contact email address'.format(
                    provider.id))
        key = generate_private_key(u'ec')
        jwk = jose.JWKEC(key=key)
        directory = yield self.get_directory(provider)
        registration = messages.Registration.from_data(
            email=u','.join(emails) if emails else None,
            terms_of_service_agreed=True)
        response = yield self._jws_client(provider).post(
            directory.newAccount, registration, jwk)
        yield _expect_response(response, [http.OK, http.CREATED])
        uri = _location(response)
        if uri is None:
            raise errors.ClientError(
                'ACME provider {!r} did not return the account URL in a '
                'Location header'.format(provider.id))
        account = AcmeAccount(
            id=account_id,
            provider_id=provider.id,
            url=uri,
            contact_emails=emails)
        yield self._account_keys.store(account_id, private_key_bytes(key))
        yield self._repository.save_account(account)
        self.log.info(
            'Created ACME account {account_id} with {provider}: {uri}',
            account_id=account_id, provider=provider.id, uri=uri)
        return account

    @defer.inlineCallbacks
    def purge_account(self, account_id):
        """
        Forget an account: delete its key and its record.
        """
        yield self._account_keys.delete(account_id)
        yield self._repository.delete_account(account_id)

    def request_certificate(self, certificate):
        """
        Obtain a certificate for every host of an ACME certificate record.

        :param ~txproxyctl.certificates.AcmeCertificate certificate: The
            record; its account must exist.

        :rtype: ``Deferred[List[pem.AbstractPEMObject]]``
        :return: The freshly generated private key followed by the issued
            chain, ready to be stored.
        """
        names = [h.host for h in certificate.hosts]
        action = LOG_ACME_REQUEST_CERTIFICATE(
            certificate_id=certificate.id, hosts=names)
        with action.context():
            return (
                DeferredContext(self._request_certificate(certificate, names))
                .addActionFinish())

    def _wait(self, deadline, what):
        """
        Sleep for one poll interval, unless the deadline has passed.
        """
        if self._clock.seconds() >= deadline:
            return defer.fail(AcmeTimeout(what, ORDER_TIMEOUT))
        return deferLater(self._clock, POLL_INTERVAL, lambda: None)

    @defer.inlineCallbacks
    def _fetch(self, jws_client, key, kid, url, body_class):
        """
        POST-as-GET a resource.
        """
        response = yield jws_client.post(url, None, key, kid=kid)
        yield _expect_response(response, [http.OK])
        body = yield response.json()
        return body_class.from_json(body)

    @defer.inlineCallbacks
    def _request_certificate(self, certificate, names):
        if not names:
            raise ValueError('Certificate {!r} has no hosts'.format(
                certificate.id))
        account = yield self._repository.get_account(certificate.account_id)
        provider = self.provider(account.provider_id)
        unsupported = sorted({
            h.challenge_type.lower() for h in certificate.hosts
            if h.challenge_type.lower() not in provider.challenges})
        if unsupported:
            raise NoSupportedChallenges(
                '{} does not offer {} challenges'.format(
                    provider.name, u', '.join(unsupported)))
        key = yield self._account_key(account.id)
        directory = yield self.get_directory(provider)
        jws_client = self._jws_client(provider)
        kid = account.url
        deadline = self._clock.seconds() + ORDER_TIMEOUT

        response = yield jws_client.post(
            directory.newOrder,
            messages.NewOrder(
                identifiers=[fqdn_identifier(name) for name in names]),
            key, kid=kid)
        yield _expect_response(response, [http.CREATED])
        order_uri = _location(response)
        order = messages.Order.from_json((yield response.json()))

        certificate_key = None
        authorized = False
        while True:
            status = order.status
            if status == STATUS_PENDING:
                if authorized:
                    yield self._wait(deadline, u'Order {}'.format(order_uri))
                else:
                    for url in order.authorizations:
                        yield self.process_authorization(
                            jws_client, key, kid, url, certificate.hosts,
                            deadline)
                    authorized = True
                order = yield self._fetch(
                    jws_client, key, kid, order_uri, messages.Order)
            elif status == STATUS_READY:
                certificate_key = generate_private_key(u'ec')
                order = yield self._finalize(
                    jws_client, key, kid, order, certificate_key)
            elif status == STATUS_PROCESSING:
                yield self._wait(deadline, u'Order {}'.format(order_uri))
                order = yield self._fetch(
                    jws_client, key, kid, order_uri, messages.Order)
            elif status == STATUS_VALID:
                if certificate_key is None:
                    raise OrderFailed(
                        order_uri, status,
                        u'Order became valid before it was finalized')
                chain = yield self._fetch_certificate(
                    jws_client, key, kid, order.certificate)
                return (
                    [pem.PrivateKey(private_key_bytes(certificate_key))] +
                    chain)
            else:
                raise OrderFailed(order_uri, status, order.error)

    def process_authorization(self, jws_client, key, kid, url, hosts,
                              deadline):
        """
        Complete one authorization of an order.

        :param hosts: The `~txproxyctl.certificates.AcmeHost` entries of the
            certificate being ordered.
        :param float deadline: When polling has to give up, on the client's
            clock.

        :raises ~txproxyctl.errors.AuthorizationFailed: If the authorization
            ends up anything but valid.

        :rtype: Deferred[`~acme.messages.Authorization`]
        """
        action = LOG_ACME_PROCESS_AUTHORIZATION(url=url)
        with action.context():
            return (
                DeferredContext(
                    self._process_authorization(
                        jws_client, key, kid, url, hosts, deadline))
                .addCallback(
                    tap(lambda authorization: action.add_success_fields(
                        status=authorization.status.name)))
                .addActionFinish())

    @defer.inlineCallbacks
    def _process_authorization(self, jws_client, key, kid, url, hosts,
                               deadline):
        authorization = yield self._fetch(
            jws_client, key, kid, url, messages.Authorization)
        if authorization.status == STATUS_VALID:
            return authorization
        if authorization.status != STATUS_PENDING:
            raise AuthorizationFailed(url, authorization)

        host, challenge_body = _find_challenge(authorization, hosts)
        responder = self._responders.get(host.challenge_type.lower())
        if responder is None:
            raise NoSupportedChallenges(
                'No responder for {} challenges'.format(host.challenge_type))

        yield defer.maybeDeferred(
            responder.start_responding, host, challenge_body.chall, key)
        try:
            yield self._answer_challenge(
                jws_client, key, kid, challenge_body, host)
            yield responder.when_responded(host, challenge_body.chall)
            while authorization.status == STATUS_PENDING:
                yield self._wait(deadline, u'Authorization {}'.format(url))
                authorization = yield self._fetch(
                    jws_client, key, kid, url, messages.Authorization)
        finally:
            yield self._stop_responding(
                responder, host, challenge_body.chall, key)

        if authorization.status != STATUS_VALID:
            raise AuthorizationFailed(url, authorization)
        return authorization

    def _stop_responding(self, responder, host, challenge, key):
        """
        Clean up after a challenge.  A failure to do so is logged, and never
        changes the outcome of the authorization.
        """
        def failed(f):
            self.log.failure(
                u'Error cleaning up the {challenge_type} challenge for '
                u'{host}', f,
                challenge_type=responder.challenge_type, host=host.host)
        return defer.maybeDeferred(
            responder.stop_responding, host, challenge, key).addErrback(failed)

    def _answer_challenge(self, jws_client, key, kid, challenge_body, host):
        """
        Tell the server we are ready for it to validate a challenge.
        """
        if challenge_body.status != STATUS_PENDING:
            # Already answered.
            return defer.succeed(challenge_body)
        action = LOG_ACME_ANSWER_CHALLENGE(
            url=challenge_body.uri,
            challenge_type=host.challenge_type,
            host=host.host)
        with action.context():
            return (
                DeferredContext(
                    jws_client.post(
                        challenge_body.uri, jose.JSONObjectWithFields(), key,
                        kid=kid))
                .addCallback(_expect_response, [http.OK])
                .addCallback(json_content)
                .addCallback(messages.ChallengeBody.from_json)
                .addActionFinish())

    def _finalize(self, jws_client, key, kid, order, certificate_key):
        """
        Submit the CSR for a ready order.
        """
        names = sorted(
            (i.value for i in order.identifiers),
            key=lambda name: name.startswith(u'*.'))
        request = Finalize(csr=csr_for_names(names, certificate_key))
        action = LOG_ACME_FINALIZE(url=order.finalize)
        with action.context():
            return (
                DeferredContext(
                    jws_client.post(order.finalize, request, key, kid=kid))
                .addCallback(_expect_response, [http.OK])
                .addCallback(json_content)
                .addCallback(messages.Order.from_json)
                .addActionFinish())

    def _fetch_certificate(self, jws_client, key, kid, url):
        """
        Download the issued chain of a valid order.
        """
        def cb_parse(body):
            chain = [
                o for o in pem.parse(body)
                if isinstance(o, pem.Certificate)]
            if not chain:
                raise errors.ClientError(
                    'No certificates in response from {}'.format(url))
            return chain

        action = LOG_ACME_FETCH_CERTIFICATE(url=url)
        with action.context():
            return (
                DeferredContext(
                    jws_client.post(
                        url, None, key, kid=kid,
                        response_type=PEM_CHAIN_TYPE))
                .addCallback(_expect_response, [http.OK])
                .addCallback(lambda response: response.content())
                .addCallback(cb_parse)
                .addActionFinish())


def _find_challenge(authorization, hosts):
    """
    Find the configured host an authorization is for, and the challenge of
    that host's type.

    :raises NoSupportedChallenges: When either is not found.

    :rtype: Tuple[`~txproxyctl.certificates.AcmeHost`,
            `~acme.messages.ChallengeBody`]
    """
    name = authorization.identifier.value
    if authorization.wildcard:
        name = u'*.' + name
    for host in hosts:
        if host.host.lower() == name.lower():
            break
    else:
        raise NoSupportedChallenges(
            'No configured host for authorization of {}'.format(name))
    for challenge_body in authorization.challenges:
        typ = getattr(challenge_body.chall, 'typ', None)
        if typ is not None and typ.lower() == host.challenge_type.lower():
            return host, challenge_body
    raise NoSupportedChallenges(
        'No {} challenge offered for {}'.format(host.challenge_type, name))


__all__ = [
    'AcmeClient', 'JWSClient', 'Finalize', 'fqdn_identifier',
    'JSON_CONTENT_TYPE', 'JOSE_CONTENT_TYPE', 'JSON_ERROR_CONTENT_TYPE',
    'PEM_CHAIN_TYPE', 'REPLAY_NONCE_HEADER', 'POLL_INTERVAL',
    'ORDER_TIMEOUT', 'DIRECTORY_TTL', 'DEFAULT_RETRY_AFTER']
