"""
Tests for `txproxyctl.challenges`.
"""
import josepy as jose
from acme import challenges
from treq.testing import StubTreq
from twisted.internet import defer
from twisted.internet.task import Clock
from twisted.python.url import URL
from twisted.trial.unittest import TestCase
from twisted.web.resource import Resource
from twisted.web.server import NOT_DONE_YET
from twisted.web.test.requesthelper import DummyRequest
from zope.interface.verify import verifyObject

from txproxyctl.certificates import AcmeHost
from txproxyctl.challenges import DNS01Responder, HTTP01Responder
from txproxyctl.errors import (
    AcmeTimeout, ConfigurationError, DNSRecordFailed)
from txproxyctl.interfaces import IResponder
from txproxyctl.testing import FakeDNSProvider, StaticDNSProviders
from txproxyctl.util import generate_private_key


# A random example token for the challenge tests that need one
EXAMPLE_TOKEN = u'BWYcfxzmOha7-7LoxziqPZIUr99BCz3BfbN9kzSFnrU'

ACCOUNT_KEY = jose.JWKEC(key=generate_private_key(u'ec'))


class HTTPResponderTests(TestCase):
    """
    `.HTTP01Responder` is a responder for http-01 challenges.
    """
    def setUp(self):
        self.clock = Clock()
        self.responder = HTTP01Responder(self.clock, timeout=60)
        self.host = AcmeHost(u'example.com')
        self.challenge = challenges.HTTP01(
            token=jose.decode_b64jose(EXAMPLE_TOKEN))

    def test_interface(self):
        """
        The `.IResponder` interface is correctly implemented.
        """
        verifyObject(IResponder, self.responder)
        self.assertEqual(u'http-01', self.responder.challenge_type)

    @defer.inlineCallbacks
    def test_stop_responding_already_stopped(self):
        """
        Calling ``stop_responding`` when we are not responding for a server
        name does nothing.
        """
        yield self.responder.stop_responding(
            self.host, self.challenge, ACCOUNT_KEY)

    @defer.inlineCallbacks
    def test_start_responding(self):
        """
        Calling ``start_responding`` makes an appropriate resource available.
        """
        challenge_resource = Resource()
        challenge_resource.putChild(
            b'acme-challenge', self.responder.resource)
        root = Resource()
        root.putChild(b'.well-known', challenge_resource)
        client = StubTreq(root)

        encoded_token = self.challenge.encode('token')
        challenge_url = URL(scheme=u'http', host=u'example.com', path=[
            u'.well-known', u'acme-challenge', encoded_token]).asText()

        # We got page not found while the challenge is not yet active.
        result = yield client.get(challenge_url)
        self.assertEqual(404, result.code)

        # Once we enable the response.
        yield self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        result = yield client.get(challenge_url)
        self.assertEqual(200, result.code)
        self.assertEqual(
            [b'text/plain'], result.headers.getRawHeaders(b'content-type'))

        result = yield result.content()
        self.assertEqual(
            self.challenge.key_authorization(ACCOUNT_KEY).encode('ascii'),
            result)

        # Starting twice before stopping doesn't break things
        yield self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)

        result = yield client.get(challenge_url)
        self.assertEqual(200, result.code)

        yield self.responder.stop_responding(
            self.host, self.challenge, ACCOUNT_KEY)

        result = yield client.get(challenge_url)
        self.assertEqual(404, result.code)

    def test_when_responded(self):
        """
        `when_responded` fires once the key authorization has been served.
        """
        self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        d = self.responder.when_responded(self.host, self.challenge)
        self.assertFalse(d.called)

        _, served = self.responder.try_get(self.challenge.encode('token'))
        served()
        self.assertTrue(d.called)
        self.assertEqual([], self.clock.getDelayedCalls())

    def test_served_after_body_written(self):
        """
        The key authorization is written out before anyone waiting on
        `when_responded` is told it was served.
        """
        self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        token = self.challenge.encode('token').encode('ascii')
        request = DummyRequest([token])
        written = []
        self.responder.when_responded(self.host, self.challenge).addCallback(
            lambda _: written.append(b''.join(request.written)))

        child = self.responder.resource.getChild(token, request)
        self.assertEqual(NOT_DONE_YET, child.render(request))
        self.assertEqual(
            [self.challenge.key_authorization(ACCOUNT_KEY).encode('ascii')],
            written)
        self.assertEqual(1, request.finished)

    def test_when_responded_timeout(self):
        """
        If the key authorization isn't fetched in time, `when_responded`
        fails with `.AcmeTimeout`.
        """
        self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        d = self.responder.when_responded(self.host, self.challenge)
        failures = []
        d.addErrback(failures.append)
        self.clock.advance(59)
        self.assertEqual([], failures)
        self.clock.advance(1)
        self.assertEqual(1, len(failures))
        self.assertIsInstance(failures[0].value, AcmeTimeout)

    def test_stop_responding_cancels_wait(self):
        """
        Stopping fails anyone still waiting for the key authorization to be
        served.
        """
        self.responder.start_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        d = self.responder.when_responded(self.host, self.challenge)
        failures = []
        d.addErrback(failures.append)
        self.responder.stop_responding(
            self.host, self.challenge, ACCOUNT_KEY)
        self.assertEqual(1, len(failures))
        self.assertIsNone(
            self.responder.try_get(self.challenge.encode('token')))


class DNSResponderTests(TestCase):
    """
    `.DNS01Responder` publishes TXT records through DNS providers.
    """
    def setUp(self):
        self.provider = FakeDNSProvider()
        self.responder = DNS01Responder(
            StaticDNSProviders({u'zone': self.provider}))
        self.challenge = challenges.DNS01(
            token=jose.decode_b64jose(EXAMPLE_TOKEN))
        self.value = self.challenge.validation(ACCOUNT_KEY)

    def test_interface(self):
        verifyObject(IResponder, self.responder)
        self.assertEqual(u'dns-01', self.responder.challenge_type)

    @defer.inlineCallbacks
    def test_wildcard(self):
        """
        A wildcard's record is published for the name below the wildcard,
        and removed again when responding stops.
        """
        host = AcmeHost(u'*.example.com', u'dns-01', u'zone')
        yield self.responder.start_responding(
            host, self.challenge, ACCOUNT_KEY)
        self.assertEqual(
            {u'example.com': {self.value}}, self.provider.records)
        yield self.responder.when_responded(host, self.challenge)

        yield self.responder.stop_responding(
            host, self.challenge, ACCOUNT_KEY)
        self.assertEqual({u'example.com': set()}, self.provider.records)
        self.assertEqual(
            [(u'create', u'example.com', self.value),
             (u'delete', u'example.com', self.value)],
            self.provider.calls)

    @defer.inlineCallbacks
    def test_stop_responding_already_stopped(self):
        host = AcmeHost(u'example.com', u'dns-01', u'zone')
        yield self.responder.stop_responding(
            host, self.challenge, ACCOUNT_KEY)
        self.assertEqual([], self.provider.calls)

    @defer.inlineCallbacks
    def test_no_provider_configured(self):
        host = AcmeHost(u'example.com', u'dns-01')
        with self.assertRaises(ConfigurationError):
            yield self.responder.start_responding(
                host, self.challenge, ACCOUNT_KEY)

    @defer.inlineCallbacks
    def test_unknown_provider(self):
        host = AcmeHost(u'example.com', u'dns-01', u'other')
        with self.assertRaises(KeyError):
            yield self.responder.start_responding(
                host, self.challenge, ACCOUNT_KEY)

    @defer.inlineCallbacks
    def test_record_failed(self):
        """
        A provider reporting failure raises `.DNSRecordFailed`.
        """
        self.provider.result = False
        host = AcmeHost(u'example.com', u'dns-01', u'zone')
        with self.assertRaises(DNSRecordFailed) as cm:
            yield self.responder.start_responding(
                host, self.challenge, ACCOUNT_KEY)
        self.assertEqual(u'example.com', cm.exception.domain)
        self.assertEqual(self.value, cm.exception.value)

    @defer.inlineCallbacks
    def test_delete_failed(self):
        """
        A provider failing to delete the record is not an error.
        """
        self.provider.delete_result = False
        host = AcmeHost(u'example.com', u'dns-01', u'zone')
        yield self.responder.start_responding(
            host, self.challenge, ACCOUNT_KEY)
        yield self.responder.stop_responding(
            host, self.challenge, ACCOUNT_KEY)
        self.assertEqual(
            [u'create', u'delete'], [c[0] for c in self.provider.calls])
        self.assertEqual(
            {u'example.com': {self.value}}, self.provider.records)


__all__ = ['HTTPResponderTests', 'DNSResponderTests']
