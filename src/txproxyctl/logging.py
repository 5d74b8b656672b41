"""
Eliot message and action definitions.
"""
from binascii import hexlify
from operator import methodcaller

from eliot import ActionType, Field, fields

NONCE = Field(
    u'nonce',
    lambda nonce: hexlify(nonce).decode('ascii'),
    u'A nonce value')

KID = Field.for_types(
    u'kid', [str, None], u'The account URL used as key id, if any')

LOG_JWS_SIGN = ActionType(
    u'txproxyctl:jws:sign',
    fields(NONCE, KID, key_type=str, alg=str),
    fields(),
    u'Signing a message with JWS')

LOG_JWS_HEAD = ActionType(
    u'txproxyctl:jws:http:head',
    fields(),
    fields(),
    u'A HEAD request for a fresh nonce')

LOG_JWS_POST = ActionType(
    u'txproxyctl:jws:http:post',
    fields(url=str),
    fields(),
    u'A JWS-signed POST request')

LOG_JWS_REQUEST = ActionType(
    u'txproxyctl:jws:http:request',
    fields(method=str, url=str),
    fields(Field.for_types(u'content_type',
                           [bytes, None],
                           u'Content-Type header field'),
           code=int),
    u'An HTTP request to an ACME server')

LOG_JWS_CHECK_RESPONSE = ActionType(
    u'txproxyctl:jws:http:check-response',
    fields(Field.for_types(u'response_content_type',
                           [bytes, None],
                           u'Content-Type header field'),
           expected_content_type=bytes),
    fields(),
    u'Checking an ACME server response')

LOG_JWS_GET_NONCE = ActionType(
    u'txproxyctl:jws:nonce:get',
    fields(provider=str),
    fields(NONCE),
    u'Consuming a nonce')

LOG_JWS_ADD_NONCE = ActionType(
    u'txproxyctl:jws:nonce:add',
    fields(Field.for_types(u'raw_nonce',
                           [bytes, None],
                           u'Nonce header field')),
    fields(NONCE),
    u'Adding a nonce')

DIRECTORY = Field(u'directory', methodcaller('to_json'), u'An ACME directory')

LOG_ACME_GET_DIRECTORY = ActionType(
    u'txproxyctl:acme:directory:get',
    fields(provider=str, url=str),
    fields(DIRECTORY),
    u'Fetching the directory of an ACME provider')

LOG_ACME_CREATE_ACCOUNT = ActionType(
    u'txproxyctl:acme:account:create',
    fields(provider=str, account_id=str),
    fields(uri=str),
    u'Registering a new account with an ACME provider')

LOG_ACME_REQUEST_CERTIFICATE = ActionType(
    u'txproxyctl:acme:order:request',
    fields(certificate_id=str, hosts=list),
    fields(),
    u'Ordering a certificate')

LOG_ACME_PROCESS_AUTHORIZATION = ActionType(
    u'txproxyctl:acme:authorization:process',
    fields(url=str),
    fields(status=str),
    u'Completing an authorization')

LOG_ACME_ANSWER_CHALLENGE = ActionType(
    u'txproxyctl:acme:challenge:answer',
    fields(url=str, challenge_type=str, host=str),
    fields(),
    u'Answering an authorization challenge')

LOG_ACME_FINALIZE = ActionType(
    u'txproxyctl:acme:order:finalize',
    fields(url=str),
    fields(),
    u'Submitting the CSR of a ready order')

LOG_ACME_FETCH_CERTIFICATE = ActionType(
    u'txproxyctl:acme:certificate:fetch',
    fields(url=str),
    fields(),
    u'Downloading an issued certificate chain')
