"""
Exception types for txproxyctl.
"""
import attr


class ServerError(Exception):
    """
    An ACME server answered with a problem document.

    :exc:`acme.messages.Error` isn't usable as an asynchronous exception,
    because it doesn't allow setting the ``__traceback__`` attribute like
    Twisted wants to do when cleaning Failures.  This type exists to wrap such
    an error, as well as provide access to the original response.
    """
    def __init__(self, message, response):
        Exception.__init__(self, message, response)
        self.message = message
        self.response = response

    @property
    def code(self):
        """
        The problem type without its URN namespace, eg. ``badNonce``.
        """
        # RFC 8555 uses urn:ietf:params:acme:error:<code>, earlier drafts (and
        # some current implementations) urn:acme:error:<code>.
        return (self.message.typ or u'').split(u':')[-1]

    def __repr__(self):
        return 'ServerError({!r})'.format(self.message)

    def __str__(self):
        return str(self.message)


@attr.s(auto_exc=True)
class RateLimited(Exception):
    """
    The ACME provider told us to back off; requests fail fast until ``until``
    (seconds since the epoch, on the client's clock).
    """
    provider_id = attr.ib()
    until = attr.ib()

    def __str__(self):
        return repr(self)


class AuthorizationFailed(Exception):
    """
    An authorization reached a final status other than ``valid``.

    :ivar authorization: The last `acme.messages.Authorization` seen.
    """
    def __init__(self, url, authorization):
        Exception.__init__(self, url, authorization)
        self.url = url
        self.authorization = authorization
        self.status = authorization.status
        self.errors = [
            challb.error
            for challb in authorization.challenges
            if challb.error is not None]

    def __repr__(self):
        return (
            'AuthorizationFailed(<'
            '{0.status!r} '
            '{0.authorization.identifier!r} '
            '{0.errors!r}>)'.format(self))

    def __str__(self):
        return repr(self)


@attr.s(auto_exc=True)
class OrderFailed(Exception):
    """
    An order reached a state we cannot continue from.
    """
    order_uri = attr.ib()
    status = attr.ib()
    error = attr.ib(default=None)

    def __str__(self):
        return repr(self)


class NoSupportedChallenges(Exception):
    """
    No configured host, or no challenge of the host's type, was found for an
    authorization.
    """


@attr.s(auto_exc=True)
class AcmeTimeout(Exception):
    """
    An ACME polling loop or challenge wait exceeded its deadline.
    """
    what = attr.ib()
    seconds = attr.ib()

    def __str__(self):
        return '{0.what} did not complete within {0.seconds} seconds'.format(
            self)


class ConcurrencyError(Exception):
    """
    A configuration change was requested while another one is in progress.
    """


class RevisionInProgress(ConcurrencyError):
    """
    Another commit, revert, discard or promotion is currently in progress.
    """
    def __str__(self):
        return 'Config changes currently in progress.'


class AwaitingConfirmation(ConcurrencyError):
    """
    The running revision has not been confirmed yet.
    """
    def __str__(self):
        return 'Currently waiting for latest configuration to be confirmed.'


class NotAwaitingConfirmation(Exception):
    """
    There is no unconfirmed commit to cancel.
    """
    def __str__(self):
        return 'Not currently waiting for a configuration to be confirmed.'


class ConsistencyError(Exception):
    """
    The candidate or running pointers do not match the stored revisions.
    """


@attr.s(auto_exc=True)
class DNSProviderCompileError(Exception):
    """
    A DNS provider script failed to compile or to produce a provider.

    ``errors`` is a list of ``Line N: message`` strings.
    """
    provider_id = attr.ib()
    errors = attr.ib()

    def __str__(self):
        return 'Compilation of DNS provider {!r} failed:\n{}'.format(
            self.provider_id, '\n'.join(self.errors))


@attr.s(auto_exc=True)
class DNSRecordFailed(Exception):
    """
    A DNS provider reported that it could not create a record.
    """
    domain = attr.ib()
    value = attr.ib()

    def __str__(self):
        return repr(self)


class ConfigurationError(ValueError):
    """
    The settings document is missing something or is malformed.
    """


__all__ = [
    'ServerError', 'RateLimited', 'AuthorizationFailed', 'OrderFailed',
    'NoSupportedChallenges', 'AcmeTimeout', 'ConcurrencyError',
    'RevisionInProgress', 'AwaitingConfirmation', 'NotAwaitingConfirmation',
    'ConsistencyError',
    'DNSProviderCompileError', 'DNSRecordFailed', 'ConfigurationError']
