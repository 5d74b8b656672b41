# -*- coding: utf-8 -*-
"""
Interface definitions for txproxyctl.
"""
from zope.interface import Attribute, Interface


class IResponder(Interface):
    """
    Configuration for a ACME challenge responder.

    The actual responder may exist somewhere else, this interface is merely for
    an object that knows how to configure it.
    """
    challenge_type = Attribute(
        """
        The type of challenge this responder is able to respond for.

        Must correspond to one of the types from `acme.challenges`; for
        example, ``u'http-01'``.
        """)

    def start_responding(host, challenge, account_key):
        """
        Start responding for a particular challenge.

        :param host: The `~txproxyctl.certificates.AcmeHost` being validated.
        :param challenge: The `acme.challenges` challenge object.
        :param account_key: The account's `~josepy.jwk.JWK`.

        :rtype: ``Deferred``
        :return: A deferred firing once the challenge can be submitted.  A
            failure aborts the authorization before the server is asked to
            validate anything.
        """

    def when_responded(host, challenge):
        """
        Wait for evidence that the server has looked at our response.

        :rtype: ``Deferred``
        :return: A deferred firing once validation can be polled for.
        """

    def stop_responding(host, challenge, account_key):
        """
        Stop responding for a particular challenge.

        Called once the authorization has concluded, whatever the outcome, if
        ``start_responding`` succeeded.

        :rtype: ``Deferred``
        """


class IDNSProvider(Interface):
    """
    An operator-supplied capability for publishing ``dns-01`` TXT records.
    """
    def create_record(domain, value):
        """
        Publish ``value`` as the ACME challenge TXT record for ``domain``.

        :param str domain: The name being validated, without any wildcard
            label.
        :param str value: The TXT record value.

        :rtype: ``Deferred[bool]``
        :return: Whether the record was created.
        """

    def delete_record(domain, value):
        """
        Remove a record published by ``create_record``.

        :rtype: ``Deferred[bool]``
        :return: Whether the record was deleted.
        """


class IBlobStore(Interface):
    """
    Opaque bytes keyed by id: certificate material, account keys, DNS provider
    scripts.
    """
    def get(key):
        """
        Retrieve the bytes stored for ``key``.

        :raises KeyError: if nothing is stored under ``key``.

        :rtype: ``Deferred[bytes]``
        """

    def store(key, data):
        """
        Store ``data`` under ``key``, replacing whatever was there.

        :rtype: ``Deferred``
        """

    def delete(key):
        """
        Remove whatever is stored under ``key``; missing keys are ignored.

        :rtype: ``Deferred``
        """


class IRevisionRepository(Interface):
    """
    Transactional storage of `~txproxyctl.model.ConfigRevision` rows.
    """
    def get(revision):
        """
        :raises KeyError: if there is no such revision.

        :rtype: ``Deferred[ConfigRevision]``
        """

    def latest_running():
        """
        The highest-numbered committed, unreverted revision.

        :rtype: ``Deferred[Optional[ConfigRevision]]``
        """

    def previous_running(revision):
        """
        The highest-numbered committed, unreverted revision below
        ``revision``.

        :rtype: ``Deferred[Optional[ConfigRevision]]``
        """

    def uncommitted():
        """
        Every revision that is neither committed nor reverted, in revision
        order.

        :rtype: ``Deferred[List[ConfigRevision]]``
        """

    def next_revision():
        """
        Reserve a revision number greater than any handed out before.

        :rtype: ``Deferred[int]``
        """

    def transact(save=(), delete=()):
        """
        Atomically insert or replace the revisions in ``save`` and remove the
        revision numbers in ``delete``.  Either all changes are applied or
        none are.

        :rtype: ``Deferred``
        """


class ICertificateRepository(Interface):
    """
    Storage of certificate records and ACME accounts.
    """
    def get(certificate_id):
        """
        :raises KeyError: if there is no such certificate.

        :rtype: ``Deferred[CertificateRecord]``
        """

    def acme_certificates():
        """
        :rtype: ``Deferred[List[AcmeCertificate]]``
        """

    def save(record):
        """
        Insert or replace a certificate record.

        :rtype: ``Deferred``
        """

    def delete(certificate_id):
        """
        :rtype: ``Deferred``
        """

    def get_account(account_id):
        """
        :raises KeyError: if there is no such account.

        :rtype: ``Deferred[AcmeAccount]``
        """

    def save_account(account):
        """
        :rtype: ``Deferred``
        """

    def delete_account(account_id):
        """
        :rtype: ``Deferred``
        """


__all__ = [
    'IResponder', 'IDNSProvider', 'IBlobStore', 'IRevisionRepository',
    'ICertificateRepository']
