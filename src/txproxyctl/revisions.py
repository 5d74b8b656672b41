"""
Promotion of configuration revisions to running, and automatic rollback.

Each revision moves through::

    candidate --> committed (unconfirmed) --+--> committed (confirmed)
                                            |
                                            +--> reverted

A commit has to be confirmed within its confirm window, or it is rolled back
to the previous running revision.
"""
from datetime import datetime, timezone

import attr
from twisted.application.service import Service
from twisted.internet import defer
from twisted.logger import Logger

from txproxyctl.errors import (
    AwaitingConfirmation,
    ConsistencyError,
    NotAwaitingConfirmation,
    RevisionInProgress,
    )
from txproxyctl.model import ConfigRevision, running_snapshot
from txproxyctl.util import clock_now


log = Logger()

DEFAULT_CONFIRM_SECONDS = 60
# How soon an expired confirm window is retried while the gate is held.
BUSY_RETRY_SECONDS = 1


@attr.s(eq=False, hash=False)
class ConfigRevisionManager(Service):
    """
    Owns the running and candidate revisions.

    Commit, confirm, cancel, discard and promote all pass through a
    single-slot gate: while one of them is in progress, the others fail
    immediately with `~txproxyctl.errors.RevisionInProgress`.

    :param clock: ``IReactorTime`` provider; usually the reactor, when not
        testing.
    :param repository: The `~txproxyctl.interfaces.IRevisionRepository`.
    :param state: The `~txproxyctl.state.ProxyState` to publish snapshots
        to.
    """
    _clock = attr.ib()
    _repository = attr.ib()
    state = attr.ib()

    running_revision = attr.ib(default=None, init=False)
    _busy = attr.ib(default=False, init=False)
    _confirm_call = attr.ib(default=None, init=False)

    def _gated(self, f, *a, **kw):
        """
        Run ``f`` holding the gate.
        """
        if self._busy:
            return defer.fail(RevisionInProgress())
        self._busy = True

        def release(result):
            self._busy = False
            return result
        return defer.maybeDeferred(f, *a, **kw).addBoth(release)

    @property
    def busy(self):
        return self._busy

    @property
    def confirm_expiration(self):
        """
        When the open confirm window closes, or ``None``.

        :rtype: `~datetime.datetime`
        """
        if self._confirm_call is None or not self._confirm_call.active():
            return None
        return datetime.fromtimestamp(
            self._confirm_call.getTime(), tz=timezone.utc)

    @property
    def awaiting_confirmation(self):
        running = self.running_revision
        return running is not None and not running.confirmed

    def _start_confirm_window(self, seconds):
        self._cancel_confirm_window()
        self._confirm_call = self._clock.callLater(
            seconds, self._confirm_expired)

    def _cancel_confirm_window(self):
        if self._confirm_call is not None and self._confirm_call.active():
            self._confirm_call.cancel()
        self._confirm_call = None

    def _confirm_expired(self):
        self._confirm_call = None
        if self._busy:
            self._confirm_call = self._clock.callLater(
                BUSY_RETRY_SECONDS, self._confirm_expired)
            return None
        running = self.running_revision
        return (
            self._gated(
                self._rollback,
                u'Configuration was not confirmed within {} seconds.'.format(
                    running.confirm_seconds))
            .addErrback(
                lambda f: log.failure(
                    u'Unable to roll back unconfirmed revision {revision}',
                    f, revision=running.revision)))

    def _publish(self, revision):
        self.running_revision = revision
        return self.state.publish(running_snapshot(revision))

    @defer.inlineCallbacks
    def _get_candidate(self):
        try:
            candidate = yield self._repository.get(
                self.state.candidate_revision)
        except KeyError:
            raise ConsistencyError(
                u'Candidate revision {} does not exist.'.format(
                    self.state.candidate_revision))
        if not candidate.is_candidate:
            raise ConsistencyError(
                u'Revision {} is not a candidate.'.format(candidate.revision))
        return candidate

    @defer.inlineCallbacks
    def start(self):
        """
        Load the running revision and repair the candidate after a crash.

        Every uncommitted revision but the newest is reverted, a candidate is
        created if there is none, and the running revision is published.  If
        the running revision was never confirmed, its confirm window opens
        again.

        :rtype: ``Deferred[RunningSnapshot]``
        """
        running = yield self._repository.latest_running()
        if running is None:
            revision = yield self._repository.next_revision()
            running = ConfigRevision(
                revision=revision,
                committed=True,
                confirmed=True,
                committed_at=clock_now(self._clock))
            yield self._repository.transact(save=[running])
            log.info(
                u'Created initial configuration revision {revision}.',
                revision=revision)

        uncommitted = yield self._repository.uncommitted()
        save = []
        for errant in uncommitted[:-1]:
            log.warn(
                u"Errant candidate '{revision}' found. Setting as reverted.",
                revision=errant.revision)
            save.append(attr.evolve(
                errant, reverted=True,
                revert_reason=u'Errant candidate found at startup.'))
        if uncommitted:
            candidate = uncommitted[-1]
        else:
            revision = yield self._repository.next_revision()
            candidate = running.clone(revision)
            save.append(candidate)
        if save:
            yield self._repository.transact(save=save)
        self.state.candidate_revision = candidate.revision

        self._publish(running)
        if not running.confirmed:
            self._start_confirm_window(running.confirm_seconds)
        return self.state.snapshot

    def startService(self):
        Service.startService(self)
        self.start().addErrback(
            lambda f: log.failure(
                u'Unable to load the running configuration', f))

    def stopService(self):
        Service.stopService(self)
        self._cancel_confirm_window()

    def request_commit(self, confirm_seconds=DEFAULT_CONFIRM_SECONDS):
        """
        Commit the candidate revision and make it the running revision.

        A new candidate is cloned from the committed revision.  Unless the
        change requires a restart, a confirm window of ``confirm_seconds``
        opens.

        :raises ~txproxyctl.errors.AwaitingConfirmation: If the previous
            commit has not been confirmed yet.
        :raises ~txproxyctl.errors.RevisionInProgress: If another change is
            in progress.

        :rtype: ``Deferred[ConfigRevision]``
        :return: The committed revision.
        """
        return self._gated(self._request_commit, confirm_seconds)

    @defer.inlineCallbacks
    def _request_commit(self, confirm_seconds):
        if self.awaiting_confirmation:
            raise AwaitingConfirmation()
        candidate = yield self._get_candidate()
        committed = attr.evolve(
            candidate,
            committed=True,
            confirmed=False,
            committed_at=clock_now(self._clock),
            confirm_seconds=confirm_seconds)
        revision = yield self._repository.next_revision()
        new_candidate = committed.clone(revision)
        yield self._repository.transact(save=[committed, new_candidate])
        self.state.candidate_revision = revision
        log.info(
            u'Committed configuration revision {revision}.',
            revision=committed.revision)
        if self._publish(committed):
            self._start_confirm_window(confirm_seconds)
        return committed

    def confirm_commit(self):
        """
        Confirm the running revision.  Confirming twice does nothing.

        :rtype: ``Deferred``
        """
        return self._gated(self._confirm_commit)

    @defer.inlineCallbacks
    def _confirm_commit(self):
        if not self.awaiting_confirmation:
            return
        self._cancel_confirm_window()
        confirmed = attr.evolve(self.running_revision, confirmed=True)
        yield self._repository.transact(save=[confirmed])
        self.running_revision = confirmed
        log.info(
            u'Confirmed configuration revision {revision}.',
            revision=confirmed.revision)

    def cancel_confirm(self):
        """
        Roll back the running revision without waiting for its confirm window
        to close.

        :raises ~txproxyctl.errors.NotAwaitingConfirmation: If the running
            revision is already confirmed.

        :rtype: ``Deferred``
        """
        def cancel():
            if not self.awaiting_confirmation:
                raise NotAwaitingConfirmation()
            return self._rollback(u'Commit cancelled.')
        return self._gated(cancel)

    def listen_failed(self, reason):
        """
        Report that the listeners of the running revision could not be
        started; an unconfirmed revision is rolled back.

        :rtype: ``Deferred[bool]``
        :return: Whether a rollback took place.
        """
        def rollback():
            if not self.awaiting_confirmation:
                return False
            return self._rollback(reason).addCallback(lambda _: True)
        return self._gated(rollback)

    @defer.inlineCallbacks
    def _rollback(self, reason):
        """
        Revert the running revision and restore the previous one, with a
        fresh candidate based on it.
        """
        self._cancel_confirm_window()
        running = self.running_revision
        previous = yield self._repository.previous_running(running.revision)
        if previous is None:
            raise ConsistencyError(
                u'Unable to find a valid configuration to revert to.')
        reverted = attr.evolve(
            running, reverted=True, revert_reason=reason)
        revision = yield self._repository.next_revision()
        new_candidate = previous.clone(revision)
        yield self._repository.transact(
            save=[reverted, new_candidate],
            delete=[self.state.candidate_revision])
        self.state.candidate_revision = revision
        log.warn(
            u'Reverted configuration revision {reverted} to {restored}: '
            u'{reason}',
            reverted=running.revision, restored=previous.revision,
            reason=reason)
        self._publish(previous)
        return previous

    def discard_candidate(self):
        """
        Replace the candidate with a fresh copy of the running revision.

        :rtype: ``Deferred[ConfigRevision]``
        """
        return self._gated(self._promote, None)

    def promote_revision_to_candidate(self, target_revision):
        """
        Replace the candidate with a fresh copy of ``target_revision``.

        :raises KeyError: If there is no such revision.

        :rtype: ``Deferred[ConfigRevision]``
        :return: The new candidate.
        """
        return self._gated(self._promote, target_revision)

    @defer.inlineCallbacks
    def _promote(self, target_revision):
        if target_revision is None:
            if self.running_revision is None:
                raise ConsistencyError(
                    u'No configuration revision is running yet.')
            target_revision = self.running_revision.revision
        previous_candidate = self.state.candidate_revision
        try:
            target = yield self._repository.get(target_revision)
            revision = yield self._repository.next_revision()
            candidate = target.clone(revision)
            self.state.candidate_revision = revision
            yield self._repository.transact(
                save=[candidate], delete=[previous_candidate])
        except BaseException:
            self.state.candidate_revision = previous_candidate
            raise
        return candidate

    @defer.inlineCallbacks
    def changes_pending(self):
        """
        Whether the candidate differs from the running revision.

        :rtype: ``Deferred[bool]``
        """
        candidate = yield self._get_candidate()
        return candidate.content_hash() != self.state.snapshot.config_hash


__all__ = [
    'ConfigRevisionManager', 'DEFAULT_CONFIRM_SECONDS', 'BUSY_RETRY_SECONDS']
