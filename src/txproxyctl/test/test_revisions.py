"""
Tests for `txproxyctl.revisions`.
"""
from datetime import datetime, timezone

import attr
from twisted.internet.defer import Deferred
from twisted.internet.task import Clock
from twisted.trial.unittest import TestCase

from txproxyctl.errors import (
    AwaitingConfirmation, ConsistencyError, NotAwaitingConfirmation,
    RevisionInProgress)
from txproxyctl.model import AdminSettings, ConfigRevision, SniBinding
from txproxyctl.revisions import ConfigRevisionManager
from txproxyctl.state import ProxyState
from txproxyctl.testing import MemoryRevisionRepository


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _running(revision, confirmed=True, **kw):
    return ConfigRevision(
        revision=revision,
        committed=True,
        confirmed=confirmed,
        committed_at=EPOCH,
        **kw)


class ConfigRevisionManagerTests(TestCase):
    """
    `.ConfigRevisionManager` commits candidates and rolls back commits that
    are not confirmed.
    """
    def setUp(self):
        self.clock = Clock()
        self.state = ProxyState()

    def manager(self, revisions=()):
        self.repository = MemoryRevisionRepository(revisions)
        return ConfigRevisionManager(
            clock=self.clock, repository=self.repository, state=self.state)

    def started(self, revisions=()):
        manager = self.manager(revisions)
        self.successResultOf(manager.start())
        return manager

    def edit_candidate(self, **changes):
        revision = self.state.candidate_revision
        self.repository.revisions[revision] = attr.evolve(
            self.repository.revisions[revision], **changes)

    def committed(self, confirm_seconds=10):
        """
        Start from nothing and commit an edited candidate.
        """
        manager = self.started()
        self.edit_candidate(
            bindings=[SniBinding(u'example.com', u'cert-1')])
        self.successResultOf(manager.request_commit(confirm_seconds))
        return manager

    def block_transactions(self):
        """
        Make repository transactions wait until the returned ``Deferred``
        fires.
        """
        blocked = Deferred()
        self.repository.transact = lambda save=(), delete=(): blocked
        self.addCleanup(lambda: vars(self.repository).pop('transact', None))
        return blocked

    def test_bootstrap(self):
        """
        With no revisions at all, a confirmed initial revision and a
        candidate based on it are created.
        """
        manager = self.manager()
        snapshot = self.successResultOf(manager.start())
        self.assertEqual(1, snapshot.revision)
        self.assertEqual([1], [r.revision for r in self.repository.running()])
        [candidate] = self.repository.candidates()
        self.assertEqual((2, 1), (candidate.revision,
                                  candidate.based_on_revision))
        self.assertEqual(2, self.state.candidate_revision)
        self.assertFalse(manager.awaiting_confirmation)
        self.assertIsNone(manager.confirm_expiration)

    def test_errant_candidates(self):
        """
        Only the newest uncommitted revision stays a candidate; older ones
        are reverted.
        """
        self.started([
            _running(1),
            ConfigRevision(revision=2, based_on_revision=1),
            ConfigRevision(revision=3, based_on_revision=1)])
        self.assertEqual(3, self.state.candidate_revision)
        errant = self.repository.revisions[2]
        self.assertTrue(errant.reverted)
        self.assertEqual(
            u'Errant candidate found at startup.', errant.revert_reason)
        self.assertEqual([3], [r.revision
                               for r in self.repository.candidates()])

    def test_start_unconfirmed(self):
        """
        An unconfirmed running revision gets a new confirm window on startup,
        and is rolled back when it closes.
        """
        manager = self.started([
            _running(1),
            _running(2, confirmed=False, confirm_seconds=30),
            ConfigRevision(revision=3, based_on_revision=2)])
        self.assertEqual(2, self.state.snapshot.revision)
        self.assertTrue(manager.awaiting_confirmation)
        self.assertEqual(
            datetime.fromtimestamp(30, tz=timezone.utc),
            manager.confirm_expiration)

        self.clock.advance(29)
        self.assertEqual(2, self.state.snapshot.revision)
        self.clock.advance(1)
        self.assertEqual(1, self.state.snapshot.revision)
        reverted = self.repository.revisions[2]
        self.assertTrue(reverted.reverted)
        self.assertEqual(
            u'Configuration was not confirmed within 30 seconds.',
            reverted.revert_reason)
        self.assertNotIn(3, self.repository.revisions)
        candidate = self.repository.revisions[self.state.candidate_revision]
        self.assertEqual(1, candidate.based_on_revision)
        self.assertEqual([], self.clock.getDelayedCalls())

    def test_changes_pending(self):
        manager = self.started()
        self.assertFalse(self.successResultOf(manager.changes_pending()))
        self.edit_candidate(fallback_certificate_id=u'cert-1')
        self.assertTrue(self.successResultOf(manager.changes_pending()))

    def test_commit(self):
        """
        Committing makes the candidate the running revision, clones a new
        candidate from it, and opens the confirm window.
        """
        manager = self.committed(confirm_seconds=10)
        self.assertEqual(2, self.state.snapshot.revision)
        self.assertEqual(
            frozenset([u'cert-1']), self.state.snapshot.certificate_ids)
        self.assertEqual(3, self.state.candidate_revision)
        self.assertEqual(
            2, self.repository.revisions[3].based_on_revision)
        committed = self.repository.revisions[2]
        self.assertEqual(
            (True, False, 10),
            (committed.committed, committed.confirmed,
             committed.confirm_seconds))
        self.assertTrue(manager.awaiting_confirmation)
        self.assertEqual(
            datetime.fromtimestamp(10, tz=timezone.utc),
            manager.confirm_expiration)
        self.assertFalse(self.successResultOf(manager.changes_pending()))

    def test_commit_awaiting_confirmation(self):
        """
        Nothing can be committed while the last commit is unconfirmed.
        """
        manager = self.committed()
        self.failureResultOf(manager.request_commit(), AwaitingConfirmation)
        self.assertEqual(3, self.state.candidate_revision)

    def test_commit_requiring_restart(self):
        """
        A commit that changes the listeners requests a restart instead of
        opening a confirm window.
        """
        manager = self.started()
        self.edit_candidate(admin=AdminSettings(port=9443))
        self.successResultOf(manager.request_commit())
        self.assertTrue(self.state.restart_requested)
        self.assertEqual(1, self.state.snapshot.revision)
        self.assertEqual([], self.clock.getDelayedCalls())

    def test_confirm(self):
        """
        Confirming closes the confirm window; confirming again does nothing.
        """
        manager = self.committed()
        self.successResultOf(manager.confirm_commit())
        self.assertTrue(self.repository.revisions[2].confirmed)
        self.assertFalse(manager.awaiting_confirmation)
        self.assertEqual([], self.clock.getDelayedCalls())

        self.successResultOf(manager.confirm_commit())
        self.clock.advance(60)
        self.assertEqual(2, self.state.snapshot.revision)

    def test_cancel_confirm(self):
        """
        Cancelling rolls back to the previous running revision at once.
        """
        manager = self.committed()
        restored = self.successResultOf(manager.cancel_confirm())
        self.assertEqual(1, restored.revision)
        self.assertEqual(1, self.state.snapshot.revision)
        self.assertEqual(
            u'Commit cancelled.', self.repository.revisions[2].revert_reason)
        self.assertEqual(4, self.state.candidate_revision)
        self.assertEqual(
            1, self.repository.revisions[4].based_on_revision)
        self.assertNotIn(3, self.repository.revisions)
        self.assertEqual([], self.clock.getDelayedCalls())

        self.failureResultOf(
            manager.cancel_confirm(), NotAwaitingConfirmation)

    def test_listen_failed(self):
        manager = self.committed()
        self.assertTrue(
            self.successResultOf(manager.listen_failed(u'Port 443 in use')))
        self.assertEqual(
            u'Port 443 in use', self.repository.revisions[2].revert_reason)
        self.assertFalse(
            self.successResultOf(manager.listen_failed(u'Port 443 in use')))

    def test_nothing_to_roll_back_to(self):
        """
        Rolling back without an earlier running revision is an error.
        """
        manager = self.started([
            _running(1, confirmed=False),
            ConfigRevision(revision=2, based_on_revision=1)])
        self.failureResultOf(manager.cancel_confirm(), ConsistencyError)
        self.assertFalse(self.repository.revisions[1].reverted)
        self.assertFalse(manager.busy)

    def test_expiry_nothing_to_roll_back_to(self):
        """
        A failed rollback when the confirm window closes is logged.
        """
        self.started([
            _running(1, confirmed=False),
            ConfigRevision(revision=2, based_on_revision=1)])
        self.clock.advance(60)
        self.assertEqual(
            1, len(self.flushLoggedErrors(ConsistencyError)))
        self.assertFalse(self.repository.revisions[1].reverted)
        self.assertEqual(1, self.state.snapshot.revision)

    def test_gate(self):
        """
        While one change is in progress, the others fail at once.
        """
        manager = self.started()
        blocked = self.block_transactions()
        d = manager.discard_candidate()
        self.assertTrue(manager.busy)
        self.failureResultOf(manager.request_commit(), RevisionInProgress)
        self.failureResultOf(manager.confirm_commit(), RevisionInProgress)
        self.failureResultOf(
            manager.promote_revision_to_candidate(1), RevisionInProgress)

        blocked.callback(None)
        self.successResultOf(d)
        self.assertFalse(manager.busy)

    def test_expiry_while_busy(self):
        """
        A confirm window closing while another change holds the gate is
        retried shortly after.
        """
        manager = self.committed(confirm_seconds=10)
        blocked = self.block_transactions()
        manager.discard_candidate()
        self.clock.advance(10)
        self.assertEqual(2, self.state.snapshot.revision)

        blocked.callback(None)
        vars(self.repository).pop('transact')
        self.clock.advance(1)
        self.assertEqual(1, self.state.snapshot.revision)
        self.assertTrue(self.repository.revisions[2].reverted)

    def test_promote(self):
        """
        Any stored revision can be copied into a new candidate, replacing
        the current one.
        """
        manager = self.committed()
        candidate = self.successResultOf(
            manager.promote_revision_to_candidate(1))
        self.assertEqual((4, 1), (candidate.revision,
                                  candidate.based_on_revision))
        self.assertEqual(4, self.state.candidate_revision)
        self.assertNotIn(3, self.repository.revisions)
        self.assertTrue(self.successResultOf(manager.changes_pending()))

        candidate = self.successResultOf(manager.discard_candidate())
        self.assertEqual(2, candidate.based_on_revision)
        self.assertFalse(self.successResultOf(manager.changes_pending()))

    def test_promote_unknown(self):
        manager = self.started()
        self.failureResultOf(
            manager.promote_revision_to_candidate(99), KeyError)
        self.assertEqual(2, self.state.candidate_revision)

    def test_discard_before_start(self):
        manager = self.manager()
        self.failureResultOf(manager.discard_candidate(), ConsistencyError)
        self.assertFalse(manager.busy)

    def test_promote_transaction_failed(self):
        """
        If the new candidate can't be stored, the old one stays the
        candidate.
        """
        manager = self.started()
        self.repository.fail_transactions = 1
        self.failureResultOf(manager.discard_candidate(), RuntimeError)
        self.assertEqual(2, self.state.candidate_revision)
        self.assertIn(2, self.repository.revisions)
        self.assertFalse(manager.busy)

    def test_service(self):
        """
        Starting the service loads the running revision; stopping it closes
        the confirm window without rolling back.
        """
        manager = self.manager([
            _running(1),
            _running(2, confirmed=False),
            ConfigRevision(revision=3, based_on_revision=2)])
        manager.startService()
        self.assertEqual(2, self.state.snapshot.revision)
        self.assertEqual(1, len(self.clock.getDelayedCalls()))
        manager.stopService()
        self.assertEqual([], self.clock.getDelayedCalls())
        self.assertFalse(self.repository.revisions[2].reverted)
