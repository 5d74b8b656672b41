from datetime import datetime, timezone

from twisted.internet.defer import Deferred, fail
from twisted.trial.unittest import TestCase

from txproxyctl.model import (
    AdminSettings, ConfigRevision, SniBinding, running_snapshot)
from txproxyctl.state import ProxyState


def _snapshot(revision, **kw):
    return running_snapshot(ConfigRevision(
        revision=revision,
        committed=True,
        confirmed=True,
        committed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        **kw))


class ProxyStateTests(TestCase):
    """
    `.ProxyState` holds the running snapshot and tells observers about new
    ones.
    """
    def setUp(self):
        self.state = ProxyState()
        self.seen = []

    def test_subscribe_before_publish(self):
        """
        Nothing is delivered until a snapshot is published.
        """
        self.state.subscribe(self.seen.append)
        self.assertEqual([], self.seen)
        snapshot = _snapshot(1)
        self.assertTrue(self.state.publish(snapshot))
        self.assertEqual([snapshot], self.seen)
        self.assertIs(snapshot, self.state.snapshot)

    def test_subscribe_after_publish(self):
        """
        A late subscriber gets the current snapshot straight away.
        """
        snapshot = _snapshot(1)
        self.state.publish(snapshot)
        self.state.subscribe(self.seen.append)
        self.assertEqual([snapshot], self.seen)

    def test_unsubscribe(self):
        unsubscribe = self.state.subscribe(self.seen.append)
        unsubscribe()
        self.state.publish(_snapshot(1))
        self.assertEqual([], self.seen)

    def test_observer_errors_logged(self):
        """
        A failing observer, synchronous or not, is logged and does not stop
        the others from being told.
        """
        def broken(snapshot):
            raise ZeroDivisionError()
        self.state.subscribe(broken)
        self.state.subscribe(lambda snapshot: fail(ValueError()))
        self.state.subscribe(self.seen.append)
        snapshot = _snapshot(1)
        self.assertTrue(self.state.publish(snapshot))
        self.assertEqual([snapshot], self.seen)
        self.assertEqual(1, len(self.flushLoggedErrors(ZeroDivisionError)))
        self.assertEqual(1, len(self.flushLoggedErrors(ValueError)))

    def test_swap(self):
        """
        A snapshot that only changes bindings is swapped in.
        """
        self.state.publish(_snapshot(1))
        self.state.subscribe(self.seen.append)
        second = _snapshot(
            2, bindings=[SniBinding(u'example.com', u'cert-1')])
        self.assertTrue(self.state.publish(second))
        self.assertIs(second, self.state.snapshot)
        self.assertFalse(self.state.restart_requested)
        self.assertEqual(2, len(self.seen))

    def test_restart_required(self):
        """
        A snapshot that changes the listeners is not swapped in; a restart
        is requested instead.
        """
        first = _snapshot(1)
        self.state.publish(first)
        d = self.state.when_restart_requested()
        self.assertNoResult(d)

        self.assertFalse(
            self.state.publish(
                _snapshot(2, admin=AdminSettings(port=9443))))
        self.assertIs(first, self.state.snapshot)
        self.assertTrue(self.state.restart_requested)
        self.successResultOf(d)
        self.successResultOf(self.state.when_restart_requested())

    def test_restart_wait_cancelled(self):
        d = self.state.when_restart_requested()
        self.assertIsInstance(d, Deferred)
        d.cancel()
        self.failureResultOf(d)
        self.state.request_restart()
        self.assertEqual([], self.state._restart_waiting)
