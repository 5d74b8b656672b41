"""
The process-wide proxy state, held by one explicit object.
"""
import attr
from twisted.internet import defer
from twisted.logger import Logger


log = Logger()


@attr.s(eq=False, hash=False)
class ProxyState(object):
    """
    The running snapshot, the candidate pointer, and the broadcast of snapshot
    changes to the components that derive state from them.

    :ivar snapshot: The current `~txproxyctl.model.RunningSnapshot`, or
        ``None`` before the first one is published.
    :ivar candidate_revision: The revision number open for editing.
    :ivar bool restart_requested: Whether a published snapshot could not be
        swapped in because the listeners have to be rebuilt.
    """
    snapshot = attr.ib(default=None)
    candidate_revision = attr.ib(default=None)
    restart_requested = attr.ib(default=False, init=False)
    _observers = attr.ib(default=attr.Factory(list), init=False)
    _restart_waiting = attr.ib(default=attr.Factory(list), init=False)

    def subscribe(self, observer):
        """
        Call ``observer`` with every new snapshot.

        If a snapshot has already been published, ``observer`` is called with
        it straight away.  An observer may return a ``Deferred``; failures,
        synchronous or not, are logged.

        :return: A 0-arg callable that unsubscribes.
        """
        self._observers.append(observer)
        if self.snapshot is not None:
            self._notify(observer, self.snapshot)
        return lambda: self._observers.remove(observer)

    def _notify(self, observer, snapshot):
        return (
            defer.maybeDeferred(observer, snapshot)
            .addErrback(
                lambda f: log.failure(
                    u'Error delivering configuration revision {revision}',
                    f, revision=snapshot.revision)))

    def publish(self, snapshot):
        """
        Make ``snapshot`` the running snapshot and tell every observer.

        If the listeners would have to change to serve it, the swap is not
        made; a restart is requested instead.

        :rtype: bool
        :return: Whether the snapshot was swapped in.
        """
        previous = self.snapshot
        if previous is not None and previous.requires_restart(snapshot):
            log.warn(
                u'Configuration revision {revision} changes the listeners; '
                u'a restart is required.',
                revision=snapshot.revision)
            self.request_restart()
            return False
        self.snapshot = snapshot
        for observer in list(self._observers):
            self._notify(observer, snapshot)
        return True

    def request_restart(self):
        self.restart_requested = True
        waiting, self._restart_waiting = self._restart_waiting, []
        for d in waiting:
            d.callback(None)

    def when_restart_requested(self):
        """
        Get a notification once a restart has been requested.

        :rtype: ``Deferred``
        """
        if self.restart_requested:
            return defer.succeed(None)
        d = defer.Deferred(lambda d: self._restart_waiting.remove(d))
        self._restart_waiting.append(d)
        return d


__all__ = ['ProxyState']
