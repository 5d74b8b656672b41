"""
Small keyed caches used by the ACME client.
"""
from collections import deque

import attr


@attr.s(eq=False, hash=False)
class NonceCache(object):
    """
    Per-key FIFO queues of single-use values.

    A value handed out by `pop` has been removed from the queue and will
    never be returned again.
    """
    _queues = attr.ib(default=attr.Factory(dict), init=False)

    def add(self, key, value):
        self._queues.setdefault(key, deque()).append(value)

    def pop(self, key):
        """
        Take the oldest value for ``key``.

        :return: The value, or ``None`` if there is nothing queued.
        """
        queue = self._queues.get(key)
        if not queue:
            return None
        return queue.popleft()

    def clear(self, key):
        self._queues.pop(key, None)

    def __len__(self):
        return sum(len(q) for q in self._queues.values())


@attr.s(eq=False, hash=False)
class ExpiringObjectCache(object):
    """
    Per-key values that vanish once their time to live has passed.

    :param clock: ``IReactorTime`` provider used to read the current time.
    """
    _clock = attr.ib()
    _entries = attr.ib(default=attr.Factory(dict), init=False)

    def get(self, key):
        """
        Get the live value for ``key``, dropping it if it has expired.

        :return: The value, or ``None``.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires, value = entry
        if expires >= self._clock.seconds():
            return value
        del self._entries[key]
        return None

    def set(self, key, value, ttl):
        """
        Store ``value`` for ``ttl`` (a `~datetime.timedelta`), replacing any
        previous value.
        """
        self._entries[key] = (
            self._clock.seconds() + ttl.total_seconds(), value)

    def discard(self, key):
        self._entries.pop(key, None)


__all__ = ['NonceCache', 'ExpiringObjectCache']
