"""
``txproxyctl.interfaces.IBlobStore`` implementations.
"""
from operator import methodcaller

import attr
from twisted.internet.defer import maybeDeferred
from zope.interface import implementer

from txproxyctl.interfaces import IBlobStore


@attr.s
@implementer(IBlobStore)
class DirectoryStore(object):
    """
    A blob store that keeps one file per key in a directory on disk.

    :param path: The directory, a ``twisted.python.filepath.FilePath``.
    :param str extension: Appended to the key to form the file name.
    """
    path = attr.ib(converter=methodcaller('asTextMode'))
    extension = attr.ib(default=u'.pem')

    def _child(self, key):
        return self.path.child(u'{}{}'.format(key, self.extension))

    def _get(self, key):
        """
        Synchronously retrieve an entry.
        """
        p = self._child(key)
        if p.isfile():
            return p.getContent()
        else:
            raise KeyError(key)

    def get(self, key):
        return maybeDeferred(self._get, key)

    def _store(self, key, data):
        if not self.path.exists():
            self.path.makedirs()
        self._child(key).setContent(data)

    def store(self, key, data):
        return maybeDeferred(self._store, key, data)

    def _delete(self, key):
        p = self._child(key)
        if p.exists():
            p.remove()

    def delete(self, key):
        return maybeDeferred(self._delete, key)


__all__ = ['DirectoryStore']
