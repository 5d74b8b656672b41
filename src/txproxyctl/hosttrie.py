"""
Hostname to certificate lookup for SNI.

Hostnames are stored label by label, most significant label first, so that
``www.example.com`` becomes ``com -> example -> www``.  A binding for
``*.example.com`` is stored under a literal ``*`` label and only answers for
names exactly one label below ``example.com``.
"""
import idna


WILDCARD = u'*'


def normalize_label(label):
    """
    Normalize a single DNS label to its lower-case ASCII (IDNA) form.

    :raises idna.IDNAError: if the label cannot be encoded.
    """
    if label == WILDCARD:
        return label
    try:
        label.encode('ascii')
    except UnicodeEncodeError:
        return idna.encode(label, uts46=True).decode('ascii')
    return label.lower()


def split_hostname(hostname):
    """
    Split a hostname into normalized labels, most significant first.

    A single trailing dot (fully-qualified form) is ignored.

    :rtype: List[str]
    """
    if hostname.endswith(u'.'):
        hostname = hostname[:-1]
    labels = hostname.split(u'.')
    if any(not label for label in labels):
        raise ValueError('Empty label in hostname {!r}'.format(hostname))
    labels.reverse()
    return [normalize_label(label) for label in labels]


class _Node(object):
    __slots__ = ('children', 'value')

    def __init__(self):
        self.children = {}
        self.value = None


class HostTrie(object):
    """
    An immutable mapping from hostnames (and single-label wildcards) to
    certificate ids.

    :param bindings: An iterable of ``(host, certificate_id)`` pairs.  Later
        bindings for the same host replace earlier ones.
    """
    def __init__(self, bindings=()):
        root = _Node()
        count = 0
        for host, certificate_id in bindings:
            node = root
            for label in split_hostname(host):
                node = node.children.setdefault(label, _Node())
            if node.value is None:
                count += 1
            node.value = certificate_id
        self._root = root
        self._count = count

    def __len__(self):
        return self._count

    def lookup(self, hostname):
        """
        Find the certificate id for a hostname.

        An exact match on the last label wins over a wildcard sibling.

        :rtype: Optional[certificate id]
        :return: The certificate id, or ``None`` if nothing matches (including
            hostnames that are not valid IDNA).
        """
        try:
            labels = split_hostname(hostname)
        except (ValueError, idna.IDNAError):
            return None

        node = self._root
        for label in labels[:-1]:
            node = node.children.get(label)
            if node is None:
                return None

        exact = node.children.get(labels[-1])
        if exact is not None and exact.value is not None:
            return exact.value
        wildcard = node.children.get(WILDCARD)
        if wildcard is not None:
            return wildcard.value
        return None

    def __contains__(self, hostname):
        return self.lookup(hostname) is not None


__all__ = ['HostTrie', 'normalize_label', 'split_hostname']
