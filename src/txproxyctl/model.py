"""
Configuration revisions and the running snapshot derived from them.

A `ConfigRevision` is one numbered version of the proxy configuration.  The
highest committed, unreverted revision is the one that is running; its
`RunningSnapshot` is computed once, wholesale, and never changed afterwards.
"""
import hashlib
import json

import attr
from idna import IDNAError

from txproxyctl.hosttrie import HostTrie, split_hostname


@attr.s(frozen=True)
class AdminSettings(object):
    """
    Where and how the administrative listener is served.
    """
    port = attr.ib(default=8443)
    listen_any = attr.ib(default=False)
    certificate_id = attr.ib(default=None)


@attr.s(frozen=True)
class SniBinding(object):
    """
    Serve ``certificate_id`` for ``host``; ``host`` may carry a single
    leading ``*`` label.
    """
    host = attr.ib()
    certificate_id = attr.ib()


@attr.s(frozen=True)
class Route(object):
    """
    The part of a route the control plane cares about: which ports it listens
    on.  ``options`` is handed through to the routing engine untouched.
    """
    id = attr.ib()
    name = attr.ib()
    http_port = attr.ib(default=None)
    https_port = attr.ib(default=None)
    disabled = attr.ib(default=False)
    options = attr.ib(default=attr.Factory(dict), hash=False)


@attr.s(frozen=True)
class Topology(object):
    """
    Routes and clusters, as consumed by the routing engine.
    """
    routes = attr.ib(default=(), converter=tuple)
    clusters = attr.ib(default=(), converter=tuple, hash=False)


@attr.s(frozen=True)
class ConfigRevision(object):
    """
    One stored configuration revision.

    Rows are immutable values; state changes are made with `attr.evolve` and
    written back through the revision repository.
    """
    revision = attr.ib()
    based_on_revision = attr.ib(default=0)
    committed = attr.ib(default=False)
    confirmed = attr.ib(default=False)
    reverted = attr.ib(default=False)
    revert_reason = attr.ib(default=None)
    committed_at = attr.ib(default=None)
    confirm_seconds = attr.ib(default=60)
    admin = attr.ib(default=attr.Factory(AdminSettings))
    fallback_certificate_id = attr.ib(default=None)
    bindings = attr.ib(default=(), converter=tuple)
    topology = attr.ib(default=attr.Factory(Topology))

    @property
    def is_candidate(self):
        return not self.committed and not self.reverted

    @property
    def is_running(self):
        return self.committed and not self.reverted

    def clone(self, new_revision):
        """
        Copy this revision's content into a fresh, editable revision.
        """
        return attr.evolve(
            self,
            revision=new_revision,
            based_on_revision=self.revision,
            committed=False,
            confirmed=False,
            reverted=False,
            revert_reason=None,
            committed_at=None)

    def _comparable(self):
        # confirm_seconds is chosen at commit time and is not content.
        return {
            u'admin': {
                u'port': self.admin.port,
                u'listen_any': self.admin.listen_any,
                u'certificate_id': _text_or_none(self.admin.certificate_id),
            },
            u'fallback_certificate_id': _text_or_none(
                self.fallback_certificate_id),
            u'bindings': [
                {u'host': b.host,
                 u'certificate_id': _text_or_none(b.certificate_id)}
                for b in sorted(self.bindings, key=lambda b: b.host.lower())],
            u'routes': [
                {u'id': _text_or_none(r.id),
                 u'name': r.name,
                 u'http_port': r.http_port,
                 u'https_port': r.https_port,
                 u'disabled': r.disabled,
                 u'options': r.options}
                for r in sorted(
                    self.topology.routes, key=lambda r: str(r.id))],
            u'clusters': list(self.topology.clusters),
        }

    def content_hash(self):
        """
        A hex SHA-256 over the revision's content, independent of its number
        and lifecycle flags.
        """
        data = json.dumps(
            self._comparable(), sort_keys=True, separators=(',', ':'),
            default=str)
        return hashlib.sha256(data.encode('utf-8')).hexdigest().upper()


def _text_or_none(value):
    return None if value is None else str(value)


@attr.s(frozen=True)
class RunningSnapshot(object):
    """
    The immutable projection of the running revision.
    """
    revision = attr.ib()
    config_hash = attr.ib()
    committed_at = attr.ib()
    admin = attr.ib()
    fallback_certificate_id = attr.ib()
    http_ports = attr.ib(converter=frozenset)
    https_ports = attr.ib(converter=frozenset)
    routes = attr.ib(converter=tuple)
    clusters = attr.ib(converter=tuple, hash=False)
    bindings = attr.ib(converter=tuple)
    sni = attr.ib(eq=False, repr=False)
    warnings = attr.ib(default=(), converter=tuple)
    errors = attr.ib(default=(), converter=tuple)

    @property
    def proxy_ports(self):
        return self.http_ports | self.https_ports

    @property
    def certificate_ids(self):
        """
        The ids of certificates referenced by the active SNI bindings.
        """
        return frozenset(b.certificate_id for b in self.bindings)

    def requires_restart(self, new):
        """
        Whether swapping to ``new`` needs the listeners to be rebuilt.
        """
        return (
            self.admin.port != new.admin.port or
            self.admin.listen_any != new.admin.listen_any or
            self.http_ports != new.http_ports or
            self.https_ports != new.https_ports or
            # Refusing vs. falling back for unknown SNI names.
            (self.fallback_certificate_id is None) !=
            (new.fallback_certificate_id is None))


def running_snapshot(revision):
    """
    Compute the `RunningSnapshot` for a committed revision.

    Routes with port conflicts and bindings with malformed hosts are dropped
    and reported in ``errors``; disabled routes are reported in
    ``warnings``.
    """
    warnings = []
    errors = []
    http_ports = set()
    https_ports = set()
    routes = []
    admin_port = revision.admin.port

    for route in revision.topology.routes:
        if route.disabled:
            warnings.append(
                u'Route {} is administratively disabled.'.format(route.name))
            continue
        ejected = False
        for scheme, port, ports in [(u'http', route.http_port, http_ports),
                                    (u'https', route.https_port, https_ports)]:
            if port is None:
                continue
            if port == admin_port:
                errors.append(
                    u'Route {} ejected. {} port {} conflicts with the admin '
                    u'port.'.format(route.name, scheme, port))
                ejected = True
            else:
                ports.add(port)
        if not ejected:
            routes.append(route)

    for port in sorted(http_ports & https_ports):
        for route in [r for r in routes if r.http_port == port]:
            errors.append(
                u'Route {} ejected. http port {} conflicts with the https '
                u'port of this or another route.'.format(route.name, port))
            routes.remove(route)
        http_ports.discard(port)

    bindings = []
    for binding in revision.bindings:
        try:
            split_hostname(binding.host)
        except (ValueError, IDNAError) as e:
            errors.append(
                u'SNI binding {!r} ignored: {}'.format(binding.host, e))
            continue
        bindings.append(binding)

    return RunningSnapshot(
        revision=revision.revision,
        config_hash=revision.content_hash(),
        committed_at=revision.committed_at,
        admin=revision.admin,
        fallback_certificate_id=revision.fallback_certificate_id,
        http_ports=http_ports,
        https_ports=https_ports,
        routes=routes,
        clusters=revision.topology.clusters,
        bindings=bindings,
        sni=HostTrie((b.host, b.certificate_id) for b in bindings),
        warnings=warnings,
        errors=errors)


__all__ = [
    'AdminSettings', 'SniBinding', 'Route', 'Topology', 'ConfigRevision',
    'RunningSnapshot', 'running_snapshot']
