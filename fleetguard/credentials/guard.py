"""Credential guard manager.

Attaches guard markers to shared broker credentials that a node group
depends on and detaches them once nothing in the fleet can still be using
the credential.  A marker reads ``<prefix>/<guard id>-<service>`` where the
guard id is the first 8 hex characters of SHA-256 of the node group name.

Decisions are derived only from the service tracking records and the live
credential secrets, so a pass interrupted at any point is completed by
simply running it again.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

import structlog

from fleetguard.credentials.identity import IdentityResolver, get_resolver
from fleetguard.fingerprint import credential_fingerprint
from fleetguard.models.fleet import NodeGroup, Secret, Service, SharedCredential
from fleetguard.observability.metrics import guard_marker_changes_total
from fleetguard.store.base import RecordStore, StoreError, retry_on_conflict
from fleetguard.tracking.store import ServiceTrackingRecord, ServiceTrackingStore

_log = structlog.get_logger(component="guard")

GUARD_ID_LENGTH = 8
MAX_MARKER_LENGTH = 63


class GuardMarkerError(ValueError):
    """Raised when a guard marker would exceed the marker length limit."""


def guard_id(name: str) -> str:
    return hashlib.sha256(name.encode("utf-8")).hexdigest()[:GUARD_ID_LENGTH]


def guard_marker(prefix: str, gid: str, service: str) -> str:
    marker = f"{prefix}/{gid}-{service}"
    if len(marker) > MAX_MARKER_LENGTH:
        raise GuardMarkerError(
            f"guard marker {marker!r} is {len(marker)} characters, limit is {MAX_MARKER_LENGTH}"
        )
    return marker


@dataclass
class GuardReport:
    """What one guard pass did for a (node group, service) pair."""

    node_group: str
    service: str
    marker: str = ""
    safe_to_release: bool = False
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    tracking_current: bool = True
    failed: list[str] = field(default_factory=list)
    skipped: str = ""


def _all_nodes_updated(node_group: NodeGroup, tracking: ServiceTrackingRecord) -> bool:
    return set(node_group.node_names) <= set(tracking.updated_nodes)


class CredentialGuardManager:
    def __init__(
        self,
        store: RecordStore,
        tracking: ServiceTrackingStore,
        prefix: str,
        conflict_retries: int = 5,
    ) -> None:
        self._store = store
        self._tracking = tracking
        self._prefix = prefix
        self._retries = conflict_retries

    def reconcile(self, node_group: NodeGroup, service: Service) -> GuardReport:
        """Run one guard pass for *service* on *node_group*.

        Markers are added to every credential in use as soon as any node has
        adopted the current credential material.  Markers on credentials no
        longer in use are removed only when every node of this group and of
        every peer group sharing the broker has adopted it.
        """
        report = GuardReport(node_group=node_group.name, service=service.name)
        log = _log.bind(namespace=node_group.namespace, node_group=node_group.name, service=service.name)

        resolver = get_resolver(service.credential_kind)
        if resolver is None:
            report.skipped = "service kind has no credential identity resolver"
            return report

        tracking = self._tracking.get(node_group, service.name)
        if not tracking.credential_fingerprint:
            report.skipped = "no credential fingerprint observed"
            log.debug("guard_skipped", reason=report.skipped)
            return report
        if not tracking.updated_nodes:
            report.skipped = "no nodes updated"
            log.debug("guard_skipped", reason=report.skipped)
            return report

        secrets = self._store.list(Secret, node_group.namespace)
        live = credential_fingerprint(resolver.credential_secrets(secrets))
        # Updated nodes only count for the credentials they were recorded against.
        report.tracking_current = not live or live == tracking.credential_fingerprint
        group_updated = _all_nodes_updated(node_group, tracking)
        peers_updated = self._peers_updated(node_group, service, tracking, resolver, secrets)
        report.safe_to_release = report.tracking_current and group_updated and peers_updated
        if not report.tracking_current:
            log.info("guard_tracking_stale", reason="credentials changed since nodes were recorded")

        in_use = resolver.identities(secrets)
        if not in_use:
            report.skipped = "no credentials in use"
            log.info("guard_skipped", reason=report.skipped)
            return report

        try:
            gid = node_group.status.guard_id or guard_id(node_group.name)
            report.marker = guard_marker(self._prefix, gid, service.name)
        except GuardMarkerError as exc:
            report.skipped = str(exc)
            log.error("guard_marker_invalid", error=str(exc))
            return report

        log.info(
            "guard_pass",
            marker=report.marker,
            updated_nodes=len(tracking.updated_nodes),
            total_nodes=len(node_group.nodes),
            group_updated=group_updated,
            peers_updated=peers_updated,
            tracking_current=report.tracking_current,
            in_use=sorted(in_use),
            clusters=sorted(resolver.clusters(secrets)),
        )

        for credential in self._store.list(SharedCredential, node_group.namespace):
            is_in_use = credential.name in in_use or (bool(credential.username) and credential.username in in_use)
            has_marker = report.marker in credential.finalizers
            if is_in_use and not has_marker:
                self._apply(credential, report, add=True)
            elif not is_in_use and has_marker and report.safe_to_release:
                self._apply(credential, report, add=False)
            elif not is_in_use and has_marker:
                report.pending.append(credential.name)
                log.info(
                    "guard_release_pending",
                    credential=credential.name,
                    marker=report.marker,
                    updated_nodes=len(tracking.updated_nodes),
                    total_nodes=len(node_group.nodes),
                )
        return report

    def _peers_updated(
        self,
        node_group: NodeGroup,
        service: Service,
        tracking: ServiceTrackingRecord,
        resolver: IdentityResolver,
        secrets: list[Secret],
    ) -> bool:
        """True when every peer group sharing the broker has adopted *tracking*'s fingerprint.

        A peer with no nodes, or for which no credential secret resolves, is
        treated as updated.  Credential secrets are namespace scoped, so every
        group in the namespace resolves the same broker clusters and counts
        as a peer.
        """
        if not resolver.credential_secrets(secrets):
            return True
        for peer in self._store.list(NodeGroup, node_group.namespace):
            if peer.name == node_group.name or service.name not in peer.services or not peer.nodes:
                continue
            peer_tracking = self._tracking.get(peer, service.name)
            if peer_tracking.credential_fingerprint != tracking.credential_fingerprint or not _all_nodes_updated(
                peer, peer_tracking
            ):
                _log.debug(
                    "guard_peer_not_updated",
                    namespace=node_group.namespace,
                    node_group=node_group.name,
                    peer=peer.name,
                    service=service.name,
                )
                return False
        return True

    def _apply(self, credential: SharedCredential, report: GuardReport, add: bool) -> None:
        marker = report.marker
        action = "added" if add else "removed"

        def attempt() -> bool:
            current = self._store.get(SharedCredential, credential.namespace, credential.name)
            if add and marker not in current.finalizers:
                current.finalizers.append(marker)
            elif not add and marker in current.finalizers:
                current.finalizers = [f for f in current.finalizers if f != marker]
            else:
                return False
            self._store.update(current)
            return True

        try:
            changed = retry_on_conflict(attempt, self._retries, kind=SharedCredential.kind)
        except StoreError as exc:
            report.failed.append(credential.name)
            guard_marker_changes_total.labels(action="failed").inc()
            _log.error(
                "guard_marker_update_failed",
                namespace=credential.namespace,
                credential=credential.name,
                marker=marker,
                action=action,
                error=str(exc),
            )
            return
        if not changed:
            return
        (report.added if add else report.removed).append(credential.name)
        guard_marker_changes_total.labels(action=action).inc()
        _log.info(
            f"guard_marker_{action}",
            namespace=credential.namespace,
            credential=credential.name,
            marker=marker,
            service=report.service,
            node_group=report.node_group,
        )

    def release_all(self, node_group: NodeGroup) -> list[str]:
        """Remove every marker this node group holds, for any service.

        Used when the node group itself is deleted.  Returns the names of
        the credentials whose markers were removed.
        """
        gid = node_group.status.guard_id or guard_id(node_group.name)
        owned = f"{self._prefix}/{gid}-"
        released: list[str] = []
        for credential in self._store.list(SharedCredential, node_group.namespace):
            for marker in [f for f in credential.finalizers if f.startswith(owned)]:
                report = GuardReport(node_group=node_group.name, service=marker[len(owned) :], marker=marker)
                self._apply(credential, report, add=False)
                if report.failed:
                    raise StoreError(f"releasing {marker} on credential {credential.name} failed")
                released.extend(report.removed)
        return released
