"""Credential identity registry.

Each service kind that consumes a shared broker credential registers an
IdentityResolver describing where its live credential material lives and
how to read the broker username and cluster out of it.  The guard manager
and the node group reconciler look resolvers up by service kind; service
kinds without a resolver are not tracked.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import ClassVar
from urllib.parse import urlsplit

import structlog

from fleetguard.models.fleet import Secret

_log = structlog.get_logger(component="identity")

_TRANSPORT_USER = re.compile(r"transport_url\s*=\s*rabbit[^:]*://([^:]+):")
_TRANSPORT_URL = re.compile(r"transport_url\s*=\s*(rabbit\S+)")


class IdentityNotFoundError(LookupError):
    """Raised when no broker identity can be read from a credential secret."""


# ---------------------------------------------------------------------------
# Transport URL helpers
# ---------------------------------------------------------------------------


def _as_http(transport_url: str) -> str:
    url = transport_url.replace("rabbit://", "http://", 1)
    return url.replace("rabbit+tls://", "http://", 1)


def parse_username_from_transport_url(transport_url: str) -> str:
    """Return the user of a ``rabbit://`` or ``rabbit+tls://`` URL.

    Multi-host URLs (``rabbit://u:p@h1:5672,h2:5672/``) yield the user of the
    credential part.  Raises ValueError when the URL carries no user.
    """
    if not transport_url:
        raise ValueError("empty transport URL")
    username = urlsplit(_as_http(transport_url)).username
    if not username:
        raise ValueError("no user info in transport URL")
    return username


def extract_username_from_config(config: str) -> str:
    """Return the user of the ``transport_url =`` line in an ini file, or ""."""
    match = _TRANSPORT_USER.search(config)
    return match.group(1) if match else ""


def extract_transport_url_from_config(config: str) -> str:
    match = _TRANSPORT_URL.search(config)
    return match.group(1) if match else ""


def extract_cluster_from_transport_url(transport_url: str) -> str:
    """Return the broker cluster name: the first label of the first host.

    ``rabbit://u:p@rabbitmq-cell1.openstack.svc:5672,other:5672/`` gives
    ``rabbitmq-cell1``.
    """
    if not transport_url:
        raise ValueError("empty transport URL")
    netloc = urlsplit(_as_http(transport_url)).netloc
    hosts = netloc.rpartition("@")[2]
    if not hosts:
        raise ValueError("no host in transport URL")
    first = hosts.split(",")[0].split(":")[0]
    return first.split(".")[0]


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class IdentityResolver(ABC):
    """Where a service kind keeps its broker credential and how to read it."""

    service_kind: ClassVar[str]

    @abstractmethod
    def credential_secrets(self, secrets: Iterable[Secret]) -> list[Secret]:
        """Return the secrets holding this service kind's credentials, by name."""

    @abstractmethod
    def identities(self, secrets: Iterable[Secret]) -> set[str]:
        """Return the broker usernames currently in use."""

    def clusters(self, secrets: Iterable[Secret]) -> set[str]:
        """Return the broker clusters the credentials point at.

        An empty set means the cluster could not be determined.
        """
        found: set[str] = set()
        for secret in self.credential_secrets(secrets):
            for value in secret.data.values():
                url = extract_transport_url_from_config(value)
                if not url and value.startswith("rabbit"):
                    url = value.strip()
                if not url:
                    continue
                try:
                    cluster = extract_cluster_from_transport_url(url)
                except ValueError:
                    continue
                if cluster:
                    found.add(cluster)
        return found


class NovaCellResolver(IdentityResolver):
    """Cell-sharded compute credentials: one identity per cell.

    Secrets are named ``nova-<cellN>-compute-config`` with an optional
    ``-<N>`` version suffix.  Within a secret the ``rabbitmq_user_name``
    field wins over ``transport_url``, which wins over a ``transport_url``
    line inside ``custom.conf`` or ``01-nova.conf``.
    """

    service_kind = "nova"
    secret_pattern = re.compile(r"^nova-(cell\d+)-compute-config(-\d+)?$")
    config_keys = ("custom.conf", "01-nova.conf")

    def credential_secrets(self, secrets: Iterable[Secret]) -> list[Secret]:
        return sorted((s for s in secrets if self.secret_pattern.match(s.name)), key=lambda s: s.name)

    def cells(self, secrets: Iterable[Secret]) -> list[str]:
        cells: list[str] = []
        for secret in self.credential_secrets(secrets):
            match = self.secret_pattern.match(secret.name)
            if match and match.group(1) not in cells:
                cells.append(match.group(1))
        return cells

    def _username(self, secret: Secret) -> str:
        user = secret.data.get("rabbitmq_user_name", "")
        if user:
            return user
        transport_url = secret.data.get("transport_url")
        if transport_url is None:
            for key in self.config_keys:
                user = extract_username_from_config(secret.data.get(key, ""))
                if user:
                    return user
            return ""
        try:
            return parse_username_from_transport_url(transport_url)
        except ValueError as exc:
            _log.info("transport_url_unparseable", secret=secret.name, error=str(exc))
            return ""

    def cell_identity(self, secrets: Iterable[Secret], cell: str) -> str:
        """Return the broker user of *cell*; the first secret that names one wins."""
        for secret in self.credential_secrets(secrets):
            match = self.secret_pattern.match(secret.name)
            if not match or match.group(1) != cell:
                continue
            user = self._username(secret)
            if user:
                return user
        raise IdentityNotFoundError(f"no broker username found for cell {cell}")

    def notification_identity(self, secrets: Iterable[Secret], cell: str) -> str:
        """Return the notification broker user of *cell*, or "" when notifications are off."""
        for secret in self.credential_secrets(secrets):
            match = self.secret_pattern.match(secret.name)
            if match and match.group(1) == cell:
                return secret.data.get("notification_rabbitmq_user_name", "")
        raise IdentityNotFoundError(f"no compute-config secret found for cell {cell}")

    def identities(self, secrets: Iterable[Secret]) -> set[str]:
        secrets = list(secrets)
        users: set[str] = set()
        for cell in self.cells(secrets):
            try:
                users.add(self.cell_identity(secrets, cell))
            except IdentityNotFoundError as exc:
                _log.info("cell_identity_missing", cell=cell, error=str(exc))
                continue
            notification_user = self.notification_identity(secrets, cell)
            if notification_user:
                users.add(notification_user)
        return users

    def clusters(self, secrets: Iterable[Secret]) -> set[str]:
        found: set[str] = set()
        for secret in self.credential_secrets(secrets):
            url = secret.data.get("transport_url", "")
            if not url:
                for key in self.config_keys:
                    url = extract_transport_url_from_config(secret.data.get(key, ""))
                    if url:
                        break
            if not url:
                continue
            try:
                found.add(extract_cluster_from_transport_url(url))
            except ValueError:
                continue
        return found


class AgentConfigResolver(IdentityResolver):
    """A single identity read from ``transport_url`` lines in agent config files."""

    def __init__(self, service_kind: str, secret_names: tuple[str, ...], config_keys: tuple[str, ...]) -> None:
        self.service_kind = service_kind  # type: ignore[misc]
        self.secret_names = secret_names
        self.config_keys = config_keys

    def credential_secrets(self, secrets: Iterable[Secret]) -> list[Secret]:
        by_name = {s.name: s for s in secrets}
        return [by_name[name] for name in self.secret_names if name in by_name]

    def identities(self, secrets: Iterable[Secret]) -> set[str]:
        for secret in self.credential_secrets(secrets):
            for key in self.config_keys:
                user = extract_username_from_config(secret.data.get(key, ""))
                if user:
                    return {user}
        relevant = self.credential_secrets(secrets)
        if relevant:
            _log.info(
                "service_identity_missing",
                service_kind=self.service_kind,
                secrets=[s.name for s in relevant],
            )
        return set()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REGISTRY: dict[str, IdentityResolver] = {}


def register_resolver(resolver: IdentityResolver) -> None:
    """Register *resolver* for its service kind, replacing any previous one."""
    _REGISTRY[resolver.service_kind] = resolver


def unregister_resolver(service_kind: str) -> None:
    _REGISTRY.pop(service_kind, None)


def get_resolver(service_kind: str) -> IdentityResolver | None:
    return _REGISTRY.get(service_kind)


def tracked_service_kinds() -> list[str]:
    return sorted(_REGISTRY)


register_resolver(NovaCellResolver())
register_resolver(
    AgentConfigResolver(
        "neutron",
        ("neutron-dhcp-agent-neutron-config", "neutron-sriov-agent-neutron-config"),
        ("10-neutron-dhcp.conf", "10-neutron-sriov.conf"),
    )
)
register_resolver(
    AgentConfigResolver(
        "ironic",
        ("ironic-neutron-agent-config-data",),
        ("01-ironic_neutron_agent.conf",),
    )
)
