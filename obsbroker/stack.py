"""Naming conventions of the observability stack chart.

Everything here is derived from the release name the stack was installed
under: secret names, label selectors and the ports each component serves.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

DEFAULT_RELEASE = "tobs"
DEFAULT_NAMESPACE = "default"

TIMESCALEDB_PORT = 5432

GRAFANA_SECRET_SUFFIX = "-grafana"
GRAFANA_PASSWORD_KEY = "admin-password"
GRAFANA_CONTAINER = "grafana"


def timescaledb_selector(release: str) -> dict[str, str]:
    """Primary TimescaleDB pod."""
    return {"release": release, "role": "master"}


def grafana_selector(release: str) -> dict[str, str]:
    return {"app.kubernetes.io/instance": release, "app.kubernetes.io/name": "grafana"}


def prometheus_selector(release: str) -> dict[str, str]:
    return {"release": release, "app": "prometheus", "component": "server"}


def connector_selector(release: str) -> dict[str, str]:
    return {"app": f"{release}-promscale"}


def promlens_selector(release: str) -> dict[str, str]:
    return {"app": f"{release}-promlens"}


def grafana_secret(release: str) -> str:
    return release + GRAFANA_SECRET_SUFFIX


def grafana_reset_command(password: str) -> list[str]:
    return ["grafana-cli", "admin", "reset-admin-password", password]


@dataclass(frozen=True, slots=True)
class Component:
    """A stack component that can be port-forwarded.

    Components with ``service=True`` are reached through the service the
    selector matches (tunnelling into its first pod at the service's target
    port); the others are pods addressed directly at ``remote_port``.
    """

    name: str
    default_local_port: int
    selector: Callable[[str], dict[str, str]]
    service: bool
    remote_port: int = 0


COMPONENTS: tuple[Component, ...] = (
    Component("timescaledb", 5432, timescaledb_selector, service=False, remote_port=TIMESCALEDB_PORT),
    Component("grafana", 8080, grafana_selector, service=True),
    Component("prometheus", 9090, prometheus_selector, service=True),
    Component("connector", 9201, connector_selector, service=True),
    Component("promlens", 8081, promlens_selector, service=True),
)

COMPONENTS_BY_NAME: dict[str, Component] = {c.name: c for c in COMPONENTS}
