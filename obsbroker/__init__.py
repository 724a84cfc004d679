"""obsbroker - database access and credential broker for an observability stack on Kubernetes.

Quick start::

    from obsbroker import Client

    stack = Client.from_kubeconfig(namespace="observability", release="tobs")

    # TimescaleDB, through a tunnel when no published URI exists
    with stack.pg(database="postgres") as conn:
        cur = conn.cursor()
        cur.execute("SELECT 1")

    # Grafana admin password, rolled back if grafana-cli fails
    stack.change_grafana_password("s3cret")
"""

from __future__ import annotations

import logging

from obsbroker.client import Client
from obsbroker.core import (
    AUTO_PORT,
    ApplyFailed,
    BrokerError,
    ClusterError,
    CommandFailed,
    CompensationFailed,
    ConfigError,
    ConnectionDescriptor,
    ConnectionError,
    ConnectionResolver,
    ConnectionTarget,
    CredentialNotFound,
    DirectRoute,
    Resolution,
    ResolutionError,
    ResourceNotFound,
    RotationAttempt,
    RotationCoordinator,
    RotationOutcome,
    SecretStoreError,
    TargetNotFound,
    TunnelHandle,
    TunnelManager,
    TunnelSetupFailed,
    parse_uri,
    update_password_in_uri,
)
from obsbroker.postgres import PostgresSession

logger = logging.getLogger("obsbroker")

__all__ = [
    # Entry point
    "Client",
    # Sessions
    "PostgresSession",
    # Resolution
    "ConnectionResolver",
    "ConnectionTarget",
    "ConnectionDescriptor",
    "DirectRoute",
    "Resolution",
    "parse_uri",
    "update_password_in_uri",
    # Tunnels
    "AUTO_PORT",
    "TunnelManager",
    "TunnelHandle",
    # Rotation
    "RotationCoordinator",
    "RotationAttempt",
    "RotationOutcome",
    # Exceptions
    "BrokerError",
    "ConfigError",
    "ClusterError",
    "TargetNotFound",
    "TunnelSetupFailed",
    "ResourceNotFound",
    "CredentialNotFound",
    "SecretStoreError",
    "ResolutionError",
    "CommandFailed",
    "ApplyFailed",
    "CompensationFailed",
    "ConnectionError",
]

__version__ = "0.1.0"
