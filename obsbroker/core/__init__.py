"""obsbroker core - cluster-agnostic connection and credential broker.

This package provides the pieces everything else is built from:

* ConnectionResolver - ordered strategies producing connection descriptors
* TunnelManager - local TCP tunnels into pods
* RotationCoordinator - credential rotation with compensating rollback
* ConnectionDescriptor - resolved connection parameters and their URI form
* Cluster protocols - SecretStore, WorkloadQuery, TunnelTransport, CommandRunner
* Exception hierarchy - all obsbroker errors

``obsbroker.kube`` implements the cluster protocols against Kubernetes.
"""

from __future__ import annotations

from obsbroker.core.cluster import (
    CommandRunner,
    SecretRecord,
    SecretRef,
    SecretStore,
    TunnelTransport,
    WorkloadQuery,
)
from obsbroker.core.descriptor import ConnectionDescriptor, parse_uri, update_password_in_uri
from obsbroker.core.exceptions import (
    ApplyFailed,
    BrokerError,
    ClusterError,
    CommandFailed,
    CompensationFailed,
    ConfigError,
    ConnectionError,
    CredentialNotFound,
    ResolutionError,
    ResourceNotFound,
    SecretStoreError,
    TargetNotFound,
    TunnelSetupFailed,
)
from obsbroker.core.resolver import (
    NOT_APPLICABLE,
    ConnectionResolver,
    ConnectionTarget,
    DirectRoute,
    DirectStrategy,
    PublishedUriStrategy,
    Resolution,
    TunnelStrategy,
    build_resolver,
)
from obsbroker.core.rotation import RotationAttempt, RotationCoordinator, RotationOutcome
from obsbroker.core.tunnel import AUTO_PORT, TunnelHandle, TunnelManager, TunnelState

__all__ = [
    # Resolver
    "ConnectionResolver",
    "ConnectionTarget",
    "DirectRoute",
    "PublishedUriStrategy",
    "TunnelStrategy",
    "DirectStrategy",
    "NOT_APPLICABLE",
    "Resolution",
    "build_resolver",
    # Descriptor
    "ConnectionDescriptor",
    "parse_uri",
    "update_password_in_uri",
    # Tunnels
    "AUTO_PORT",
    "TunnelManager",
    "TunnelHandle",
    "TunnelState",
    # Rotation
    "RotationCoordinator",
    "RotationAttempt",
    "RotationOutcome",
    # Cluster protocols
    "SecretStore",
    "SecretRecord",
    "SecretRef",
    "WorkloadQuery",
    "TunnelTransport",
    "CommandRunner",
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
