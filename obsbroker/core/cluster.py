"""Interfaces to the cluster collaborators the broker relies on.

The broker never talks to the Kubernetes API directly.  It goes through four
narrow protocols so the core can be exercised against in-memory fakes:

    SecretStore      - get/put opaque key → bytes records
    WorkloadQuery    - find running pods (directly or behind a service)
    TunnelTransport  - open one byte stream to a pod port
    CommandRunner    - run a command inside a container

``obsbroker.kube`` provides the implementations backed by the official
``kubernetes`` client.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from obsbroker.core.exceptions import CredentialNotFound, ResolutionError


@dataclass(frozen=True, slots=True)
class SecretRef:
    """Identity of a secret record."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(slots=True)
class SecretRecord:
    """A secret record: credential key → raw bytes.

    ``labels``, ``annotations`` and ``type`` are informational; a put only
    writes ``data``.  ``loaded_keys`` holds the keys present when the record
    was read, so a put can tell which keys were removed since.
    """

    namespace: str
    name: str
    data: dict[str, bytes] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    type: Optional[str] = None
    loaded_keys: frozenset[str] = field(default_factory=frozenset, repr=False)

    @property
    def ref(self) -> SecretRef:
        return SecretRef(self.namespace, self.name)

    def get(self, key: str) -> bytes:
        """Return the value stored under *key* or raise :class:`CredentialNotFound`."""
        try:
            return self.data[key]
        except KeyError:
            raise CredentialNotFound(self.namespace, self.name, key) from None

    def text(self, key: str) -> str:
        """Return the value under *key* decoded as UTF-8."""
        try:
            return self.get(key).decode("utf-8")
        except UnicodeDecodeError:
            raise ResolutionError(
                f"Key {key!r} in secret {self.namespace}/{self.name} is not valid UTF-8 text"
            ) from None

    def copy(self) -> "SecretRecord":
        return SecretRecord(
            namespace=self.namespace,
            name=self.name,
            data=dict(self.data),
            labels=dict(self.labels),
            annotations=dict(self.annotations),
            type=self.type,
            loaded_keys=self.loaded_keys,
        )


@runtime_checkable
class SecretStore(Protocol):
    """Read/write access to secret records."""

    def get_secret(self, namespace: str, name: str) -> SecretRecord:
        """Return the record or raise :class:`ResourceNotFound`."""

    def put_secret(self, record: SecretRecord) -> None:
        """Persist the data of *record* (last write wins).

        Keys in ``record.loaded_keys`` that are no longer in ``record.data``
        are removed; everything else about the stored record is left alone.
        """


@runtime_checkable
class WorkloadQuery(Protocol):
    """Lookup of running workload instances."""

    def list_instances(self, namespace: str, selector: Mapping[str, str]) -> list[str]:
        """Names of running pods matching *selector*, in API order."""

    def service_instances(self, namespace: str, selector: Mapping[str, str]) -> tuple[list[str], int]:
        """Running pods behind the first service matching *selector*, plus its target port."""

    def container_env(self, namespace: str, pod: str) -> dict[str, str]:
        """Literal environment variables of the pod's first container."""


class SocketLike(Protocol):
    def fileno(self) -> int: ...

    def recv(self, bufsize: int) -> bytes: ...

    def sendall(self, data: bytes) -> None: ...

    def setblocking(self, flag: bool) -> None: ...

    def close(self) -> None: ...


StreamSocket = Union[socket.socket, SocketLike]


@runtime_checkable
class TunnelTransport(Protocol):
    """Opens forwarding streams into pods."""

    def open_stream(self, namespace: str, pod: str, remote_port: int) -> StreamSocket:
        """Return a connected stream to *remote_port* on *pod*.

        Raise :class:`TunnelSetupFailed` if the stream cannot be established.
        """


@runtime_checkable
class CommandRunner(Protocol):
    """Executes commands inside running containers."""

    def exec(self, namespace: str, pod: str, container: str, command: Sequence[str]) -> str:
        """Run *command* and return its stdout; raise :class:`CommandFailed` on failure."""
