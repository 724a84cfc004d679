"""Abstract base session that database adapters inherit from.

``BaseSession`` encapsulates the lifecycle:

    connect() → resolve connection (maybe open tunnel) → connect native driver
    → return native client

    close() → close native → release resolution (closes the tunnel)

Subclasses only implement two hooks:
    ``_connect_native`` - create and return the real DB client
    ``_close_native``   - tear down the real DB client

The session never wraps native methods.  ``connect()`` returns the original
library client.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from obsbroker.core.descriptor import ConnectionDescriptor
from obsbroker.core.exceptions import ConnectionError as BrokerConnectionError
from obsbroker.core.resolver import ConnectionResolver, ConnectionTarget, Resolution

logger = logging.getLogger("obsbroker.base")


class BaseSession(ABC):
    """Abstract base for all database sessions.

    Parameters
    ----------
    resolver:
        Resolver used to find a route to the database.
    target:
        What to connect to.
    credential_key:
        Overrides ``target.credential_key``.
    verbose:
        Log resolution progress at INFO instead of DEBUG.
    """

    # Subclasses should set this to a human‑friendly label for logging.
    _db_label: str = "unknown"

    def __init__(
        self,
        *,
        resolver: ConnectionResolver,
        target: ConnectionTarget,
        credential_key: Optional[str] = None,
        verbose: bool = False,
    ) -> None:
        self._resolver = resolver
        self._target = target
        self._credential_key = credential_key
        self._verbose = verbose

        self._resolution: Optional[Resolution] = None
        self._native_client: Any = None

        self._initialized = False
        self._closed = False
        self._lock = threading.Lock()

    # -- abstract hooks (subclass contract) --------------------------------

    @abstractmethod
    def _connect_native(self, descriptor: ConnectionDescriptor) -> Any:
        """Create and **return** the native DB client."""

    @abstractmethod
    def _close_native(self, native_client: Any) -> None:
        """Close the native DB client."""

    # -- public API --------------------------------------------------------

    @property
    def descriptor(self) -> ConnectionDescriptor:
        if self._resolution is None:
            raise BrokerConnectionError(f"{self._db_label} session is not connected")
        return self._resolution.descriptor

    @property
    def strategy(self) -> Optional[str]:
        """Name of the resolution strategy that produced the connection."""
        return self._resolution.strategy if self._resolution is not None else None

    def connect(self) -> Any:
        """Resolve a route and return the **native** database client.

        Idempotent - calling connect() again returns the same client.
        """
        if self._initialized:
            return self._native_client
        with self._lock:
            if self._initialized:
                return self._native_client
            if self._closed:
                raise BrokerConnectionError(f"{self._db_label} session has already been closed")
            self._native_client = self._do_initialize()
            self._initialized = True
        return self._native_client

    def close(self) -> None:
        """Close the native client and release the route (tunnel) behind it."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._initialized = False

        if self._native_client is not None:
            try:
                self._close_native(self._native_client)
            except Exception:
                logger.warning("Error closing native %s connection", self._db_label, exc_info=True)
            self._native_client = None

        if self._resolution is not None:
            self._resolution.release()

        logger.info("%s session closed", self._db_label)

    # -- context manager ---------------------------------------------------

    def __enter__(self) -> Any:
        """Connect and return the native client directly."""
        return self.connect()

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    # -- private -----------------------------------------------------------

    def _do_initialize(self) -> Any:
        resolution = self._resolver.resolve(self._target, self._credential_key, verbose=self._verbose)
        try:
            native_client = self._connect_native(resolution.descriptor)
        except BaseException:
            resolution.release()
            raise
        self._resolution = resolution

        logger.info(
            "%s session initialized (%s, %s:%d)",
            self._db_label,
            resolution.strategy,
            resolution.descriptor.host,
            resolution.descriptor.port,
        )
        return native_client
