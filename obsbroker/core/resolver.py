"""Connection resolution for databases running inside the cluster.

A :class:`ConnectionResolver` walks an ordered list of strategies and returns
the first descriptor produced.  The default order is

    PublishedUriStrategy → TunnelStrategy → DirectStrategy

* a connection URI published by a provisioning step always wins;
* otherwise, if a database pod is running, a tunnel is opened to it;
* otherwise the database is addressed directly, which only works when the
  caller shares the cluster network.

Each strategy answers ``try_resolve(context)`` with a descriptor or
``NOT_APPLICABLE``.  Credentials are only read by a strategy that has
already decided it applies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Final, Mapping, Optional, Protocol, Sequence, Union

from obsbroker.core.cluster import SecretStore, WorkloadQuery
from obsbroker.core.descriptor import ConnectionDescriptor, parse_port, parse_uri
from obsbroker.core.exceptions import ResolutionError, ResourceNotFound, TargetNotFound
from obsbroker.core.tunnel import AUTO_PORT, TunnelHandle, TunnelManager

logger = logging.getLogger("obsbroker.core.resolver")

SUPERUSER_KEY = "PATRONI_SUPERUSER_PASSWORD"
SUPERUSER_ROLE = "postgres"

URI_KEY = "db-uri"
TUNNEL_SSLMODE = "disable"
DIRECT_SSLMODE = "require"


def role_for_key(credential_key: str) -> str:
    """Database role name that a credential key stands for."""
    if credential_key == SUPERUSER_KEY:
        return SUPERUSER_ROLE
    return credential_key


@dataclass(frozen=True, slots=True)
class ConnectionTarget:
    """What to connect to.

    ``name`` is the release name the database was installed under; the
    defaults for the selector and secret names follow the chart's naming.
    """

    namespace: str
    name: str
    credential_key: str = SUPERUSER_KEY
    database: str = "postgres"
    remote_port: int = 5432
    selector: Mapping[str, str] = field(default_factory=dict)
    credentials_secret: str = ""
    uri_secret: str = ""

    def __post_init__(self) -> None:
        if not self.selector:
            object.__setattr__(self, "selector", {"release": self.name, "role": "master"})
        if not self.credentials_secret:
            object.__setattr__(self, "credentials_secret", f"{self.name}-credentials")
        if not self.uri_secret:
            object.__setattr__(self, "uri_secret", f"{self.name}-timescaledb-uri")


@dataclass(frozen=True, slots=True)
class DirectRoute:
    """In-cluster address of the database."""

    host: str
    port: int
    sslmode: str = DIRECT_SSLMODE


class _NotApplicable:
    _instance: Optional["_NotApplicable"] = None

    def __new__(cls) -> "_NotApplicable":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_APPLICABLE"

    def __bool__(self) -> bool:
        return False


NOT_APPLICABLE: Final = _NotApplicable()


class ResolveContext:
    """Per-call state handed to each strategy.

    Holds the target, the credential key in effect, the log level chosen by
    the caller for this call, and the tunnel (if any) a strategy opened.
    """

    def __init__(
        self,
        target: ConnectionTarget,
        credential_key: str,
        store: SecretStore,
        *,
        verbose: bool = False,
    ) -> None:
        self.target = target
        self.credential_key = credential_key
        self.tunnel: Optional[TunnelHandle] = None
        self._store = store
        self._level = logging.INFO if verbose else logging.DEBUG

    @property
    def role(self) -> str:
        return role_for_key(self.credential_key)

    def password(self) -> str:
        """Look up the credential for this call.

        Raises :class:`ResourceNotFound`, :class:`CredentialNotFound`, or
        :class:`ResolutionError` when the stored value is not UTF-8 text.
        """
        record = self._store.get_secret(self.target.namespace, self.target.credentials_secret)
        return record.text(self.credential_key)

    def log(self, msg: str, *args: object) -> None:
        logger.log(self._level, msg, *args)


class ResolutionStrategy(Protocol):
    name: str

    def try_resolve(self, ctx: ResolveContext) -> Union[ConnectionDescriptor, _NotApplicable]:
        ...


class PublishedUriStrategy:
    """Use a full connection URI stored by an external provisioning step."""

    name = "published-uri"

    def __init__(self, store: SecretStore, *, key: str = URI_KEY) -> None:
        self._store = store
        self._key = key

    def try_resolve(self, ctx: ResolveContext) -> Union[ConnectionDescriptor, _NotApplicable]:
        target = ctx.target
        try:
            record = self._store.get_secret(target.namespace, target.uri_secret)
        except ResourceNotFound:
            return NOT_APPLICABLE

        raw = record.data.get(self._key)
        if raw is None:
            raise ResolutionError(
                f"Secret {target.namespace}/{target.uri_secret} has no {self._key!r} entry"
            )
        try:
            descriptor = parse_uri(raw.decode("utf-8"))
        except UnicodeDecodeError:
            raise ResolutionError(
                f"Secret {target.namespace}/{target.uri_secret} entry {self._key!r} is not valid UTF-8 text"
            ) from None

        # The superuser credential belongs to whichever user the URI was published
        # for; any other key only fits a URI published for its own role.
        if ctx.credential_key != SUPERUSER_KEY and ctx.role != descriptor.user:
            raise ResolutionError(
                f"Published URI in {target.namespace}/{target.uri_secret} is for user "
                f"{descriptor.user!r}, not {ctx.role!r}"
            )

        password = ctx.password()
        if password != descriptor.password:
            # The stored credential was rotated after the URI was published.
            descriptor = descriptor.with_password(password)
        ctx.log("Using published connection URI for %s/%s", target.namespace, target.name)
        return descriptor


class TunnelStrategy:
    """Tunnel to the first running database pod and connect over loopback."""

    name = "tunnel"

    def __init__(self, workloads: WorkloadQuery, tunnels: TunnelManager, *, host: str = "localhost") -> None:
        self._workloads = workloads
        self._tunnels = tunnels
        self._host = host

    def try_resolve(self, ctx: ResolveContext) -> Union[ConnectionDescriptor, _NotApplicable]:
        target = ctx.target
        instances = self._workloads.list_instances(target.namespace, target.selector)
        if not instances:
            return NOT_APPLICABLE

        # Read the credential first so a missing key never leaves a tunnel behind.
        password = ctx.password()
        ctx.log("Opening tunnel to %s/%s:%d", target.namespace, instances[0], target.remote_port)
        ctx.tunnel = self._tunnels.open(
            target.namespace,
            pod=instances[0],
            remote_port=target.remote_port,
            local_port=AUTO_PORT,
        )
        return ConnectionDescriptor(
            user=ctx.role,
            password=password,
            host=self._host,
            port=ctx.tunnel.local_port,
            database=target.database,
            sslmode=TUNNEL_SSLMODE,
        )


RouteSource = Callable[[ConnectionTarget], Optional[DirectRoute]]


class DirectStrategy:
    """Address the database service directly from a configured or discovered route."""

    name = "direct"

    def __init__(self, route: Optional[DirectRoute] = None, *, discover: Optional[RouteSource] = None) -> None:
        self._route = route
        self._discover = discover

    def try_resolve(self, ctx: ResolveContext) -> Union[ConnectionDescriptor, _NotApplicable]:
        route = self._route
        if route is None and self._discover is not None:
            route = self._discover(ctx.target)
        if route is None:
            return NOT_APPLICABLE

        password = ctx.password()
        ctx.log("Connecting directly to %s:%d", route.host, route.port)
        return ConnectionDescriptor(
            user=ctx.role,
            password=password,
            host=route.host,
            port=route.port,
            database=ctx.target.database,
            sslmode=route.sslmode or DIRECT_SSLMODE,
        )


PROMSCALE_HOST_ENV = "TS_PROM_DB_HOST"
PROMSCALE_PORT_ENV = "TS_PROM_DB_PORT"
PROMSCALE_SSLMODE_ENV = "TS_PROM_DB_SSL_MODE"


def promscale_route_source(workloads: WorkloadQuery) -> RouteSource:
    """Discover the database address the Promscale connector is configured with."""

    def _discover(target: ConnectionTarget) -> Optional[DirectRoute]:
        pods = workloads.list_instances(target.namespace, {"app": f"{target.name}-promscale"})
        if not pods:
            return None
        env = workloads.container_env(target.namespace, pods[0])
        host = env.get(PROMSCALE_HOST_ENV)
        if not host:
            return None
        port = env.get(PROMSCALE_PORT_ENV)
        return DirectRoute(
            host=host,
            port=parse_port(port, source=f"{PROMSCALE_PORT_ENV} on {pods[0]}") if port else target.remote_port,
            sslmode=env.get(PROMSCALE_SSLMODE_ENV) or DIRECT_SSLMODE,
        )

    return _discover


class Resolution:
    """A resolved connection plus whatever must be released afterwards.

    Use as a context manager, or call :meth:`release` exactly when the
    connection is no longer needed.  ``release`` is idempotent.
    """

    def __init__(self, descriptor: ConnectionDescriptor, strategy: str, tunnel: Optional[TunnelHandle] = None) -> None:
        self.descriptor = descriptor
        self.strategy = strategy
        self.tunnel = tunnel
        self._released = False
        self._lock = threading.Lock()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        if self.tunnel is not None:
            self.tunnel.close()

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> ConnectionDescriptor:
        return self.descriptor

    def __exit__(self, *_exc: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Resolution(strategy={self.strategy!r}, descriptor={self.descriptor!r})"


class ConnectionResolver:
    """Resolves a :class:`ConnectionTarget` using an ordered strategy list.

    Descriptors are built fresh on every call; tunnels and credentials may
    change between calls.
    """

    def __init__(self, store: SecretStore, strategies: Sequence[ResolutionStrategy]) -> None:
        if not strategies:
            raise ValueError("at least one resolution strategy is required")
        self._store = store
        self._strategies = tuple(strategies)

    @property
    def strategies(self) -> tuple[ResolutionStrategy, ...]:
        return self._strategies

    def resolve(
        self,
        target: ConnectionTarget,
        credential_key: Optional[str] = None,
        *,
        verbose: bool = False,
    ) -> Resolution:
        """Return a :class:`Resolution` for *target*.

        Raises :class:`TargetNotFound` when no strategy applies, and passes
        through credential and tunnel errors from the strategy that applied.
        """
        ctx = ResolveContext(target, credential_key or target.credential_key, self._store, verbose=verbose)
        for strategy in self._strategies:
            try:
                result = strategy.try_resolve(ctx)
            except BaseException:
                if ctx.tunnel is not None:
                    ctx.tunnel.close()
                raise
            if result is NOT_APPLICABLE:
                logger.debug("Strategy %s not applicable for %s/%s", strategy.name, target.namespace, target.name)
                continue
            assert isinstance(result, ConnectionDescriptor)
            return Resolution(result, strategy.name, ctx.tunnel)

        raise TargetNotFound(
            f"No way to reach database {target.namespace}/{target.name}: no published URI, "
            f"no running pod and no direct route",
            namespace=target.namespace,
            selector=dict(target.selector),
        )


def build_resolver(
    store: SecretStore,
    workloads: WorkloadQuery,
    tunnels: TunnelManager,
    *,
    direct_route: Optional[DirectRoute] = None,
    discover_route: bool = True,
) -> ConnectionResolver:
    """Assemble the default published-URI → tunnel → direct resolver."""
    discover = promscale_route_source(workloads) if discover_route else None
    return ConnectionResolver(
        store,
        [
            PublishedUriStrategy(store),
            TunnelStrategy(workloads, tunnels),
            DirectStrategy(direct_route, discover=discover),
        ],
    )
