"""Top‑level client factory.

``Client`` wires the Kubernetes adapters, the tunnel manager, the connection
resolver and the rotation coordinator for one installed stack.

Usage::

    from obsbroker import Client

    stack = Client.from_kubeconfig(namespace="observability", release="tobs")

    # Context manager - returns native psycopg2 connection
    with stack.pg(database="postgres") as conn:
        cur = conn.cursor()
        cur.execute("SELECT 1")
        print(cur.fetchall())

    # Resolve only; the tunnel (if any) lives until release()
    with stack.resolve() as descriptor:
        print(descriptor.to_uri())

    stack.change_grafana_password("s3cret")
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from obsbroker import stack
from obsbroker.core.cluster import CommandRunner, SecretRef, SecretStore, TunnelTransport, WorkloadQuery
from obsbroker.core.exceptions import TargetNotFound
from obsbroker.core.resolver import (
    SUPERUSER_KEY,
    ConnectionTarget,
    DirectRoute,
    Resolution,
    build_resolver,
)
from obsbroker.core.rotation import RotationAttempt, RotationCoordinator
from obsbroker.core.tunnel import TunnelHandle, TunnelManager
from obsbroker.kube import (
    KubeCommandRunner,
    KubePortForwardTransport,
    KubeSecretStore,
    KubeWorkloadQuery,
    load_clients,
)
from obsbroker.postgres import PostgresSession

logger = logging.getLogger("obsbroker.client")


class Client:
    """Broker for one observability stack release.

    Parameters
    ----------
    namespace:
        Namespace the stack is installed in.
    release:
        Release name the stack was installed under.
    store, workloads, transport, runner:
        Cluster adapters; see :meth:`from_kubeconfig` for the Kubernetes ones.
    direct_route:
        In-cluster database address to use when neither a published URI nor
        a running pod is available.  When omitted, the address the Promscale
        connector is configured with is used.
    """

    def __init__(
        self,
        namespace: str = stack.DEFAULT_NAMESPACE,
        release: str = stack.DEFAULT_RELEASE,
        *,
        store: SecretStore,
        workloads: WorkloadQuery,
        transport: TunnelTransport,
        runner: CommandRunner,
        direct_route: Optional[DirectRoute] = None,
    ) -> None:
        self._namespace = namespace
        self._release = release
        self._store = store
        self._workloads = workloads
        self._runner = runner
        self._tunnels = TunnelManager(workloads, transport)
        self._resolver = build_resolver(store, workloads, self._tunnels, direct_route=direct_route)
        self._rotations = RotationCoordinator(store)
        logger.debug("Client created for %s/%s", namespace, release)

    @classmethod
    def from_kubeconfig(
        cls,
        namespace: str = stack.DEFAULT_NAMESPACE,
        release: str = stack.DEFAULT_RELEASE,
        *,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        in_cluster: bool = False,
        direct_route: Optional[DirectRoute] = None,
    ) -> "Client":
        """Create a client talking to the cluster from kubeconfig (or in-cluster config)."""
        clients = load_clients(kubeconfig=kubeconfig, context=context, in_cluster=in_cluster)
        return cls(
            namespace,
            release,
            store=KubeSecretStore(clients.core),
            workloads=KubeWorkloadQuery(clients.core),
            transport=KubePortForwardTransport(clients.core),
            runner=KubeCommandRunner(clients.core),
            direct_route=direct_route,
        )

    # -- properties --------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def release(self) -> str:
        return self._release

    @property
    def tunnels(self) -> TunnelManager:
        return self._tunnels

    # -- database ----------------------------------------------------------

    def target(self, credential_key: str = SUPERUSER_KEY, database: str = "postgres") -> ConnectionTarget:
        return ConnectionTarget(
            namespace=self._namespace,
            name=self._release,
            credential_key=credential_key,
            database=database,
            remote_port=stack.TIMESCALEDB_PORT,
            selector=stack.timescaledb_selector(self._release),
        )

    def resolve(
        self,
        credential_key: str = SUPERUSER_KEY,
        database: str = "postgres",
        *,
        verbose: bool = False,
    ) -> Resolution:
        """Resolve a connection to TimescaleDB.  The caller must release it."""
        return self._resolver.resolve(self.target(credential_key, database), verbose=verbose)

    def pg(self, credential_key: str = SUPERUSER_KEY, database: str = "postgres") -> PostgresSession:
        """Create a PostgreSQL session.  Returns native psycopg2 connection via ``.connect()``."""
        return PostgresSession(resolver=self._resolver, target=self.target(credential_key, database))

    def get_db_password(self, credential_key: str = SUPERUSER_KEY) -> str:
        """Return the stored database password for *credential_key*."""
        target = self.target(credential_key)
        record = self._store.get_secret(self._namespace, target.credentials_secret)
        return record.text(credential_key)

    # -- grafana -----------------------------------------------------------

    def change_grafana_password(self, password: str) -> RotationAttempt:
        """Change the Grafana admin password.

        The pod is looked up before the secret is touched, so a missing
        Grafana leaves the stored password as it was.  Raises
        :class:`ApplyFailed` or :class:`CompensationFailed` as described in
        :class:`RotationCoordinator`.
        """
        selector = stack.grafana_selector(self._release)
        pods = self._workloads.list_instances(self._namespace, selector)
        if not pods:
            raise TargetNotFound(
                f"No running Grafana pod for release {self._release} in namespace {self._namespace}",
                namespace=self._namespace,
                selector=selector,
            )
        pod = pods[0]

        def _apply(value: bytes) -> None:
            self._runner.exec(
                self._namespace,
                pod,
                stack.GRAFANA_CONTAINER,
                stack.grafana_reset_command(value.decode("utf-8")),
            )

        resource = SecretRef(self._namespace, stack.grafana_secret(self._release))
        return self._rotations.rotate(resource, stack.GRAFANA_PASSWORD_KEY, password.encode("utf-8"), _apply)

    # -- port-forwarding ---------------------------------------------------

    def port_forward(self, local_ports: Optional[Mapping[str, int]] = None) -> list[TunnelHandle]:
        """Open long-lived tunnels to the stack's components.

        *local_ports* maps component names (see :data:`obsbroker.stack.COMPONENTS`)
        to local ports; missing components use their default port.  If any
        tunnel fails, the ones already opened are closed.
        """
        ports = dict(local_ports or {})
        unknown = set(ports) - set(stack.COMPONENTS_BY_NAME)
        if unknown:
            raise ValueError(f"unknown components: {', '.join(sorted(unknown))}")

        handles: list[TunnelHandle] = []
        try:
            for component in stack.COMPONENTS:
                local_port = ports.get(component.name, component.default_local_port)
                handles.append(self._forward_component(component, local_port))
        except BaseException:
            for handle in handles:
                handle.close()
            raise
        return handles

    def _forward_component(self, component: stack.Component, local_port: int) -> TunnelHandle:
        selector = component.selector(self._release)
        if not component.service:
            handle = self._tunnels.open(
                self._namespace,
                selector=selector,
                remote_port=component.remote_port,
                local_port=local_port,
            )
        else:
            pods, remote_port = self._workloads.service_instances(self._namespace, selector)
            if not pods:
                raise TargetNotFound(
                    f"No running {component.name} service pods in namespace {self._namespace}",
                    namespace=self._namespace,
                    selector=selector,
                )
            handle = self._tunnels.open(
                self._namespace,
                pod=pods[0],
                remote_port=remote_port,
                local_port=local_port,
            )
        logger.info("Forwarding %s: localhost:%d -> %s:%d", component.name, handle.local_port, handle.pod, handle.remote_port)
        return handle
