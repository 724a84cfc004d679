"""Kubernetes implementations of the cluster protocols.

All calls go through the official ``kubernetes`` client.  API errors are
translated into broker exceptions at this boundary; nothing above this
module sees :class:`kubernetes.client.ApiException`.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import portforward, stream

from obsbroker.core.cluster import SecretRecord, StreamSocket
from obsbroker.core.exceptions import (
    ClusterError,
    CommandFailed,
    ConfigError,
    ResourceNotFound,
    SecretStoreError,
    TunnelSetupFailed,
)

logger = logging.getLogger("obsbroker.kube")

_EXEC_TIMEOUT = 60


@dataclass(frozen=True)
class KubernetesClientSet:
    core: client.CoreV1Api


def load_clients(
    *,
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None,
    in_cluster: bool = False,
) -> KubernetesClientSet:
    """Create Kubernetes API clients from kubeconfig/context or the in-cluster service account.

    This is the single place where cluster configuration is loaded.
    """
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=kubeconfig, context=context)
    except (ConfigException, OSError) as exc:
        raise ConfigError(f"Could not load Kubernetes configuration: {exc}") from exc

    return KubernetesClientSet(core=client.CoreV1Api())


def label_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in labels.items())


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class KubeSecretStore:
    """Secret records backed by ``v1/Secret`` objects.

    Writes are strategic-merge patches of ``data`` only, so owner references,
    finalizers and other metadata survive.  Patches carry no
    ``resourceVersion``; the last writer wins.
    """

    def __init__(self, core: client.CoreV1Api) -> None:
        self._core = core

    def get_secret(self, namespace: str, name: str) -> SecretRecord:
        try:
            obj = self._core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise ResourceNotFound(namespace, name) from None
            raise SecretStoreError(f"Could not read secret {namespace}/{name}: {exc.reason}") from exc

        metadata = obj.metadata
        return SecretRecord(
            namespace=namespace,
            name=name,
            data={key: base64.b64decode(value) for key, value in (obj.data or {}).items()},
            labels=dict(metadata.labels or {}) if metadata else {},
            annotations=dict(metadata.annotations or {}) if metadata else {},
            type=obj.type,
            loaded_keys=frozenset(obj.data or {}),
        )

    def put_secret(self, record: SecretRecord) -> None:
        data: dict[str, Optional[str]] = {
            key: base64.b64encode(value).decode("ascii") for key, value in record.data.items()
        }
        # A null value deletes the key in a strategic merge patch.
        for key in sorted(record.loaded_keys.difference(record.data)):
            data[key] = None
        # Plain dict body: model objects drop None values when serialised.
        body = {"data": data}
        try:
            self._core.patch_namespaced_secret(name=record.name, namespace=record.namespace, body=body)
        except ApiException as exc:
            if exc.status == 404:
                raise ResourceNotFound(record.namespace, record.name) from None
            raise SecretStoreError(
                f"Could not update secret {record.namespace}/{record.name}: {exc.reason}"
            ) from exc
        logger.debug("Updated secret %s/%s", record.namespace, record.name)


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


class KubeWorkloadQuery:
    """Pod and service lookups."""

    def __init__(self, core: client.CoreV1Api) -> None:
        self._core = core

    def list_instances(self, namespace: str, selector: Mapping[str, str]) -> list[str]:
        pods = self._list_pods(namespace, selector)
        return [p.metadata.name for p in pods if _is_running(p)]

    def service_instances(self, namespace: str, selector: Mapping[str, str]) -> tuple[list[str], int]:
        try:
            services = self._core.list_namespaced_service(
                namespace=namespace, label_selector=label_selector(selector)
            ).items
        except ApiException as exc:
            raise ClusterError(f"Could not list services in {namespace}: {exc.reason}") from exc
        if not services:
            return [], 0

        spec = services[0].spec
        if not spec.selector or not spec.ports:
            return [], 0
        running = [p for p in self._list_pods(namespace, spec.selector) if _is_running(p)]
        if not running:
            return [], 0

        svc_port = spec.ports[0]
        target = svc_port.target_port if svc_port.target_port is not None else svc_port.port
        return [p.metadata.name for p in running], _container_port(running[0], target)

    def container_env(self, namespace: str, pod: str) -> dict[str, str]:
        try:
            obj = self._core.read_namespaced_pod(name=pod, namespace=namespace)
        except ApiException as exc:
            raise ClusterError(f"Could not read pod {namespace}/{pod}: {exc.reason}") from exc
        containers = obj.spec.containers or []
        if not containers:
            return {}
        return {env.name: env.value for env in (containers[0].env or []) if env.value is not None}

    def _list_pods(self, namespace: str, selector: Mapping[str, str]) -> list[Any]:
        try:
            return self._core.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector(selector)
            ).items
        except ApiException as exc:
            raise ClusterError(f"Could not list pods in {namespace}: {exc.reason}") from exc


def _is_running(pod: Any) -> bool:
    return (
        getattr(pod.status, "phase", None) == "Running"
        and pod.metadata.deletion_timestamp is None
    )


def _container_port(pod: Any, target: Any) -> int:
    """Resolve a service target port, which may be a named container port."""
    if isinstance(target, int):
        return target
    if str(target).isdigit():
        return int(target)
    for container in pod.spec.containers or []:
        for port in container.ports or []:
            if port.name == target:
                return int(port.container_port)
    raise TunnelSetupFailed(f"Pod {pod.metadata.name} exposes no port named {target!r}")


# ---------------------------------------------------------------------------
# Port-forward & exec
# ---------------------------------------------------------------------------


class KubePortForwardTransport:
    """Forwarding streams over the API server's pod port-forward endpoint."""

    def __init__(self, core: client.CoreV1Api) -> None:
        self._core = core

    def open_stream(self, namespace: str, pod: str, remote_port: int) -> StreamSocket:
        try:
            pf = portforward(
                self._core.connect_get_namespaced_pod_portforward,
                pod,
                namespace,
                ports=str(remote_port),
            )
            sock = pf.socket(remote_port)
        except ApiException as exc:
            raise TunnelSetupFailed(
                f"Port-forward to {namespace}/{pod}:{remote_port} rejected: {exc.reason}"
            ) from exc
        except Exception as exc:
            raise TunnelSetupFailed(f"Port-forward to {namespace}/{pod}:{remote_port} failed: {exc}") from exc

        sock.setblocking(True)
        logger.debug("Opened forwarding stream to %s/%s:%d", namespace, pod, remote_port)
        return sock


class KubeCommandRunner:
    """Runs commands through the pod exec endpoint."""

    def __init__(self, core: client.CoreV1Api, *, timeout: int = _EXEC_TIMEOUT) -> None:
        self._core = core
        self._timeout = timeout

    def exec(self, namespace: str, pod: str, container: str, command: Sequence[str]) -> str:
        # Arguments may carry secrets; only the program name is ever logged.
        program = command[0] if command else "<empty>"
        where = f"{namespace}/{pod}/{container}"
        try:
            resp = stream(
                self._core.connect_get_namespaced_pod_exec,
                pod,
                namespace,
                container=container,
                command=list(command),
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as exc:
            raise CommandFailed(f"Could not run {program} in {where}: {exc.reason}") from exc

        try:
            resp.run_forever(timeout=self._timeout)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            returncode = resp.returncode
        except Exception as exc:
            raise CommandFailed(f"Running {program} in {where} failed: {exc}") from exc
        finally:
            resp.close()

        if returncode is None:
            raise CommandFailed(f"{program} in {where} did not finish within {self._timeout}s")
        if returncode != 0:
            raise CommandFailed(f"{program} in {where} exited with {returncode}: {stderr.strip()}")
        logger.debug("%s in %s finished", program, where)
        return stdout
