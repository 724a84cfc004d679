"""Tests for the Kubernetes adapters against a mocked CoreV1Api."""

from __future__ import annotations

import base64
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client import ApiException

from obsbroker import kube
from obsbroker.core.cluster import SecretRecord
from obsbroker.core.exceptions import (
    ClusterError,
    CommandFailed,
    ResourceNotFound,
    SecretStoreError,
    TunnelSetupFailed,
)

NS = "obs"


def _pod(
    name: str,
    *,
    phase: str = "Running",
    deleting: bool = False,
    env: Optional[dict[str, str]] = None,
    ports: Optional[dict[str, int]] = None,
) -> client.V1Pod:
    container = client.V1Container(
        name="main",
        env=[client.V1EnvVar(name=k, value=v) for k, v in (env or {}).items()],
        ports=[client.V1ContainerPort(name=k, container_port=v) for k, v in (ports or {}).items()],
    )
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, deletion_timestamp="2024-01-01T00:00:00Z" if deleting else None),
        status=client.V1PodStatus(phase=phase),
        spec=client.V1PodSpec(containers=[container]),
    )


def test_label_selector() -> None:
    assert kube.label_selector({"release": "tobs", "role": "master"}) == "release=tobs,role=master"


def test_get_secret_decodes_values() -> None:
    core = MagicMock()
    core.read_namespaced_secret.return_value = client.V1Secret(
        metadata=client.V1ObjectMeta(name="tobs-grafana", labels={"app": "grafana"}),
        type="Opaque",
        data={"admin-password": base64.b64encode(b"s3cret").decode()},
    )

    record = kube.KubeSecretStore(core).get_secret(NS, "tobs-grafana")

    core.read_namespaced_secret.assert_called_once_with(name="tobs-grafana", namespace=NS)
    assert record.get("admin-password") == b"s3cret"
    assert record.labels == {"app": "grafana"}
    assert record.type == "Opaque"


def test_get_secret_maps_api_errors() -> None:
    core = MagicMock()
    store = kube.KubeSecretStore(core)

    core.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
    with pytest.raises(ResourceNotFound):
        store.get_secret(NS, "missing")

    core.read_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")
    with pytest.raises(SecretStoreError, match="Forbidden"):
        store.get_secret(NS, "locked")


def _owned_secret(data: dict[str, bytes]) -> client.V1Secret:
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name="tobs-grafana",
            namespace=NS,
            resource_version="4711",
            finalizers=["keep"],
            owner_references=[
                client.V1OwnerReference(api_version="v1", kind="ConfigMap", name="owner", uid="1234")
            ],
        ),
        type="Opaque",
        immutable=False,
        data={k: base64.b64encode(v).decode() for k, v in data.items()},
    )


def test_put_secret_patches_only_data() -> None:
    core = MagicMock()
    core.read_namespaced_secret.return_value = _owned_secret({"admin-password": b"old", "admin-user": b"admin"})
    store = kube.KubeSecretStore(core)

    record = store.get_secret(NS, "tobs-grafana")
    record.data["admin-password"] = b"n3w"
    store.put_secret(record)

    core.replace_namespaced_secret.assert_not_called()
    kwargs = core.patch_namespaced_secret.call_args.kwargs
    assert kwargs["name"] == "tobs-grafana"
    assert kwargs["namespace"] == NS
    assert kwargs["body"] == {
        "data": {
            "admin-password": base64.b64encode(b"n3w").decode(),
            "admin-user": base64.b64encode(b"admin").decode(),
        }
    }


def test_put_secret_deletes_removed_keys_with_null() -> None:
    core = MagicMock()
    core.read_namespaced_secret.return_value = _owned_secret({"admin-password": b"old", "writer": b"w1"})
    store = kube.KubeSecretStore(core)

    record = store.get_secret(NS, "tobs-grafana")
    del record.data["writer"]
    store.put_secret(record)

    body = core.patch_namespaced_secret.call_args.kwargs["body"]
    assert body == {"data": {"admin-password": base64.b64encode(b"old").decode(), "writer": None}}


def test_put_secret_failure_is_a_store_error() -> None:
    core = MagicMock()
    core.patch_namespaced_secret.side_effect = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(SecretStoreError):
        kube.KubeSecretStore(core).put_secret(SecretRecord(namespace=NS, name="s", data={}))


def test_list_instances_keeps_only_running_pods() -> None:
    core = MagicMock()
    core.list_namespaced_pod.return_value = client.V1PodList(
        items=[
            _pod("pending", phase="Pending"),
            _pod("terminating", deleting=True),
            _pod("tobs-timescaledb-0"),
        ]
    )

    pods = kube.KubeWorkloadQuery(core).list_instances(NS, {"release": "tobs", "role": "master"})

    assert pods == ["tobs-timescaledb-0"]
    core.list_namespaced_pod.assert_called_once_with(namespace=NS, label_selector="release=tobs,role=master")


def test_list_instances_maps_api_errors() -> None:
    core = MagicMock()
    core.list_namespaced_pod.side_effect = ApiException(status=401, reason="Unauthorized")

    with pytest.raises(ClusterError):
        kube.KubeWorkloadQuery(core).list_instances(NS, {"app": "x"})


def test_service_instances_resolves_named_target_port() -> None:
    core = MagicMock()
    core.list_namespaced_service.return_value = client.V1ServiceList(
        items=[
            client.V1Service(
                spec=client.V1ServiceSpec(
                    selector={"app": "grafana"},
                    ports=[client.V1ServicePort(port=80, target_port="http")],
                )
            )
        ]
    )
    core.list_namespaced_pod.return_value = client.V1PodList(items=[_pod("grafana-0", ports={"http": 3000})])

    pods, port = kube.KubeWorkloadQuery(core).service_instances(NS, {"app.kubernetes.io/name": "grafana"})

    assert (pods, port) == (["grafana-0"], 3000)
    core.list_namespaced_pod.assert_called_once_with(namespace=NS, label_selector="app=grafana")


def test_service_instances_without_service() -> None:
    core = MagicMock()
    core.list_namespaced_service.return_value = client.V1ServiceList(items=[])

    assert kube.KubeWorkloadQuery(core).service_instances(NS, {"app": "none"}) == ([], 0)


def test_container_env() -> None:
    core = MagicMock()
    core.read_namespaced_pod.return_value = _pod("promscale", env={"TS_PROM_DB_HOST": "db.svc"})

    assert kube.KubeWorkloadQuery(core).container_env(NS, "promscale") == {"TS_PROM_DB_HOST": "db.svc"}


def test_open_stream_uses_pod_portforward(monkeypatch: pytest.MonkeyPatch) -> None:
    core = MagicMock()
    sock = MagicMock()
    forwarder = MagicMock()
    forwarder.socket.return_value = sock
    calls: list[tuple[Any, ...]] = []

    def fake_portforward(api_method: Any, pod: str, namespace: str, **kwargs: Any) -> Any:
        calls.append((api_method, pod, namespace, kwargs))
        return forwarder

    monkeypatch.setattr(kube, "portforward", fake_portforward)

    result = kube.KubePortForwardTransport(core).open_stream(NS, "tobs-timescaledb-0", 5432)

    assert result is sock
    assert calls == [(core.connect_get_namespaced_pod_portforward, "tobs-timescaledb-0", NS, {"ports": "5432"})]
    forwarder.socket.assert_called_once_with(5432)
    sock.setblocking.assert_called_once_with(True)


def test_open_stream_failure_is_tunnel_setup_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*args: Any, **kwargs: Any) -> Any:
        raise ApiException(status=403, reason="Forbidden")

    monkeypatch.setattr(kube, "portforward", refuse)

    with pytest.raises(TunnelSetupFailed, match="Forbidden"):
        kube.KubePortForwardTransport(MagicMock()).open_stream(NS, "p", 5432)


def _exec_response(returncode: Optional[int], stdout: str = "", stderr: str = "") -> MagicMock:
    resp = MagicMock()
    resp.read_stdout.return_value = stdout
    resp.read_stderr.return_value = stderr
    resp.returncode = returncode
    return resp


def test_exec_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    resp = _exec_response(0, stdout="Admin password changed successfully")
    captured: dict[str, Any] = {}

    def fake_stream(api_method: Any, pod: str, namespace: str, **kwargs: Any) -> Any:
        captured.update(kwargs, pod=pod, namespace=namespace)
        return resp

    monkeypatch.setattr(kube, "stream", fake_stream)

    out = kube.KubeCommandRunner(MagicMock()).exec(NS, "grafana-0", "grafana", ["grafana-cli", "admin", "x"])

    assert out == "Admin password changed successfully"
    assert captured["container"] == "grafana"
    assert captured["command"] == ["grafana-cli", "admin", "x"]
    assert captured["_preload_content"] is False
    resp.close.assert_called_once()


def test_exec_nonzero_exit_is_command_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(kube, "stream", lambda *a, **kw: _exec_response(1, stderr="boom"))

    with pytest.raises(CommandFailed, match="exited with 1") as info:
        kube.KubeCommandRunner(MagicMock()).exec(NS, "grafana-0", "grafana", ["grafana-cli", "s3cret"])

    assert "s3cret" not in str(info.value)


def test_exec_timeout_is_command_failed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(kube, "stream", lambda *a, **kw: _exec_response(None))

    with pytest.raises(CommandFailed, match="did not finish"):
        kube.KubeCommandRunner(MagicMock(), timeout=1).exec(NS, "grafana-0", "grafana", ["grafana-cli"])
