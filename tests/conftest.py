"""Shared fixtures: in-memory cluster plus a loopback echo server standing in for pods."""

from __future__ import annotations

from typing import Iterator

import pytest

from obsbroker.core.tunnel import TunnelManager
from tests.fakes import EchoServer, FakeWorkloads, InMemorySecretStore, LoopbackTransport


@pytest.fixture
def echo_server() -> Iterator[EchoServer]:
    server = EchoServer()
    yield server
    server.close()


@pytest.fixture
def transport(echo_server: EchoServer) -> LoopbackTransport:
    return LoopbackTransport(echo_server.port)


@pytest.fixture
def workloads() -> FakeWorkloads:
    return FakeWorkloads()


@pytest.fixture
def store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def tunnels(workloads: FakeWorkloads, transport: LoopbackTransport) -> TunnelManager:
    return TunnelManager(workloads, transport)
