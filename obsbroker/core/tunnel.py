"""Local TCP tunnels into cluster pods.

Client → Local listener (127.0.0.1:<port>) → forwarding stream → Pod:<remote port>

``TunnelManager.open`` binds a local port (an ephemeral one when asked for
``AUTO_PORT``), confirms that a forwarding stream to the pod can be opened,
and returns a :class:`TunnelHandle`.  Every accepted local connection is
forwarded byte‑for‑byte over its own stream; the stream opened during setup
serves the first connection.

There is no automatic re‑establishment.  A handle stays usable until
:meth:`TunnelHandle.close` is called, which frees the local port.
"""

from __future__ import annotations

import enum
import logging
import selectors
import socket
import threading
from typing import Mapping, Optional

from obsbroker.core.cluster import StreamSocket, TunnelTransport, WorkloadQuery
from obsbroker.core.exceptions import TargetNotFound, TunnelSetupFailed

logger = logging.getLogger("obsbroker.core.tunnel")

AUTO_PORT = 0

_CHUNK_SIZE = 65_536
_POLL_INTERVAL = 1.0


class TunnelState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class TunnelHandle:
    """An open tunnel owned by whoever requested it.

    The state moves from ``OPEN`` to ``CLOSED`` exactly once.  ``close()`` is
    idempotent and safe to call from any thread.
    """

    def __init__(
        self,
        *,
        namespace: str,
        pod: str,
        remote_port: int,
        listener: socket.socket,
        transport: TunnelTransport,
        first_stream: Optional[StreamSocket] = None,
    ) -> None:
        self._namespace = namespace
        self._pod = pod
        self._remote_port = remote_port
        self._listener = listener
        self._transport = transport
        self._pending = first_stream
        self._local_port: int = listener.getsockname()[1]

        self._state = TunnelState.OPEN
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._sockets: set[StreamSocket] = set()
        self._thread = threading.Thread(
            target=self._accept_loop,
            name=f"obsbroker-tunnel-{pod}-{remote_port}",
            daemon=True,
        )

    # -- properties --------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def pod(self) -> str:
        return self._pod

    @property
    def remote_port(self) -> int:
        return self._remote_port

    @property
    def local_port(self) -> int:
        """Port on the bind address that clients should connect to."""
        return self._local_port

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TunnelState.OPEN

    # -- public ------------------------------------------------------------

    def start(self) -> None:
        self._thread.start()
        logger.debug(
            "Tunnel %s/%s:%d listening on port %d",
            self._namespace,
            self._pod,
            self._remote_port,
            self._local_port,
        )

    def close(self) -> None:
        """Stop forwarding and release the local port."""
        with self._lock:
            if self._state is TunnelState.CLOSED:
                return
            self._state = TunnelState.CLOSED
            pending, self._pending = self._pending, None
            live = tuple(self._sockets)
            self._sockets.clear()

        # Shutdown wakes the accept loop; the port is free once close() returns.
        try:
            self._listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._listener.close()

        if pending is not None:
            _close_quietly(pending)
        for sock in live:
            _close_quietly(sock)

        self._closed.set()
        logger.debug("Tunnel %s/%s:%d closed", self._namespace, self._pod, self._remote_port)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the tunnel is closed.  Returns ``True`` if it was."""
        return self._closed.wait(timeout)

    # -- context manager ---------------------------------------------------

    def __enter__(self) -> "TunnelHandle":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"TunnelHandle(pod={self._namespace}/{self._pod}, remote_port={self._remote_port}, "
            f"local_port={self._local_port}, state={self._state.value})"
        )

    # -- private -----------------------------------------------------------

    def _accept_loop(self) -> None:
        self._listener.settimeout(_POLL_INTERVAL)
        while self.is_open:
            try:
                client_sock, addr = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                # Listener shut down by close().
                break

            logger.debug("Tunnel on port %d accepted connection from %s", self._local_port, addr)
            fwd = threading.Thread(
                target=self._serve,
                args=(client_sock,),
                name="obsbroker-tunnel-fwd",
                daemon=True,
            )
            fwd.start()

    def _serve(self, client_sock: socket.socket) -> None:
        with self._lock:
            if not self.is_open:
                client_sock.close()
                return
            stream, self._pending = self._pending, None
            self._sockets.add(client_sock)

        if stream is None:
            try:
                stream = self._transport.open_stream(self._namespace, self._pod, self._remote_port)
            except Exception as exc:
                logger.warning(
                    "Could not open forwarding stream to %s/%s:%d: %s",
                    self._namespace,
                    self._pod,
                    self._remote_port,
                    exc,
                )
                self._discard(client_sock)
                return

        with self._lock:
            if not self.is_open:
                self._sockets.discard(client_sock)
                _close_quietly(client_sock)
                _close_quietly(stream)
                return
            self._sockets.add(stream)

        try:
            self._forward(client_sock, stream)
        finally:
            self._discard(client_sock)
            self._discard(stream)

    def _forward(self, client_sock: socket.socket, stream: StreamSocket) -> None:
        """Bidirectional copy between *client_sock* and *stream* until either side closes."""
        sel = selectors.DefaultSelector()
        try:
            sel.register(client_sock, selectors.EVENT_READ, data="client")
            sel.register(stream, selectors.EVENT_READ, data="stream")

            while self.is_open:
                for key, _ in sel.select(timeout=_POLL_INTERVAL):
                    src = client_sock if key.data == "client" else stream
                    dst = stream if key.data == "client" else client_sock
                    try:
                        data = src.recv(_CHUNK_SIZE)
                    except (BlockingIOError, InterruptedError):
                        continue
                    except OSError:
                        return
                    if not data:
                        return
                    try:
                        dst.sendall(data)
                    except OSError:
                        return
        except (OSError, ValueError):
            # A socket was closed underneath the selector by close().
            logger.debug("Tunnel forwarding ended", exc_info=True)
        finally:
            sel.close()

    def _discard(self, sock: StreamSocket) -> None:
        with self._lock:
            self._sockets.discard(sock)
        _close_quietly(sock)


class TunnelManager:
    """Opens tunnels into pods found through a :class:`WorkloadQuery`."""

    def __init__(
        self,
        workloads: WorkloadQuery,
        transport: TunnelTransport,
        *,
        bind_address: str = "127.0.0.1",
    ) -> None:
        self._workloads = workloads
        self._transport = transport
        self._bind_address = bind_address

    def open(
        self,
        namespace: str,
        *,
        pod: Optional[str] = None,
        selector: Optional[Mapping[str, str]] = None,
        remote_port: int,
        local_port: int = AUTO_PORT,
    ) -> TunnelHandle:
        """Open a tunnel to *remote_port* on a pod.

        Give either *pod* or a label *selector*; with a selector the first
        running instance is used.  ``local_port=AUTO_PORT`` binds an ephemeral
        port, read back through :attr:`TunnelHandle.local_port`.
        """
        if (pod is None) == (selector is None):
            raise ValueError("exactly one of pod or selector is required")

        if pod is None:
            assert selector is not None
            instances = self._workloads.list_instances(namespace, selector)
            if not instances:
                raise TargetNotFound(
                    f"No running pods in namespace {namespace} match {_format_selector(selector)}",
                    namespace=namespace,
                    selector=dict(selector),
                )
            pod = instances[0]

        listener = self._bind(local_port)
        try:
            first_stream = self._transport.open_stream(namespace, pod, remote_port)
        except TunnelSetupFailed:
            listener.close()
            raise
        except Exception as exc:
            listener.close()
            raise TunnelSetupFailed(
                f"Could not forward to {namespace}/{pod}:{remote_port}: {exc}"
            ) from exc

        handle = TunnelHandle(
            namespace=namespace,
            pod=pod,
            remote_port=remote_port,
            listener=listener,
            transport=self._transport,
            first_stream=first_stream,
        )
        handle.start()
        return handle

    def _bind(self, local_port: int) -> socket.socket:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((self._bind_address, local_port))
            listener.listen(8)
        except OSError as exc:
            listener.close()
            raise TunnelSetupFailed(
                f"Could not listen on {self._bind_address}:{local_port}: {exc}"
            ) from exc
        return listener


def _format_selector(selector: Mapping[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def _close_quietly(sock: StreamSocket) -> None:
    try:
        if isinstance(sock, socket.socket):
            sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass
