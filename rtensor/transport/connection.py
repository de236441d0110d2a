"""
Connection to a remote executor.

A Connection owns exactly one Transport (one physical channel) and one
I/O thread. The I/O thread is the only code that touches the channel:
it sends queued frames in FIFO order and hands every inbound frame to the
correlator. User threads only append to the outbox and wait on their own
pending slot.

The default transport is a ZMQ DEALER socket, matching the ROUTER socket
of the reference server:
- tcp://host:port for remote executors
- ipc:///path for Unix domain sockets (lower latency on localhost)
- inproc://name inside one process

Keep this SIMPLE and READABLE.
"""

import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlsplit

import zmq
from zmq.utils.monitor import recv_monitor_message

from rtensor.config import ClientConfig, get_config
from rtensor.debug import debug_print_client, error_print, verbose_print
from rtensor.dispatcher.correlator import Correlator
from rtensor.dispatcher.dispatcher import Dispatcher, fail_slots
from rtensor.dispatcher.tensor_handle import HandleRegistry
from rtensor.errors import (
    ConnectionError, ConnectionLost, ProtocolError, not_connected_error, unreachable_error
)
from rtensor.transport import protocol
from rtensor.transport.protocol import MessageKind


SCHEMES = ('tcp', 'ipc', 'inproc')


class TransportClosed(Exception):
    """The channel is gone (peer disconnected, socket closed)."""
    pass


@dataclass(frozen=True)
class Endpoint:
    """Parsed endpoint URL."""
    url: str
    scheme: str
    host: Optional[str] = None
    port: Optional[int] = None
    path: Optional[str] = None

    @property
    def address(self) -> str:
        """Address in ZMQ syntax."""
        if self.scheme == 'tcp':
            return f"tcp://{self.host}:{self.port}"
        return f"{self.scheme}://{self.path}"


def parse_endpoint(url: str) -> Endpoint:
    """
    Parse an endpoint URL: scheme + host + port (tcp) or scheme + path (ipc, inproc).

    Raises ConnectionError for anything that cannot name a reachable executor.
    """
    if not isinstance(url, str) or '://' not in url:
        raise ConnectionError(f"Invalid endpoint {url!r}: expected scheme://host:port")

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in SCHEMES:
        raise ConnectionError(f"Unsupported endpoint scheme {scheme!r} in {url!r} (supported: {', '.join(SCHEMES)})")

    if scheme == 'tcp':
        try:
            port = parts.port
        except ValueError:
            raise ConnectionError(f"Invalid port in endpoint {url!r}")
        if not parts.hostname:
            raise ConnectionError(f"Missing host in endpoint {url!r}")
        if port is None or port == 0:
            raise ConnectionError(f"Missing port in endpoint {url!r}")
        return Endpoint(url=url, scheme=scheme, host=parts.hostname, port=port)

    path = url.split('://', 1)[1]
    if not path:
        raise ConnectionError(f"Missing path in endpoint {url!r}")
    return Endpoint(url=url, scheme=scheme, path=path)


class Transport(ABC):
    """
    A bidirectional message channel. Used from the I/O thread only,
    except for wakeup() which any thread may call.
    """

    @abstractmethod
    def send(self, frame: bytes):
        """Send one frame. Raises TransportClosed if the channel is gone."""
        pass

    @abstractmethod
    def recv(self, timeout: Optional[float]) -> Optional[bytes]:
        """
        Receive one frame.

        Returns None on timeout or when woken up. Raises TransportClosed if
        the channel is gone.
        """
        pass

    @abstractmethod
    def wakeup(self):
        """Make a blocked recv() return early. Thread-safe."""
        pass

    @abstractmethod
    def close(self):
        pass


class ZmqTransport(Transport):
    """ZMQ DEALER socket talking to a ROUTER (the remote executor)."""

    def __init__(self, endpoint: Endpoint, config: Optional[ClientConfig] = None, context=None):
        config = config or get_config()
        self.endpoint = endpoint
        self.context = context or zmq.Context.instance()
        self.sock = self.context.socket(zmq.DEALER)

        # Queue only to connected peers, so an unreachable endpoint is not writable
        self.sock.setsockopt(zmq.IMMEDIATE, 1)
        self.sock.setsockopt(zmq.SNDHWM, 10000)
        self.sock.setsockopt(zmq.RCVHWM, 10000)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.setsockopt(zmq.SNDBUF, 1048576)
        self.sock.setsockopt(zmq.RCVBUF, 1048576)
        # Peer liveness: a silent peer counts as disconnected
        self.sock.setsockopt(zmq.HEARTBEAT_IVL, int(config.connection.heartbeat_interval * 1000))
        self.sock.setsockopt(zmq.HEARTBEAT_TIMEOUT, int(config.connection.heartbeat_timeout * 1000))
        # ZMQ reconnects silently by default; reconnect policy belongs to Connection
        self.sock.setsockopt(zmq.RECONNECT_IVL, -1)

        self.monitor = self.sock.get_monitor_socket(zmq.EVENT_DISCONNECTED | zmq.EVENT_CLOSED)

        # Wake-up channel: any thread writes a byte, the poller sees the fd
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)

        self.poller = zmq.Poller()
        self.poller.register(self.sock, zmq.POLLIN)
        self.poller.register(self.monitor, zmq.POLLIN)
        self.poller.register(self._wake_r.fileno(), zmq.POLLIN)

        self._closed = False
        try:
            self.sock.connect(endpoint.address)
        except zmq.ZMQError:
            self.close()
            raise

    def wait_writable(self, timeout: float) -> bool:
        """True once a peer is connected (IMMEDIATE sockets are not writable before)."""
        return bool(self.sock.poll(int(timeout * 1000), zmq.POLLOUT))

    def send(self, frame: bytes):
        """DEALER sockets send: [empty, data]"""
        if self._closed:
            raise TransportClosed("transport is closed")
        try:
            self.sock.send(b'', zmq.SNDMORE | zmq.NOBLOCK)
            self.sock.send(frame, zmq.NOBLOCK)
        except zmq.Again:
            raise TransportClosed(f"no connected peer at {self.endpoint.url}")
        except zmq.ZMQError as e:
            raise TransportClosed(str(e))

    def recv(self, timeout: Optional[float]) -> Optional[bytes]:
        """DEALER sockets receive: [empty, data]"""
        if self._closed:
            raise TransportClosed("transport is closed")
        timeout_ms = None if timeout is None else int(timeout * 1000)
        try:
            events = dict(self.poller.poll(timeout_ms))
        except zmq.ZMQError as e:
            raise TransportClosed(str(e))

        if self.monitor in events:
            event = recv_monitor_message(self.monitor)
            if event['event'] in (zmq.EVENT_DISCONNECTED, zmq.EVENT_CLOSED):
                raise TransportClosed(f"peer at {self.endpoint.url} disconnected")

        if self._wake_r.fileno() in events:
            self._drain_wakeups()

        if self.sock in events:
            parts = self.sock.recv_multipart(zmq.NOBLOCK)
            return parts[-1]
        return None

    def _drain_wakeups(self):
        try:
            while self._wake_r.recv(4096):
                pass
        except BlockingIOError:
            pass

    def wakeup(self):
        try:
            self._wake_w.send(b'\0')
        except (BlockingIOError, OSError):
            # A wake-up is already pending or the transport is closing
            pass

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.poller.unregister(self.sock)
        self.poller.unregister(self.monitor)
        self.sock.disable_monitor()
        self.monitor.close()
        self.sock.close()
        self._wake_r.close()
        self._wake_w.close()


def open_zmq_transport(endpoint: Endpoint, config: ClientConfig) -> ZmqTransport:
    """Default transport factory: connect a DEALER socket and wait for the peer."""
    try:
        transport = ZmqTransport(endpoint, config)
    except zmq.ZMQError as e:
        raise ConnectionError(unreachable_error(endpoint.url, str(e)))
    if not transport.wait_writable(config.connection.connect_timeout):
        transport.close()
        raise ConnectionError(unreachable_error(endpoint.url, "no executor is listening"))
    return transport


TransportFactory = Callable[[Endpoint, ClientConfig], Transport]


class ConnectionState(Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    RECONNECTING = 'reconnecting'
    CLOSING = 'closing'
    CLOSED = 'closed'
    FAILED = 'failed'


class Connection:
    """
    One channel to a remote executor plus its bookkeeping:
    pending-slot table, correlation ids, handle registry, outbox.
    """

    def __init__(self, endpoint, config: Optional[ClientConfig] = None,
                 transport_factory: Optional[TransportFactory] = None, name: str = 'rtensor-client'):
        self.endpoint = endpoint if isinstance(endpoint, Endpoint) else parse_endpoint(endpoint)
        self.config = config or get_config()
        self.transport_factory = transport_factory or open_zmq_transport
        self.name = name
        # Survives reconnects, so the executor can drop the session of a dead channel
        self.session = uuid.uuid4().hex

        self.state = ConnectionState.CONNECTING
        self.outbox = deque()  # frames waiting for the I/O thread, FIFO
        self.registry = HandleRegistry(on_release=self.wakeup)
        self.dispatcher = Dispatcher(
            self,
            max_pending=self.config.connection.max_pending,
            cancel_on_timeout=self.config.cancel_on_timeout,
        )
        self.correlator = Correlator(
            self.dispatcher, self.registry,
            max_protocol_errors=self.config.connection.max_protocol_errors,
        )

        self.transport: Optional[Transport] = None
        self.reconnects = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_send = time.monotonic()

    @property
    def generation(self) -> int:
        return self.registry.generation

    def open(self):
        """Establish the channel and start the I/O thread."""
        self.transport = self._handshake()
        with self.dispatcher.lock:
            self.state = ConnectionState.OPEN
        self._thread = threading.Thread(target=self._run, name=f"rtensor-io-{self.endpoint.url}", daemon=True)
        self._thread.start()
        verbose_print(f"rtensor: Connected to {self.endpoint.url}")

    def _handshake(self) -> Transport:
        """Open a transport and agree on the protocol version."""
        transport = self.transport_factory(self.endpoint, self.config)
        try:
            transport.send(protocol.encode_hello(self.name, session=self.session))
            hello = self._await_hello(transport)
        except TransportClosed as e:
            transport.close()
            raise ConnectionError(unreachable_error(self.endpoint.url, str(e)))
        except ProtocolError as e:
            transport.close()
            raise ConnectionError(unreachable_error(self.endpoint.url, f"bad handshake: {e}"))
        except ConnectionError:
            transport.close()
            raise

        if hello.version != protocol.PROTOCOL_VERSION:
            transport.close()
            raise ConnectionError(
                f"Protocol version mismatch with {self.endpoint.url}: "
                f"client speaks {protocol.PROTOCOL_VERSION}, executor speaks {hello.version}"
            )
        debug_print_client(f"handshake with {hello.name or 'executor'} (protocol v{hello.version})")
        return transport

    def _await_hello(self, transport: Transport):
        deadline = time.monotonic() + self.config.connection.connect_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectionError(unreachable_error(self.endpoint.url, "handshake timed out"))
            data = transport.recv(remaining)
            if data is None:
                continue
            frame = protocol.decode_frame(data)
            if frame.kind == MessageKind.HELLO:
                return protocol.decode_hello(frame)
            if frame.kind == MessageKind.ERROR:
                error = protocol.decode_response(frame).error
                raise ConnectionError(unreachable_error(self.endpoint.url, error.message))
            debug_print_client(f"ignoring {frame.kind.name} before handshake")

    def check_open(self):
        """Raise ConnectionLost if no more requests can be sent. Caller holds dispatcher.lock."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED, ConnectionState.FAILED):
            raise ConnectionLost(not_connected_error(self.endpoint.url))

    def wakeup(self):
        transport = self.transport
        if transport is not None:
            transport.wakeup()

    def send_control(self, frame: bytes):
        """Queue a fire-and-forget control frame (cancel)."""
        self.outbox.append(frame)
        self.wakeup()

    # I/O thread

    def _run(self):
        while True:
            try:
                # Frames queued before stop() still go out
                stopping = self._stop.is_set()
                self._flush()
                if stopping:
                    break
                self._keepalive()
                data = self.transport.recv(self.config.connection.poll_interval)
                if data is not None:
                    self.correlator.handle(data)
            except (TransportClosed, ProtocolError) as e:
                if self._stop.is_set():
                    break
                if not self._reconnect(e):
                    break
            except Exception as e:
                error_print(f"I/O thread for {self.endpoint.url} crashed: {e!r}")
                self._fail(e)
                break

    def _fail(self, reason: Exception):
        """Mark the connection permanently failed and fail everything pending."""
        with self.dispatcher.lock:
            self.state = ConnectionState.FAILED
            self.outbox.clear()
            self.registry.invalidate_all()
            slots = self.dispatcher.detach_all()
        fail_slots(slots, lambda slot: ConnectionLost(
            f"Connection to {self.endpoint.url} failed: {reason}"
        ))

    def _flush(self):
        """Send queued releases, then every queued frame in order."""
        remote_ids = self.registry.drain_releases()
        if remote_ids:
            debug_print_client(f"releasing remote tensors {remote_ids}")
            self.transport.send(protocol.encode_release(remote_ids))
            self._last_send = time.monotonic()
        while self.outbox:
            frame = self.outbox.popleft()
            self.transport.send(frame)
            self._last_send = time.monotonic()

    def _keepalive(self):
        """Tell an idle executor this client is still around."""
        interval = self.config.connection.keepalive_interval
        if interval is None or time.monotonic() - self._last_send < interval:
            return
        self.transport.send(protocol.encode_hello(self.name, session=self.session))
        self._last_send = time.monotonic()

    def _reconnect(self, reason: Exception) -> bool:
        """
        Replace a dead channel. Everything tied to the old one fails:
        pending requests get ConnectionLost, handles become INVALID.
        """
        with self.dispatcher.lock:
            self.state = ConnectionState.RECONNECTING
            self.outbox.clear()
            invalidated = self.registry.invalidate_all()
            slots = self.dispatcher.detach_all()
        fail_slots(slots, lambda slot: ConnectionLost(
            f"Connection to {self.endpoint.url} lost while '{slot.opcode}' "
            f"(request #{slot.correlation_id}) was in flight: {reason}"
        ))
        verbose_print(f"rtensor: Lost connection to {self.endpoint.url} ({reason}); "
                      f"failed {len(slots)} request(s), invalidated {invalidated} handle(s)")
        self.transport.close()

        reconnect = self.config.reconnect
        for attempt in range(reconnect.max_attempts):
            if self._stop.wait(reconnect.delay(attempt)):
                return False
            try:
                transport = self._handshake()
            except ConnectionError as e:
                verbose_print(f"rtensor: Reconnect attempt {attempt + 1}/{reconnect.max_attempts} failed: {e}")
                continue
            with self.dispatcher.lock:
                self.transport = transport
                self.reconnects += 1
                self.state = ConnectionState.OPEN
            verbose_print(f"rtensor: Reconnected to {self.endpoint.url} (attempt {attempt + 1})")
            return True

        with self.dispatcher.lock:
            self.state = ConnectionState.FAILED
            slots = self.dispatcher.detach_all()
        fail_slots(slots, lambda slot: ConnectionLost(
            f"Connection to {self.endpoint.url} permanently failed after "
            f"{reconnect.max_attempts} reconnect attempt(s)"
        ))
        error_print(f"connection to {self.endpoint.url} permanently failed: {reason}")
        return False

    # Shutdown

    def close(self, timeout: Optional[float] = None):
        """
        Scoped shutdown. Waits (bounded) for in-flight requests, then releases
        every remote tensor, including results that arrived during the wait.
        Queued frames still go out before the I/O thread stops; whatever is
        still pending after that fails with ConnectionLost.
        """
        if timeout is None:
            timeout = self.config.connection.close_timeout

        with self.dispatcher.lock:
            if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
                return
            was_open = self.state == ConnectionState.OPEN
            self.state = ConnectionState.CLOSING
        self.dispatcher.notify()

        if was_open and not self.dispatcher.wait_idle(timeout):
            verbose_print(f"rtensor: Closing {self.endpoint.url} with {self.dispatcher.in_flight} request(s) in flight")

        # The I/O thread flushes these releases before it stops
        self.registry.close()
        self._stop.set()
        self.wakeup()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if was_open and self._thread.is_alive():
                verbose_print(f"rtensor: I/O thread for {self.endpoint.url} did not stop in time")

        self.dispatcher.fail_all(lambda slot: ConnectionLost(
            f"Connection to {self.endpoint.url} closed while '{slot.opcode}' "
            f"(request #{slot.correlation_id}) was in flight"
        ))
        with self.dispatcher.lock:
            self.state = ConnectionState.CLOSED
        if self.transport is not None:
            self.transport.close()
        verbose_print(f"rtensor: Disconnected from {self.endpoint.url}")

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN


def connect(endpoint, config: Optional[ClientConfig] = None,
            transport_factory: Optional[TransportFactory] = None) -> Connection:
    """
    Connect to a remote executor.

    Raises ConnectionError if the endpoint is invalid or unreachable, the
    handshake fails, or the protocol versions differ.
    """
    connection = Connection(endpoint, config=config, transport_factory=transport_factory)
    connection.open()
    return connection
