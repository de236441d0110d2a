"""
Pytest configuration and fixtures.

Two ways to reach an executor:
- loopback: a Transport that runs the reference Executor in-process and can
  hold, reorder or drop responses (deterministic concurrency tests)
- zmq_server: the real ROUTER server on a random TCP port

Keep this SIMPLE and READABLE.
"""

import threading
import time
from collections import OrderedDict, deque

import pytest

from rtensor.client.device import RemoteDevice
from rtensor.config import ClientConfig, ConnectionConfig, ReconnectConfig
from rtensor.errors import ConnectionError
from rtensor.server.executor import Executor
from rtensor.server.server import ExecutorServer
from rtensor.transport import protocol
from rtensor.transport.connection import Transport, TransportClosed
from rtensor.transport.protocol import MessageKind


LOOPBACK_ENDPOINT = 'inproc://loopback'


class LoopbackTransport(Transport):
    """
    In-process channel to an Executor.

    Frames sent by the client run through the executor right away. With
    hold=True, responses are parked until respond(cid) releases them, so a
    test decides the order in which they come back. With defer=True,
    requests only queue up on the executor until run() executes them.
    """

    def __init__(self, executor: Executor, hold: bool = False, defer: bool = False):
        self.executor = executor
        self.hold = hold
        self.defer = defer
        self.sent = []  # every frame the client sent, raw bytes
        self.held = OrderedDict()  # correlation id -> reply frames
        self._inbox = deque()
        self._cond = threading.Condition()
        self._woken = False
        self._dropped = False
        self.closed = False

    def send(self, frame: bytes):
        with self._cond:
            if self._dropped or self.closed:
                raise TransportClosed("loopback dropped")
            self.sent.append(frame)
            replies = self.executor.submit(frame)
            if not self.defer:
                replies.extend(self.executor.run_pending())
            self._route(replies)

    def _route(self, replies):
        for reply in replies:
            header = protocol.decode_frame(reply)
            if self.hold and header.kind in (MessageKind.RESPONSE, MessageKind.ERROR):
                self.held.setdefault(header.correlation_id, []).append(reply)
            else:
                self._inbox.append(reply)
        self._cond.notify_all()

    def recv(self, timeout):
        with self._cond:
            self._cond.wait_for(lambda: self._inbox or self._woken or self._dropped or self.closed, timeout)
            if self._dropped or self.closed:
                raise TransportClosed("loopback dropped")
            self._woken = False
            if self._inbox:
                return self._inbox.popleft()
            return None

    def wakeup(self):
        with self._cond:
            self._woken = True
            self._cond.notify_all()

    def close(self):
        with self._cond:
            self.closed = True
            self._cond.notify_all()

    # Test controls

    def inject(self, data: bytes):
        """Deliver raw bytes to the client as if the executor sent them."""
        with self._cond:
            self._inbox.append(data)
            self._cond.notify_all()

    def run(self, limit=None):
        """Execute requests queued on the executor (defer=True)."""
        with self._cond:
            self._route(self.executor.run_pending(limit))

    def respond(self, *correlation_ids):
        """Release held responses, in the given order."""
        with self._cond:
            for cid in correlation_ids:
                self._inbox.extend(self.held.pop(cid))
            self._cond.notify_all()

    def respond_all(self):
        self.respond(*list(self.held))

    def drop(self):
        """Kill the channel: the client sees a disconnect."""
        with self._cond:
            self._dropped = True
            self._cond.notify_all()

    def frames(self, kind: MessageKind = None):
        """Decoded frames the client sent, optionally of one kind."""
        decoded = [protocol.decode_frame(raw) for raw in self.sent]
        return [f for f in decoded if kind is None or f.kind == kind]

    def requests(self):
        return [protocol.decode_request(f) for f in self.frames(MessageKind.REQUEST)]

    def released_ids(self):
        ids = []
        for frame in self.frames(MessageKind.RELEASE):
            ids.extend(protocol.decode_release(frame))
        return ids


class LoopbackNetwork:
    """
    Transport factory for tests. Every connect gets a fresh executor session,
    like a new DEALER identity on the real server.
    """

    def __init__(self, hold: bool = False, seed: int = 0, defer: bool = False):
        self.hold = hold
        self.defer = defer
        self.seed = seed
        self.transports = []
        self.refuse = False

    def __call__(self, endpoint, config):
        if self.refuse:
            raise ConnectionError(f"Cannot connect to {endpoint.url}: refused by test")
        transport = LoopbackTransport(Executor(seed=self.seed), hold=self.hold, defer=self.defer)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> LoopbackTransport:
        """The current (most recent) transport."""
        return self.transports[-1]


def make_config(**overrides) -> ClientConfig:
    """Fast test config: short timeouts, quick reconnects."""
    connection = ConnectionConfig(connect_timeout=2.0, poll_interval=0.01, close_timeout=2.0)
    reconnect = ReconnectConfig(max_attempts=3, backoff=0.01, backoff_max=0.05)
    config = ClientConfig(connection=connection, reconnect=reconnect,
                          timeouts={'create': 5.0, 'compute': 5.0, 'transfer': 5.0})
    for key, value in overrides.items():
        if hasattr(config.connection, key):
            setattr(config.connection, key, value)
        elif hasattr(config.reconnect, key):
            setattr(config.reconnect, key, value)
        else:
            setattr(config, key, value)
    return config


def wait_until(predicate, timeout=2.0):
    """Poll until predicate() is true. Returns its final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def ones_params(*shape):
    return {'shape': list(shape), 'dtype': 'float32'}


@pytest.fixture
def network():
    return LoopbackNetwork()


@pytest.fixture
def held_network():
    return LoopbackNetwork(hold=True)


@pytest.fixture
def device(network):
    """RemoteDevice over the loopback transport."""
    dev = RemoteDevice(LOOPBACK_ENDPOINT, config=make_config(), transport_factory=network)
    yield dev
    dev.close()


@pytest.fixture
def zmq_server():
    """Reference executor on a random local TCP port."""
    server = ExecutorServer('tcp://127.0.0.1:*', seed=0)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def zmq_device(zmq_server):
    dev = RemoteDevice(zmq_server.endpoint, config=make_config())
    yield dev
    dev.close()
