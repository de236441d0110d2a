"""
Reference executor server.

A ZMQ ROUTER socket serving any number of clients. Every client
(DEALER identity) gets its own Executor session, so remote ids and
correlation ids never mix between clients.

Sessions end in two ways:
- the client reconnects: its HELLO carries the same session key from a new
  identity, and the old session (with its tensors) is dropped
- the client goes silent for session_timeout seconds (crashed, unplugged)

Keep this SIMPLE and READABLE.
"""

import threading
import time
from typing import Dict, Optional

import zmq

from rtensor.debug import debug_print_server, error_print, verbose_print
from rtensor.server.engine import create_engine
from rtensor.server.executor import Executor


# Inbound messages taken off the socket per loop iteration
MAX_DRAIN = 1000


class ExecutorServer:
    """
    Serves Executor sessions on one ZMQ address.

    Example:
        server = ExecutorServer('tcp://127.0.0.1:*')
        server.start()            # background thread
        print(server.endpoint)    # tcp://127.0.0.1:54321
        ...
        server.stop()
    """

    def __init__(self, address: str, backend: str = 'numpy', seed: Optional[int] = None,
                 poll_interval: float = 0.1, session_timeout: Optional[float] = 300.0, context=None):
        self.address = address
        self.backend = backend
        self.seed = seed
        self.poll_interval = poll_interval
        self.session_timeout = session_timeout  # None keeps idle sessions forever
        self.context = context or zmq.Context.instance()
        self.endpoint: Optional[str] = None
        self.sessions: Dict[bytes, Executor] = {}  # Map: client identity -> session
        self.last_active: Dict[bytes, float] = {}  # Map: client identity -> last message time
        self._owners: Dict[str, bytes] = {}  # Map: client session key -> identity
        self.running = False
        self.sock = None
        self._thread: Optional[threading.Thread] = None

    def bind(self):
        """Create the ROUTER socket. Resolves wildcard ports into `endpoint`."""
        self.sock = self.context.socket(zmq.ROUTER)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.setsockopt(zmq.SNDHWM, 10000)
        self.sock.setsockopt(zmq.RCVHWM, 10000)
        # Unroutable replies (client already gone) are dropped, not queued
        self.sock.setsockopt(zmq.ROUTER_MANDATORY, 0)
        try:
            self.sock.bind(self.address)
        except zmq.ZMQError:
            self.sock.close()
            self.sock = None
            raise
        self.endpoint = self.sock.getsockopt_string(zmq.LAST_ENDPOINT)
        self.running = True
        verbose_print(f"rtensor: Executor listening on {self.endpoint}")
        return self.endpoint

    def start(self) -> str:
        """Bind and serve on a background thread. Returns the bound endpoint."""
        endpoint = self.bind()
        self._thread = threading.Thread(target=self.serve_forever, name='rtensor-server', daemon=True)
        self._thread.start()
        return endpoint

    def serve_forever(self):
        """
        Serve until stop(). Binds first if needed.

        Each iteration takes every waiting message off the socket, then runs
        one queued request per session. A CANCEL that arrives while its
        request is still queued therefore overtakes it.
        """
        if self.sock is None:
            self.bind()
        poller = zmq.Poller()
        poller.register(self.sock, zmq.POLLIN)
        try:
            while self.running:
                busy = any(session.pending for session in self.sessions.values())
                timeout = 0 if busy else self.poll_interval
                events = dict(poller.poll(int(timeout * 1000)))
                if self.sock in events:
                    self._drain()
                self._run_sessions()
                self.expire_sessions()
        finally:
            poller.unregister(self.sock)
            self.sock.close()
            self.sock = None
            verbose_print(f"rtensor: Executor on {self.endpoint} stopped")

    def _drain(self):
        for _ in range(MAX_DRAIN):
            try:
                parts = self.sock.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                return
            self._handle(parts)

    def _handle(self, parts):
        """ROUTER sockets receive: [identity, empty, data]"""
        if len(parts) < 2:
            debug_print_server(f"dropping malformed message ({len(parts)} parts)")
            return
        identity, data = parts[0], parts[-1]
        session = self.sessions.get(identity)
        if session is None:
            session = Executor(create_engine(self.backend, seed=self.seed))
            self.sessions[identity] = session
            debug_print_server(f"new session {identity.hex()} ({len(self.sessions)} total)")
        self.last_active[identity] = time.monotonic()

        try:
            replies = session.submit(data)
        except Exception as e:
            error_print(f"executor session {identity.hex()} crashed: {e!r}")
            return
        self._claim(identity, session)
        self._send(identity, replies)

    def _claim(self, identity: bytes, session: Executor):
        """Record who owns a session key. A reconnected client replaces its old session."""
        key = session.session_key
        if key is None:
            return
        previous = self._owners.get(key)
        if previous is not None and previous != identity:
            self.drop_session(previous, 'client reconnected')
        self._owners[key] = identity

    def _run_sessions(self):
        for identity, session in list(self.sessions.items()):
            if not session.pending:
                continue
            try:
                replies = session.run_pending(limit=1)
            except Exception as e:
                error_print(f"executor session {identity.hex()} crashed: {e!r}")
                continue
            self._send(identity, replies)

    def _send(self, identity: bytes, replies):
        for reply in replies:
            self.sock.send_multipart([identity, b'', reply])

    def expire_sessions(self, now: Optional[float] = None) -> int:
        """Drop sessions that have been silent for longer than session_timeout."""
        if self.session_timeout is None:
            return 0
        now = time.monotonic() if now is None else now
        idle = [identity for identity, seen in self.last_active.items()
                if now - seen > self.session_timeout]
        for identity in idle:
            self.drop_session(identity, f"idle for more than {self.session_timeout}s")
        return len(idle)

    def drop_session(self, identity: bytes, reason: str):
        """Forget a client session and free its tensors."""
        session = self.sessions.pop(identity, None)
        self.last_active.pop(identity, None)
        if session is None:
            return
        if session.session_key is not None and self._owners.get(session.session_key) == identity:
            del self._owners[session.session_key]
        verbose_print(f"rtensor: Dropped session {identity.hex()} ({reason}), "
                      f"freed {len(session)} tensor(s)")
        session.queue.clear()
        session.tensors.clear()

    def stop(self, timeout: float = 5.0):
        """Stop serving and close the socket (clients see a disconnect)."""
        self.running = False
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            self._thread = None

    def live_tensors(self) -> int:
        """Total tensors held across all sessions."""
        return sum(len(session) for session in list(self.sessions.values()))
