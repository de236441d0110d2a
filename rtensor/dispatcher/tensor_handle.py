"""
RemoteTensorHandle and the registry that tracks them.

A handle names a tensor that lives on the remote executor. Local Tensor
wrappers share handles and count references; when the last reference is
dropped the registry queues a release for the remote side.

Releases never block and never take the registry lock on the caller's side:
they are appended to a free queue (finalizers may run at any point, in any
thread) and the connection's I/O thread drains the queue.

Keep this SIMPLE and READABLE.
"""

import threading
from collections import deque
from enum import Enum
from typing import Callable, Dict, List, Optional

from rtensor.errors import ProtocolError, StaleHandle, stale_handle_error


class HandleState(Enum):
    LIVE = 'live'
    RELEASED = 'released'
    INVALID = 'invalid'  # Connection was re-established, remote data is gone


class RemoteTensorHandle:
    """Opaque reference to a remote tensor: remote id, shape, dtype."""

    def __init__(self, registry: 'HandleRegistry', remote_id: int, shape: tuple, dtype: str,
                 generation: int, state: HandleState = HandleState.LIVE):
        self.remote_id = remote_id
        self.shape = tuple(shape)
        self.dtype = dtype
        self.generation = generation
        self._registry = registry
        self._state = state
        self._refs = 0
        self._ref_lock = threading.Lock()

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def is_valid(self) -> bool:
        return self._state is HandleState.LIVE

    @property
    def refs(self) -> int:
        return self._refs

    def retain(self) -> 'RemoteTensorHandle':
        """Add a local reference."""
        with self._ref_lock:
            self._refs += 1
        return self

    def drop(self):
        """Drop a local reference. The last drop releases the remote tensor."""
        with self._ref_lock:
            self._refs -= 1
            last = self._refs <= 0
        if last:
            self._registry.release(self)

    def release(self):
        """Release the remote tensor now, regardless of references."""
        self._registry.release(self)

    def check(self):
        """Raise StaleHandle unless the handle can still be used."""
        if self._state is not HandleState.LIVE:
            raise StaleHandle(stale_handle_error(self.remote_id, self._state.value))

    def __repr__(self):
        return (f"RemoteTensorHandle(id={self.remote_id}, shape={self.shape}, "
                f"dtype={self.dtype}, state={self._state.value})")


class HandleRegistry:
    """
    Tracks the live remote handles of one connection.

    Handles are keyed by remote id within a generation. Every reconnect
    starts a new generation and invalidates all handles of the previous one.
    """

    def __init__(self, on_release: Optional[Callable[[], None]] = None):
        self._lock = threading.Lock()
        self._handles: Dict[int, RemoteTensorHandle] = {}
        # (remote_id, generation, handle or None), appended from any thread
        self._free_queue = deque()
        self.generation = 0
        self.closed = False
        self.on_release = on_release

    def register(self, remote_id: int, shape: tuple, dtype: str,
                 generation: Optional[int] = None) -> RemoteTensorHandle:
        """Track a new remote tensor and return its handle."""
        with self._lock:
            if generation is None:
                generation = self.generation
            if generation != self.generation:
                # Response from before a reconnect: the remote data is already gone
                return RemoteTensorHandle(self, remote_id, shape, dtype, generation,
                                          state=HandleState.INVALID)
            if self.closed:
                # Result of a request that finished during close: free it right away
                self._free_queue.append((remote_id, generation, None))
                return RemoteTensorHandle(self, remote_id, shape, dtype, generation,
                                          state=HandleState.RELEASED)

            existing = self._handles.get(remote_id)
            if existing is not None and existing.state is HandleState.LIVE:
                raise ProtocolError(f"Remote id {remote_id} is already in use")

            handle = RemoteTensorHandle(self, remote_id, shape, dtype, generation)
            self._handles[remote_id] = handle
            return handle

    def release(self, handle: RemoteTensorHandle):
        """Queue a fire-and-forget release. Idempotent."""
        if handle.state is not HandleState.LIVE:
            return
        handle._state = HandleState.RELEASED
        self._free_queue.append((handle.remote_id, handle.generation, handle))
        if self.on_release:
            self.on_release()

    def discard(self, remote_id: int, generation: int):
        """Queue a release for a remote tensor that never got a local handle."""
        self._free_queue.append((remote_id, generation, None))
        if self.on_release:
            self.on_release()

    def drain_releases(self) -> List[int]:
        """Remove released handles and return the remote ids to free."""
        remote_ids = []
        with self._lock:
            while self._free_queue:
                remote_id, generation, handle = self._free_queue.popleft()
                if generation != self.generation:
                    continue
                if handle is not None:
                    if self._handles.get(remote_id) is not handle:
                        continue
                    del self._handles[remote_id]
                remote_ids.append(remote_id)
        return remote_ids

    def validate(self, handle: RemoteTensorHandle):
        """Raise StaleHandle unless the handle belongs to this registry's current generation."""
        handle.check()
        if handle._registry is not self or handle.generation != self.generation:
            raise StaleHandle(stale_handle_error(handle.remote_id, 'from another connection'))

    def invalidate_all(self) -> int:
        """Start a new generation. Every live handle becomes INVALID."""
        with self._lock:
            count = 0
            for handle in self._handles.values():
                if handle.state is HandleState.LIVE:
                    handle._state = HandleState.INVALID
                    count += 1
            self._handles.clear()
            self._free_queue.clear()
            self.generation += 1
            return count

    def close(self):
        """Release every live handle and stop tracking new ones."""
        with self._lock:
            self.closed = True
            handles = list(self._handles.values())
        for handle in handles:
            self.release(handle)

    def get(self, remote_id: int) -> Optional[RemoteTensorHandle]:
        with self._lock:
            return self._handles.get(remote_id)

    def live_handles(self) -> List[RemoteTensorHandle]:
        with self._lock:
            return [h for h in self._handles.values() if h.state is HandleState.LIVE]

    def __len__(self):
        with self._lock:
            return len(self._handles)
