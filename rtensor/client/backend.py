"""
Backend abstraction for devices.

A Backend is whatever executes a device's tensor operations. There is one
implementation, RemoteBackend, which forwards every operation over a
Connection. The device picks its backend once, by name, through
create_backend().
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence

from rtensor.config import ClientConfig, get_config
from rtensor.dispatcher.tensor_handle import RemoteTensorHandle
from rtensor.errors import ProtocolError
from rtensor.transport.connection import Connection, TransportFactory, connect


# Opcodes by request class (each class has its own timeout)
CREATE_OPS = ('ones', 'zeros', 'full', 'random')
TRANSFER_OPS = ('upload', 'read')


def request_class(opcode: str) -> str:
    """Timeout category of an opcode."""
    if opcode in CREATE_OPS:
        return 'create'
    if opcode in TRANSFER_OPS:
        return 'transfer'
    return 'compute'


class Backend(ABC):
    """Abstract base class for tensor backends."""

    name = 'abstract'

    @abstractmethod
    def execute(self, opcode: str, inputs: Sequence[RemoteTensorHandle],
                params: Optional[Dict[str, Any]] = None, data: Optional[np.ndarray] = None) -> RemoteTensorHandle:
        """Run one operation and return the handle of its result."""
        pass

    @abstractmethod
    def fetch(self, handle: RemoteTensorHandle) -> np.ndarray:
        """Copy a tensor's data to the host."""
        pass

    @abstractmethod
    def close(self):
        """Release everything and disconnect."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class RemoteBackend(Backend):
    """Runs every operation on a remote executor."""

    name = 'remote'

    def __init__(self, endpoint: str, config: Optional[ClientConfig] = None,
                 transport_factory: Optional[TransportFactory] = None):
        self.config = config or get_config()
        self.connection: Connection = connect(endpoint, config=self.config, transport_factory=transport_factory)

    def _call(self, opcode: str, inputs: Sequence[RemoteTensorHandle], params, data):
        kind = request_class(opcode)
        dispatcher = self.connection.dispatcher
        slot = dispatcher.dispatch(opcode, inputs, params, data, request_class=kind)
        return slot, dispatcher.wait(slot, self.config.timeout_for(kind))

    def execute(self, opcode, inputs, params=None, data=None) -> RemoteTensorHandle:
        slot, response = self._call(opcode, inputs, params, data)
        if slot.handle is None:
            raise ProtocolError(f"Response to '{opcode}' (request #{slot.correlation_id}) carries no tensor")
        return slot.handle

    def fetch(self, handle: RemoteTensorHandle) -> np.ndarray:
        slot, response = self._call('read', [handle], None, None)
        data = response.data
        if data is None:
            raise ProtocolError(f"Response to 'read' (request #{slot.correlation_id}) carries no data")
        if data.dtype.name != handle.dtype:
            raise ProtocolError(
                f"Read of remote tensor {handle.remote_id} returned {data.dtype.name}, expected {handle.dtype}"
            )
        if tuple(data.shape) != handle.shape:
            raise ProtocolError(
                f"Read of remote tensor {handle.remote_id} returned shape {tuple(data.shape)}, expected {handle.shape}"
            )
        return data

    def close(self):
        self.connection.close()

    @property
    def is_open(self) -> bool:
        return self.connection.is_open


def create_backend(name: str = 'remote', **kwargs) -> Backend:
    """
    Factory function to create a backend.

    Args:
        name: 'remote'
        **kwargs: passed to the backend (endpoint, config, transport_factory)

    Returns:
        Backend instance
    """
    if name == 'remote':
        return RemoteBackend(**kwargs)
    raise ValueError(f"Unknown backend: {name}")
