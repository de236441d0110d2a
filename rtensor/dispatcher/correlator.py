"""
Response correlator: matches inbound frames to pending slots.

Runs on the connection's I/O thread (single reader per connection).
A bad message only fails the request it belongs to. Only a run of
undecodable messages is treated as a broken channel.
"""

from typing import TYPE_CHECKING

from rtensor.debug import debug_print_client
from rtensor.errors import (
    ProtocolError, RemoteExecutionError, StaleHandle, Timeout, operation_failed_error
)
from rtensor.transport import protocol
from rtensor.transport.protocol import ErrorDescriptor, MessageKind

if TYPE_CHECKING:
    from rtensor.dispatcher.dispatcher import Dispatcher
    from rtensor.dispatcher.tensor_handle import HandleRegistry


def error_from_descriptor(error: ErrorDescriptor) -> Exception:
    """Map a remote error descriptor onto the client's exception types."""
    message = operation_failed_error(error.opcode or '?', error.message)
    if error.code == 'unknown_handle':
        return StaleHandle(message)
    if error.code == 'protocol':
        return ProtocolError(message)
    if error.code == 'cancelled':
        return Timeout(message)
    return RemoteExecutionError(message, opcode=error.opcode)


class Correlator:
    """Decodes inbound frames and delivers them to their callers."""

    def __init__(self, dispatcher: 'Dispatcher', registry: 'HandleRegistry', max_protocol_errors: int = 3):
        self.dispatcher = dispatcher
        self.registry = registry
        self.max_protocol_errors = max_protocol_errors
        self.protocol_errors = 0  # consecutive undecodable messages
        self.dropped = 0  # responses nobody was waiting for

    def handle(self, data: bytes):
        """
        Process one inbound message.

        Raises ProtocolError once max_protocol_errors undecodable messages
        arrive in a row; the connection treats that as a dead channel.
        """
        try:
            frame = protocol.decode_frame(data)
        except ProtocolError as e:
            self._bad_message(e)
            return

        if frame.kind in (MessageKind.RESPONSE, MessageKind.ERROR):
            self._handle_response(frame)
        elif frame.kind == MessageKind.HELLO:
            debug_print_client("keepalive acknowledged")
        else:
            self._bad_message(ProtocolError(f"Unexpected {frame.kind.name} message from executor"))

    def _handle_response(self, frame: protocol.Frame):
        try:
            response = protocol.decode_response(frame)
        except ProtocolError as e:
            slot = self.dispatcher.deliver(frame.correlation_id, error=e)
            if slot is None:
                self.dropped += 1
            self._bad_message(e)
            return

        self.protocol_errors = 0

        if response.error is not None:
            slot = self.dispatcher.deliver(frame.correlation_id, error=error_from_descriptor(response.error))
        else:
            slot = self.dispatcher.deliver(frame.correlation_id, response=response)

        if slot is None:
            self.dropped += 1
            debug_print_client(f"dropping response for unknown request #{frame.correlation_id}")
            return

        if slot.abandoned:
            debug_print_client(f"discarding late response for #{frame.correlation_id} ({slot.opcode})")
            if response.handle is not None:
                # Nobody will ever own this tensor; free it on the remote side
                self.registry.discard(response.handle.remote_id, slot.generation)

    def _bad_message(self, error: ProtocolError):
        self.protocol_errors += 1
        debug_print_client(f"bad message ({self.protocol_errors} in a row): {error}")
        if self.protocol_errors >= self.max_protocol_errors:
            self.protocol_errors = 0
            raise ProtocolError(f"{self.max_protocol_errors} undecodable messages in a row: {error}")

    def fail_all(self, make_error) -> int:
        """Resolve every remaining slot with an error (connection loss)."""
        return self.dispatcher.fail_all(make_error)
