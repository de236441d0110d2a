"""
Request dispatcher: correlation ids, pending slots, backpressure.

Every outgoing operation gets a fresh correlation id and a PendingSlot.
The frame goes into the connection's outbox in the same critical section
that assigns the id, so frames hit the wire in dispatch order. Responses
may come back in any order; they are matched by id only.

Keep this SIMPLE and READABLE.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from rtensor.debug import debug_print_client
from rtensor.errors import CorrelationIdExhausted, ProtocolError, Timeout, timeout_error
from rtensor.transport import protocol
from rtensor.transport.protocol import MessageKind, OperationResponse

if TYPE_CHECKING:
    from rtensor.dispatcher.tensor_handle import RemoteTensorHandle
    from rtensor.transport.connection import Connection


class PendingSlot:
    """Delivery point for one in-flight request."""

    def __init__(self, correlation_id: int, opcode: str, request_class: str, generation: int):
        self.correlation_id = correlation_id
        self.opcode = opcode
        self.request_class = request_class
        self.generation = generation
        self.abandoned = False  # Caller gave up (timeout); a late response is discarded
        self.handle: Optional['RemoteTensorHandle'] = None  # Result tensor, registered on delivery
        self._event = threading.Event()
        self._response: Optional[OperationResponse] = None
        self._error: Optional[BaseException] = None

    def resolve(self, response: OperationResponse):
        if self._event.is_set():
            return
        self._response = response
        self._event.set()

    def fail(self, error: BaseException):
        if self._event.is_set():
            return
        self._error = error
        self._event.set()

    def done(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until resolved. Returns False on timeout."""
        return self._event.wait(timeout)

    def result(self) -> OperationResponse:
        """The response, or raise the error the slot was failed with."""
        if self._error is not None:
            raise self._error
        return self._response

    def __repr__(self):
        state = 'done' if self.done() else 'pending'
        if self.abandoned:
            state = 'abandoned'
        return f"PendingSlot(#{self.correlation_id}, {self.opcode}, {state})"


def fail_slots(slots: List[PendingSlot], make_error: Callable[[PendingSlot], BaseException]):
    """Fail every slot that is still waiting. Each caller gets its own exception."""
    for slot in slots:
        if not slot.done():
            slot.fail(make_error(slot))


class Dispatcher:
    """
    Assigns correlation ids and tracks pending slots for one connection.

    `lock` guards the pending table, the id counter, the outbox order and
    the connection state. It is never held across a network wait.
    """

    def __init__(self, connection: 'Connection', max_pending: int = 1024,
                 max_correlation_id: int = protocol.MAX_CORRELATION_ID,
                 cancel_on_timeout: bool = True):
        self.connection = connection
        self.max_pending = max_pending
        self.max_correlation_id = max_correlation_id
        self.cancel_on_timeout = cancel_on_timeout

        self.lock = threading.Lock()
        self._changed = threading.Condition(self.lock)
        self.pending: Dict[int, PendingSlot] = {}
        self._in_flight = 0  # pending slots that still count against max_pending
        self._next_id = 1

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def dispatch(self, opcode: str, inputs: Sequence['RemoteTensorHandle'] = (),
                 params: Optional[dict] = None, data=None, request_class: str = 'compute',
                 timeout: Optional[float] = None) -> PendingSlot:
        """
        Queue one operation for transmission and return its pending slot.

        Blocks while max_pending requests are in flight (backpressure).

        Raises:
            StaleHandle: an input handle was released or invalidated
            ConnectionLost: the connection is closed or permanently failed
            Timeout: no capacity freed up within `timeout` seconds
            CorrelationIdExhausted: the id space is used up
        """
        registry = self.connection.registry
        payload = protocol.encode_request_payload(
            opcode, [handle.remote_id for handle in inputs], params, data
        )
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._changed:
            while True:
                self.connection.check_open()
                if self._in_flight < self.max_pending:
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise Timeout(
                        f"Dispatch of '{opcode}' blocked for {timeout:.1f}s: "
                        f"{self._in_flight} requests in flight"
                    )
                self._changed.wait(remaining)

            for handle in inputs:
                registry.validate(handle)

            correlation_id = self._allocate_id()
            slot = PendingSlot(correlation_id, opcode, request_class, registry.generation)
            self.pending[correlation_id] = slot
            self._in_flight += 1
            self.connection.outbox.append(
                protocol.encode_frame(correlation_id, MessageKind.REQUEST, payload)
            )

        debug_print_client(f"dispatch #{correlation_id} {opcode} inputs={[h.remote_id for h in inputs]}")
        self.connection.wakeup()
        return slot

    def _allocate_id(self) -> int:
        if self._next_id > self.max_correlation_id:
            raise CorrelationIdExhausted(
                f"Correlation ids exhausted after {self.max_correlation_id} requests; "
                f"reconnect with a new RemoteDevice"
            )
        correlation_id = self._next_id
        self._next_id += 1
        return correlation_id

    def wait(self, slot: PendingSlot, timeout: Optional[float] = None) -> OperationResponse:
        """
        Block until the slot resolves and return its response.

        On timeout the slot is abandoned: it resolves locally with Timeout,
        frees its capacity, and stays in the table so a late response is
        recognized and discarded.
        """
        if not slot.wait(timeout):
            if self._abandon(slot, timeout) and self.cancel_on_timeout:
                self.connection.send_control(protocol.encode_cancel(slot.correlation_id))
        return slot.result()

    def _abandon(self, slot: PendingSlot, timeout: float) -> bool:
        with self._changed:
            if slot.done():
                return False
            slot.abandoned = True
            self._in_flight -= 1
            self._changed.notify_all()
            slot.fail(Timeout(timeout_error(slot.opcode, slot.correlation_id, timeout)))
        debug_print_client(f"abandoned #{slot.correlation_id} {slot.opcode} after {timeout}s")
        return True

    def deliver(self, correlation_id: int, response: Optional[OperationResponse] = None,
                error: Optional[BaseException] = None) -> Optional[PendingSlot]:
        """
        Hand a response (or error) to the slot waiting for it.

        Returns the slot, or None when the id is unknown. Abandoned slots are
        removed but not resolved again.

        A result tensor is registered here, before the caller wakes up, so
        close() sees it as soon as the request stops counting as in flight.
        """
        with self._changed:
            slot = self.pending.pop(correlation_id, None)
            if slot is None:
                return None
            if not slot.abandoned:
                self._in_flight -= 1
                self._changed.notify_all()
                if error is None and response.handle is not None:
                    error = self._register(slot, response.handle)
                if error is not None:
                    slot.fail(error)
                else:
                    slot.resolve(response)
            return slot

    def _register(self, slot: PendingSlot, descriptor) -> Optional[ProtocolError]:
        try:
            slot.handle = self.connection.registry.register(
                descriptor.remote_id, descriptor.shape, descriptor.dtype, generation=slot.generation
            )
        except ProtocolError as e:
            return e
        return None

    def detach_all(self) -> List[PendingSlot]:
        """Empty the pending table. Caller must hold `lock`."""
        slots = list(self.pending.values())
        self.pending.clear()
        self._in_flight = 0
        self._changed.notify_all()
        return slots

    def fail_all(self, make_error: Callable[[PendingSlot], BaseException]) -> int:
        """Fail every pending request so no caller blocks forever."""
        with self._changed:
            slots = self.detach_all()
        fail_slots(slots, make_error)
        return len(slots)

    def notify(self):
        """Wake dispatchers blocked on capacity (e.g. after a state change)."""
        with self._changed:
            self._changed.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no request is in flight. Returns False on timeout."""
        with self._changed:
            return self._changed.wait_for(lambda: self._in_flight == 0, timeout)

    def __len__(self):
        with self.lock:
            return len(self.pending)
