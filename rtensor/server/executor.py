"""
Executor: runs decoded requests for one client session.

Executors are simple command processors: they execute what the client
sends, in arrival order, and answer every request with exactly one
response or error. Each correlation id is executed at most once.

Requests and releases wait in a FIFO queue until run_pending() executes
them. A CANCEL that arrives while its request is still queued removes it,
and the request is answered with a 'cancelled' error instead of running.

Keep this SIMPLE and READABLE.
"""

import numpy as np
from collections import deque
from typing import Dict, List, Optional

from rtensor.debug import debug_print_server
from rtensor.errors import ProtocolError
from rtensor.server.engine import Engine, create_engine
from rtensor.transport import protocol
from rtensor.transport.protocol import (
    DTYPES, HandleDescriptor, MessageKind, OperationRequest, OperationResponse
)


SERVER_NAME = 'rtensor-server'

BINARY_OPS = ('add', 'sub', 'mul', 'div')
SCALAR_OPS = ('add_scalar', 'sub_scalar', 'mul_scalar', 'div_scalar', 'rsub_scalar', 'rdiv_scalar')
UNARY_OPS = ('neg', 'exp', 'log', 'sqrt', 'abs', 'relu')
REDUCE_OPS = ('sum', 'mean')


class UnknownHandle(Exception):
    pass


class UnsupportedOp(Exception):
    pass


class Executor:
    """Tensor table plus opcode dispatch for one client session."""

    def __init__(self, engine: Optional[Engine] = None, seed: Optional[int] = None):
        self.engine = engine or create_engine('numpy', seed=seed)
        self.tensors: Dict[int, object] = {}  # Map: remote id -> tensor
        self._next_id = 1
        self._last_correlation_id = 0
        self._cancelled = set()  # cancels that arrived before their request
        self.queue = deque()  # REQUEST and RELEASE frames waiting to run, FIFO
        self.session_key: Optional[str] = None
        self.stats = {'executed': 0, 'failed': 0, 'released': 0, 'duplicates': 0, 'cancelled': 0}

    def handle_frame(self, data: bytes) -> List[bytes]:
        """Process one inbound frame, run everything queued, return the frames to send back."""
        replies = self.submit(data)
        replies.extend(self.run_pending())
        return replies

    def submit(self, data: bytes) -> List[bytes]:
        """
        Accept one inbound frame without executing anything.

        Returns the replies that are due right away (handshake, protocol
        errors, cancelled requests). Requests and releases are queued.
        """
        try:
            frame = protocol.decode_frame(data)
        except ProtocolError as e:
            debug_print_server(f"undecodable frame: {e}")
            return [protocol.encode_error(0, 'protocol', str(e))]

        if frame.kind == MessageKind.REQUEST:
            return self._enqueue(frame)
        if frame.kind == MessageKind.CANCEL:
            return self._cancel(frame.correlation_id)

        try:
            if frame.kind == MessageKind.HELLO:
                hello = protocol.decode_hello(frame)
                if hello.session is not None:
                    self.session_key = hello.session
                debug_print_server(f"hello from {hello.name or 'client'} (protocol v{hello.version})")
                return [protocol.encode_hello(SERVER_NAME)]
            if frame.kind == MessageKind.RELEASE:
                protocol.decode_release(frame)
                # Behind earlier requests, which may still read these tensors
                self.queue.append(frame)
                return []
        except ProtocolError as e:
            debug_print_server(f"bad {frame.kind.name} message: {e}")
            return [protocol.encode_error(frame.correlation_id, 'protocol', str(e))]

        return [protocol.encode_error(frame.correlation_id, 'protocol',
                                      f"Unexpected {frame.kind.name} message from client")]

    def _enqueue(self, frame: protocol.Frame) -> List[bytes]:
        cid = frame.correlation_id
        if cid <= self._last_correlation_id:
            # Already seen: never run an id twice
            self.stats['duplicates'] += 1
            debug_print_server(f"ignoring duplicate request #{cid}")
            return []
        self._last_correlation_id = cid

        if cid in self._cancelled:
            self._cancelled.discard(cid)
            return [self._cancelled_reply(cid)]
        self.queue.append(frame)
        return []

    def _cancel(self, cid: int) -> List[bytes]:
        for frame in self.queue:
            if frame.kind == MessageKind.REQUEST and frame.correlation_id == cid:
                self.queue.remove(frame)
                return [self._cancelled_reply(cid)]
        if cid > self._last_correlation_id:
            self._cancelled.add(cid)
        # Otherwise it already ran; the client discards the late response
        return []

    def _cancelled_reply(self, cid: int) -> bytes:
        self.stats['cancelled'] += 1
        debug_print_server(f"request #{cid} cancelled before it ran")
        return protocol.encode_error(cid, 'cancelled', f"request #{cid} was cancelled before it ran")

    @property
    def pending(self) -> int:
        """Queued frames not yet executed."""
        return len(self.queue)

    def run_pending(self, limit: Optional[int] = None) -> List[bytes]:
        """Execute queued frames in order (at most `limit` of them) and return the replies."""
        replies = []
        count = 0
        while self.queue and (limit is None or count < limit):
            frame = self.queue.popleft()
            count += 1
            if frame.kind == MessageKind.RELEASE:
                self.release(protocol.decode_release(frame))
            else:
                replies.extend(self._run_request(frame))
        return replies

    def _run_request(self, frame: protocol.Frame) -> List[bytes]:
        cid = frame.correlation_id
        try:
            request = protocol.decode_request(frame)
        except ProtocolError as e:
            self.stats['failed'] += 1
            return [protocol.encode_error(cid, 'protocol', str(e))]

        try:
            response = self.execute(request)
        except UnknownHandle as e:
            code, message = 'unknown_handle', str(e)
        except UnsupportedOp as e:
            code, message = 'unsupported_op', str(e)
        except (KeyError, TypeError) as e:
            code, message = 'protocol', f"bad params for '{request.opcode}': {e}"
        except Exception as e:
            code, message = 'execution', str(e) or type(e).__name__
        else:
            self.stats['executed'] += 1
            return [protocol.encode_response(response)]

        self.stats['failed'] += 1
        debug_print_server(f"#{cid} {request.opcode} failed ({code}): {message}")
        return [protocol.encode_error(cid, code, message, request.opcode)]

    def execute(self, request: OperationRequest) -> OperationResponse:
        """Run one operation. Raises on failure; the caller maps errors to codes."""
        op = request.opcode
        params = request.params
        inputs = [self._get(remote_id) for remote_id in request.inputs]
        debug_print_server(f"#{request.correlation_id} {op} inputs={list(request.inputs)}")

        if op == 'read':
            self._arity(op, inputs, 1)
            return OperationResponse(request.correlation_id, data=self.engine.to_numpy(inputs[0]))

        if op in ('ones', 'zeros', 'full'):
            value = {'ones': 1, 'zeros': 0}.get(op, params.get('value'))
            result = self.engine.full(self._shape(params), value, self._dtype(params))
        elif op == 'random':
            result = self.engine.random(self._shape(params), self._dtype(params),
                                        params['distribution'], params)
        elif op == 'upload':
            if not isinstance(request.data, np.ndarray):
                raise TypeError("upload without a data block")
            result = self.engine.create_tensor(request.data)
        elif op in BINARY_OPS:
            self._arity(op, inputs, 2)
            result = self.engine.binary(op, *inputs)
        elif op in SCALAR_OPS:
            self._arity(op, inputs, 1)
            result = self.engine.scalar(op[:-len('_scalar')], inputs[0], params['value'])
        elif op in UNARY_OPS:
            self._arity(op, inputs, 1)
            result = self.engine.unary(op, inputs[0])
        elif op == 'matmul':
            self._arity(op, inputs, 2)
            result = self.engine.matmul(*inputs)
        elif op == 'transpose':
            self._arity(op, inputs, 1)
            result = self.engine.transpose(inputs[0])
        elif op == 'reshape':
            self._arity(op, inputs, 1)
            result = self.engine.reshape(inputs[0], self._shape(params))
        elif op in REDUCE_OPS:
            self._arity(op, inputs, 1)
            result = self.engine.reduce(op, inputs[0], params.get('axis'), bool(params.get('keepdims', False)))
        else:
            raise UnsupportedOp(f"Unsupported opcode: {op}")

        return OperationResponse(request.correlation_id, handle=self._store(result))

    def _get(self, remote_id: int):
        tensor = self.tensors.get(remote_id)
        if tensor is None:
            raise UnknownHandle(f"Unknown remote tensor {remote_id}")
        return tensor

    def _store(self, tensor) -> HandleDescriptor:
        remote_id = self._next_id
        self._next_id += 1
        self.tensors[remote_id] = tensor
        array = self.engine.to_numpy(tensor)
        return HandleDescriptor(remote_id, tuple(array.shape), array.dtype.name)

    def release(self, remote_ids: List[int]):
        """Free tensors. Unknown ids are ignored (releases are idempotent)."""
        for remote_id in remote_ids:
            if self.tensors.pop(remote_id, None) is not None:
                self.stats['released'] += 1
        debug_print_server(f"released {remote_ids} ({len(self.tensors)} live)")

    @staticmethod
    def _arity(op: str, inputs: list, count: int):
        if len(inputs) != count:
            raise TypeError(f"'{op}' takes {count} input(s), got {len(inputs)}")

    @staticmethod
    def _shape(params: dict) -> tuple:
        shape = params['shape']
        if not isinstance(shape, list) or not all(isinstance(d, int) for d in shape):
            raise TypeError(f"malformed shape {shape!r}")
        return tuple(shape)

    @staticmethod
    def _dtype(params: dict) -> str:
        dtype = params.get('dtype', 'float32')
        if dtype not in DTYPES:
            raise TypeError(f"unsupported dtype {dtype!r}")
        return dtype

    def __len__(self):
        return len(self.tensors)
