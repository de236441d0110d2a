"""
Wire protocol between rtensor clients and remote executors.

Every message is one frame:

    correlation id (u32) | kind (u8) | payload length (u32) | payload

The header is big-endian. Payloads are msgpack maps built in a fixed key
order, so encoding is deterministic. Two msgpack extension types carry the
values plain msgpack cannot tell apart:

    ext 1  handle reference   u64 remote id
    ext 2  tensor data block  [dtype, shape, raw bytes]

Tensor data is row-major with fixed-width little-endian elements. Only the
dtypes in DTYPES travel on the wire.

Keep this SIMPLE and READABLE.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

import msgpack
import numpy as np

from rtensor.errors import ProtocolError


PROTOCOL_VERSION = 1

HEADER = struct.Struct('!IBI')
MAX_CORRELATION_ID = 0xFFFFFFFF
MAX_PAYLOAD_SIZE = 0xFFFFFFFF

EXT_HANDLE = 1
EXT_TENSOR = 2

# Wire dtypes: name -> fixed-width little-endian layout
DTYPES = {
    'float32': np.dtype('<f4'),
    'float64': np.dtype('<f8'),
    'int32': np.dtype('<i4'),
    'int64': np.dtype('<i8'),
    'bool': np.dtype('?'),
}

# Error codes reported by the remote executor
ERROR_CODES = ('execution', 'unknown_handle', 'unsupported_op', 'protocol', 'cancelled')


class MessageKind(IntEnum):
    REQUEST = 1
    RESPONSE = 2
    RELEASE = 3
    ERROR = 4
    HELLO = 5
    CANCEL = 6


@dataclass(frozen=True)
class HandleRef:
    """Reference to a remote tensor inside a request."""
    remote_id: int


@dataclass(frozen=True)
class HandleDescriptor:
    """A new remote tensor, as reported by the executor."""
    remote_id: int
    shape: tuple
    dtype: str


@dataclass(frozen=True)
class ErrorDescriptor:
    """Structured failure reported by the executor."""
    code: str
    message: str
    opcode: Optional[str] = None


@dataclass(frozen=True, eq=False)
class OperationRequest:
    """One tensor operation, ready for the wire."""
    correlation_id: int
    opcode: str
    inputs: Tuple[int, ...] = ()  # remote ids of the input tensors
    params: Dict[str, Any] = field(default_factory=dict)
    data: Optional[np.ndarray] = None  # host data for uploads


@dataclass(frozen=True, eq=False)
class OperationResponse:
    """Result of one operation: a new handle, raw data, or an error."""
    correlation_id: int
    handle: Optional[HandleDescriptor] = None
    data: Optional[np.ndarray] = None
    error: Optional[ErrorDescriptor] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Frame:
    """A decoded frame header plus its raw payload."""
    correlation_id: int
    kind: MessageKind
    payload: bytes


# Framing

def encode_frame(correlation_id: int, kind: MessageKind, payload: bytes) -> bytes:
    """Prefix a payload with its header."""
    if not 0 <= correlation_id <= MAX_CORRELATION_ID:
        raise ProtocolError(f"Correlation id out of range: {correlation_id}")
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ProtocolError(f"Payload too large: {len(payload)} bytes")
    return HEADER.pack(correlation_id, int(kind), len(payload)) + payload


def _parse_header(data, offset: int = 0) -> Tuple[int, MessageKind, int]:
    correlation_id, kind, length = HEADER.unpack_from(data, offset)
    try:
        kind = MessageKind(kind)
    except ValueError:
        raise ProtocolError(f"Unknown message kind {kind} (request #{correlation_id})")
    return correlation_id, kind, length


def decode_frame(data: bytes) -> Frame:
    """Decode exactly one complete frame."""
    if len(data) < HEADER.size:
        raise ProtocolError(f"Truncated frame header ({len(data)} bytes)")
    correlation_id, kind, length = _parse_header(data)
    actual = len(data) - HEADER.size
    if actual != length:
        raise ProtocolError(
            f"Frame length mismatch for request #{correlation_id}: "
            f"header says {length} bytes, got {actual}"
        )
    return Frame(correlation_id, kind, bytes(data[HEADER.size:]))


class FrameBuffer:
    """
    Reassembles frames from a byte stream.

    Partial input stays buffered until the rest arrives, so a short read is
    never parsed as a (wrong) complete message.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, data: bytes) -> List[Frame]:
        """Add bytes and return every frame that is now complete."""
        self._buffer.extend(data)
        frames = []
        offset = 0
        while len(self._buffer) - offset >= HEADER.size:
            correlation_id, kind, length = _parse_header(self._buffer, offset)
            end = offset + HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append(Frame(correlation_id, kind, bytes(self._buffer[offset + HEADER.size:end])))
            offset = end
        del self._buffer[:offset]
        return frames

    @property
    def pending(self) -> int:
        """Number of buffered bytes that do not yet form a complete frame."""
        return len(self._buffer)


# Payload values

def pack_tensor(array) -> msgpack.ExtType:
    """Pack a numpy array as a tensor data block."""
    array = np.asarray(array)
    name = array.dtype.name
    if name not in DTYPES:
        raise ProtocolError(f"Unsupported dtype on the wire: {name}")
    raw = np.ascontiguousarray(array, dtype=DTYPES[name]).tobytes()
    body = msgpack.packb([name, list(array.shape), raw], use_bin_type=True)
    return msgpack.ExtType(EXT_TENSOR, body)


def unpack_tensor(body: bytes) -> np.ndarray:
    """Unpack a tensor data block, checking dtype and size."""
    try:
        name, shape, raw = msgpack.unpackb(body, raw=False)
    except (ValueError, TypeError) as e:
        raise ProtocolError(f"Malformed tensor block: {e}")
    if name not in DTYPES:
        raise ProtocolError(f"Unsupported dtype in tensor block: {name}")
    if not isinstance(raw, bytes):
        raise ProtocolError("Malformed tensor block: data is not binary")
    if not isinstance(shape, list) or not all(isinstance(d, int) and d >= 0 for d in shape):
        raise ProtocolError(f"Malformed shape in tensor block: {shape}")
    wire_dtype = DTYPES[name]
    expected = int(np.prod(shape, dtype=np.int64)) * wire_dtype.itemsize
    if len(raw) != expected:
        raise ProtocolError(
            f"Tensor block size mismatch: {name}{tuple(shape)} needs {expected} bytes, got {len(raw)}"
        )
    return np.frombuffer(raw, dtype=wire_dtype).reshape(shape).astype(np.dtype(name))


def _default(obj):
    if isinstance(obj, HandleRef):
        return msgpack.ExtType(EXT_HANDLE, struct.pack('!Q', obj.remote_id))
    if isinstance(obj, np.ndarray):
        return pack_tensor(obj)
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Cannot encode {type(obj).__name__} on the wire")


def _ext_hook(code, data):
    if code == EXT_HANDLE:
        if len(data) != 8:
            raise ProtocolError("Malformed handle reference")
        return HandleRef(struct.unpack('!Q', data)[0])
    if code == EXT_TENSOR:
        return unpack_tensor(data)
    raise ProtocolError(f"Unknown extension type {code}")


def _pack(obj) -> bytes:
    try:
        return msgpack.packb(obj, default=_default, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise ProtocolError(f"Cannot encode message: {e}")


def _unpack(payload: bytes) -> Any:
    try:
        return msgpack.unpackb(payload, ext_hook=_ext_hook, raw=False)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as e:
        raise ProtocolError(f"Cannot decode message: {e}")


def _unpack_map(payload: bytes, what: str) -> Dict[str, Any]:
    body = _unpack(payload)
    if not isinstance(body, dict):
        raise ProtocolError(f"Malformed {what}: expected a map")
    return body


# Requests

def encode_request_payload(opcode: str, inputs=(), params: Optional[Dict[str, Any]] = None,
                           data: Optional[np.ndarray] = None) -> bytes:
    """Encode the payload of a request (everything except the header)."""
    return _pack({
        'op': opcode,
        'inputs': [HandleRef(remote_id) for remote_id in inputs],
        'params': params or {},
        'data': data,
    })


def encode(request: OperationRequest) -> bytes:
    """Encode a request into a complete frame."""
    payload = encode_request_payload(request.opcode, request.inputs, request.params, request.data)
    return encode_frame(request.correlation_id, MessageKind.REQUEST, payload)


def decode_request(frame: Frame) -> OperationRequest:
    """Decode a REQUEST frame (executor side)."""
    if frame.kind != MessageKind.REQUEST:
        raise ProtocolError(f"Expected a request, got {frame.kind.name}")
    body = _unpack_map(frame.payload, 'request')
    opcode = body.get('op')
    inputs = body.get('inputs', [])
    params = body.get('params', {})
    if not isinstance(opcode, str):
        raise ProtocolError(f"Request #{frame.correlation_id} has no opcode")
    if not isinstance(inputs, list) or not all(isinstance(ref, HandleRef) for ref in inputs):
        raise ProtocolError(f"Request #{frame.correlation_id} has malformed inputs")
    if not isinstance(params, dict):
        raise ProtocolError(f"Request #{frame.correlation_id} has malformed params")
    return OperationRequest(
        correlation_id=frame.correlation_id,
        opcode=opcode,
        inputs=tuple(ref.remote_id for ref in inputs),
        params=params,
        data=body.get('data'),
    )


# Responses

def encode_response(response: OperationResponse) -> bytes:
    """Encode a response (or error) into a complete frame."""
    if response.error is not None:
        return encode_error(response.correlation_id, response.error.code,
                            response.error.message, response.error.opcode)
    handle = None
    if response.handle is not None:
        handle = [response.handle.remote_id, list(response.handle.shape), response.handle.dtype]
    payload = _pack({'handle': handle, 'data': response.data})
    return encode_frame(response.correlation_id, MessageKind.RESPONSE, payload)


def encode_error(correlation_id: int, code: str, message: str, opcode: Optional[str] = None) -> bytes:
    """Encode a structured error into a complete ERROR frame."""
    if code not in ERROR_CODES:
        raise ProtocolError(f"Unknown error code: {code}")
    payload = _pack({'code': code, 'message': message, 'op': opcode})
    return encode_frame(correlation_id, MessageKind.ERROR, payload)


def _decode_descriptor(raw, correlation_id: int) -> HandleDescriptor:
    if not isinstance(raw, list) or len(raw) != 3:
        raise ProtocolError(f"Malformed handle descriptor in response #{correlation_id}")
    remote_id, shape, dtype = raw
    if not isinstance(remote_id, int) or remote_id < 0:
        raise ProtocolError(f"Malformed remote id in response #{correlation_id}: {remote_id}")
    if not isinstance(shape, list) or not all(isinstance(d, int) and d >= 0 for d in shape):
        raise ProtocolError(f"Malformed shape in response #{correlation_id}: {shape}")
    if dtype not in DTYPES:
        raise ProtocolError(f"Unsupported dtype in response #{correlation_id}: {dtype}")
    return HandleDescriptor(remote_id, tuple(shape), dtype)


def decode_response(frame: Frame) -> OperationResponse:
    """Decode a RESPONSE or ERROR frame."""
    if frame.kind == MessageKind.ERROR:
        body = _unpack_map(frame.payload, 'error')
        code = body.get('code')
        if code not in ERROR_CODES:
            code = 'execution'
        error = ErrorDescriptor(code=code, message=str(body.get('message', '')), opcode=body.get('op'))
        return OperationResponse(frame.correlation_id, error=error)

    if frame.kind != MessageKind.RESPONSE:
        raise ProtocolError(f"Expected a response, got {frame.kind.name}")

    body = _unpack_map(frame.payload, 'response')
    handle = body.get('handle')
    data = body.get('data')
    if handle is not None:
        handle = _decode_descriptor(handle, frame.correlation_id)
    if data is not None and not isinstance(data, np.ndarray):
        raise ProtocolError(f"Malformed data block in response #{frame.correlation_id}")
    return OperationResponse(frame.correlation_id, handle=handle, data=data)


def decode(data: bytes) -> OperationResponse:
    """Decode a complete RESPONSE or ERROR frame."""
    return decode_response(decode_frame(data))


# Control messages

@dataclass(frozen=True)
class Hello:
    """Handshake contents. `session` identifies a client across reconnects."""
    version: int
    name: str
    session: Optional[str] = None


def encode_hello(name: str, version: int = PROTOCOL_VERSION, session: Optional[str] = None) -> bytes:
    return encode_frame(0, MessageKind.HELLO, _pack({'version': version, 'name': name, 'session': session}))


def decode_hello(frame: Frame) -> Hello:
    """Decode a HELLO frame (handshake or keepalive)."""
    if frame.kind != MessageKind.HELLO:
        raise ProtocolError(f"Expected a handshake, got {frame.kind.name}")
    body = _unpack_map(frame.payload, 'handshake')
    version = body.get('version')
    if not isinstance(version, int):
        raise ProtocolError("Handshake without protocol version")
    session = body.get('session')
    if session is not None and not isinstance(session, str):
        raise ProtocolError("Malformed session key in handshake")
    return Hello(version, str(body.get('name', '')), session)


def encode_release(remote_ids) -> bytes:
    """Batch of remote tensors the client no longer needs."""
    return encode_frame(0, MessageKind.RELEASE, _pack({'ids': list(remote_ids)}))


def decode_release(frame: Frame) -> List[int]:
    if frame.kind != MessageKind.RELEASE:
        raise ProtocolError(f"Expected a release, got {frame.kind.name}")
    ids = _unpack_map(frame.payload, 'release').get('ids')
    if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
        raise ProtocolError("Malformed release message")
    return ids


def encode_cancel(correlation_id: int) -> bytes:
    """Ask the executor to skip a request the client gave up on."""
    return encode_frame(correlation_id, MessageKind.CANCEL, b'')
