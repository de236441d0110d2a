"""
Test request dispatch and response correlation.

Ordering, backpressure, timeouts and bad responses, driven through the
loopback transport with responses held back until the test releases them.
"""

import itertools
import threading

import pytest

from conftest import LOOPBACK_ENDPOINT, LoopbackNetwork, make_config, ones_params, wait_until
from rtensor.errors import (
    CorrelationIdExhausted, ProtocolError, RemoteExecutionError, StaleHandle, Timeout
)
from rtensor.transport import protocol
from rtensor.transport.connection import connect
from rtensor.transport.protocol import MessageKind


@pytest.fixture
def held():
    network = LoopbackNetwork(hold=True)
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(max_pending=8), transport_factory=network)
    yield conn, network
    conn.close(timeout=0.5)


def test_correlation_ids_start_at_one_and_increase(held):
    conn, network = held
    slots = [conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create') for _ in range(3)]
    assert [s.correlation_id for s in slots] == [1, 2, 3]


def test_wire_order_matches_dispatch_order():
    """Frames from many threads hit the wire in correlation id order."""
    network = LoopbackNetwork()
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(), transport_factory=network)
    dispatched = []
    lock = threading.Lock()

    def worker():
        for _ in range(25):
            slot = conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create')
            with lock:
                dispatched.append(slot.correlation_id)
            conn.dispatcher.wait(slot, 5.0)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    wire_ids = [r.correlation_id for r in network.transport.requests()]
    assert len(wire_ids) == 100
    assert wire_ids == sorted(wire_ids)
    assert sorted(dispatched) == wire_ids
    conn.close()


@pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
def test_responses_in_any_order_reach_their_callers(held, order):
    conn, network = held
    shapes = [(1,), (2, 2), (3, 1, 2), (4,)]
    slots = [conn.dispatcher.dispatch('ones', [], ones_params(*s), request_class='create') for s in shapes]
    assert wait_until(lambda: len(network.transport.held) == 4)

    network.transport.respond(*[slots[i].correlation_id for i in order])

    for slot, shape in zip(slots, shapes):
        response = conn.dispatcher.wait(slot, 2.0)
        assert response.correlation_id == slot.correlation_id
        assert response.handle.shape == shape
        assert slot.handle.remote_id == response.handle.remote_id


def test_unknown_correlation_id_is_dropped(held):
    conn, network = held
    slot = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')
    assert wait_until(lambda: slot.correlation_id in network.transport.held)

    bogus = protocol.encode_response(protocol.OperationResponse(
        999, handle=protocol.HandleDescriptor(77, (1,), 'float32')))
    network.transport.inject(bogus)
    assert wait_until(lambda: conn.correlator.dropped == 1)
    assert not slot.done()

    network.transport.respond(slot.correlation_id)
    assert conn.dispatcher.wait(slot, 2.0).handle.shape == (2,)


def test_backpressure_blocks_at_max_pending():
    network = LoopbackNetwork(hold=True)
    k = 4
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(max_pending=k), transport_factory=network)
    slots = [conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create') for _ in range(k)]
    assert conn.dispatcher.in_flight == k

    extra = []
    blocked = threading.Thread(
        target=lambda: extra.append(conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create'))
    )
    blocked.start()
    blocked.join(0.2)
    assert blocked.is_alive(), "dispatch K+1 should block"
    assert conn.dispatcher.in_flight == k

    assert wait_until(lambda: len(network.transport.held) == k)
    network.transport.respond(slots[0].correlation_id)
    blocked.join(2.0)
    assert not blocked.is_alive()
    assert extra[0].correlation_id == k + 1
    assert conn.dispatcher.in_flight == k

    network.transport.hold = False
    network.transport.respond_all()
    conn.close()


def test_backpressure_dispatch_timeout():
    network = LoopbackNetwork(hold=True)
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(max_pending=1), transport_factory=network)
    conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create')
    with pytest.raises(Timeout):
        conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create', timeout=0.1)
    conn.close(timeout=0.2)


def test_timeout_abandons_slot_and_frees_capacity(held):
    conn, network = held
    slot = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')

    with pytest.raises(Timeout):
        conn.dispatcher.wait(slot, 0.05)

    assert slot.abandoned
    assert conn.dispatcher.in_flight == 0
    assert slot.correlation_id in conn.dispatcher.pending
    assert wait_until(lambda: network.transport.frames(MessageKind.CANCEL))


def test_late_response_after_timeout_releases_remote_tensor(held):
    conn, network = held
    slot = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')
    with pytest.raises(Timeout):
        conn.dispatcher.wait(slot, 0.05)

    transport = network.transport
    assert wait_until(lambda: slot.correlation_id in transport.held)
    transport.respond(slot.correlation_id)

    # Nobody owns the result, so it is freed on the executor
    assert wait_until(lambda: 1 in transport.released_ids())
    assert wait_until(lambda: len(transport.executor) == 0)
    assert slot.correlation_id not in conn.dispatcher.pending


def test_remote_error_fails_only_its_caller():
    network = LoopbackNetwork()
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(), transport_factory=network)
    bad = conn.dispatcher.dispatch('no_such_op', [], {}, request_class='compute')
    good = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')

    with pytest.raises(RemoteExecutionError) as exc_info:
        conn.dispatcher.wait(bad, 2.0)
    assert exc_info.value.opcode == 'no_such_op'
    assert conn.dispatcher.wait(good, 2.0).handle.shape == (2,)
    conn.close()


def test_released_input_fails_locally(held):
    conn, network = held
    handle = conn.registry.register(5, (2,), 'float32')
    handle.release()
    with pytest.raises(StaleHandle):
        conn.dispatcher.dispatch('neg', [handle], request_class='compute')
    assert network.transport.requests() == []
    assert conn.dispatcher.in_flight == 0


def test_correlation_id_exhaustion(held):
    conn, network = held
    conn.dispatcher.max_correlation_id = 2
    conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create')
    conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create')
    with pytest.raises(CorrelationIdExhausted):
        conn.dispatcher.dispatch('ones', [], ones_params(1), request_class='create')
    assert issubclass(CorrelationIdExhausted, ProtocolError)


def test_undecodable_response_fails_its_slot(held):
    conn, network = held
    slot = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')
    garbage = protocol.encode_frame(slot.correlation_id, MessageKind.RESPONSE, b'\xc1\xc1')
    network.transport.inject(garbage)
    with pytest.raises(ProtocolError):
        conn.dispatcher.wait(slot, 2.0)
    assert conn.is_open


def test_repeated_protocol_errors_drop_the_channel(held):
    conn, network = held
    first = network.transport
    for _ in range(3):
        first.inject(b'\x00\x01')
    assert wait_until(lambda: len(network.transports) == 2)
    assert wait_until(lambda: conn.is_open)
    assert conn.generation == 1


def test_cancel_after_timeout_skips_a_queued_request():
    """The client sends REQUEST then CANCEL; the executor has not run it yet."""
    network = LoopbackNetwork(defer=True)
    conn = connect(LOOPBACK_ENDPOINT, config=make_config(), transport_factory=network)
    transport = network.transport
    executor = transport.executor

    slot = conn.dispatcher.dispatch('ones', [], ones_params(2), request_class='create')
    with pytest.raises(Timeout):
        conn.dispatcher.wait(slot, 0.05)

    assert wait_until(lambda: executor.stats['cancelled'] == 1)
    sent = [f for f in transport.frames() if f.kind != MessageKind.HELLO]
    assert [(f.kind, f.correlation_id) for f in sent] == [
        (MessageKind.REQUEST, slot.correlation_id),
        (MessageKind.CANCEL, slot.correlation_id),
    ]
    # The 'cancelled' reply retires the abandoned slot
    assert wait_until(lambda: slot.correlation_id not in conn.dispatcher.pending)

    transport.run()
    assert executor.stats['executed'] == 0
    assert executor.pending == 0
    assert len(executor) == 0
    conn.close()
