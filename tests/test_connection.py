import pytest

from helpers import FakeChannel
from session.connection import ConnectionLifecycle, ErrorClass, classify_error
from session.errors import InvalidTransition, NotConnected
from session.models import ConnectionState
from transport.base import TransportErrorType


def test_outbound_attempt_reaches_connected():
    connection = ConnectionLifecycle()
    channel = FakeChannel()

    connection.begin()
    assert connection.state == ConnectionState.CONNECTING
    assert connection.is_busy
    assert connection.attach(channel)
    assert connection.opened(channel)

    assert connection.state == ConnectionState.CONNECTED
    assert connection.require_channel() is channel


def test_stale_channels_are_ignored():
    connection = ConnectionLifecycle()
    current, stale = FakeChannel(), FakeChannel()
    connection.begin(current)

    assert not connection.opened(stale)
    assert not connection.closed(stale)
    assert connection.state == ConnectionState.CONNECTING


def test_close_returns_to_disconnected():
    connection = ConnectionLifecycle()
    channel = FakeChannel()
    connection.begin(channel)
    connection.opened(channel)

    assert connection.closed(channel)
    assert connection.state == ConnectionState.DISCONNECTED
    assert connection.channel is None
    with pytest.raises(NotConnected):
        connection.require_channel()


def test_disconnect_without_channel_is_a_noop():
    connection = ConnectionLifecycle()
    assert connection.disconnect() is False
    assert connection.state == ConnectionState.DISCONNECTED


def test_disconnect_closes_the_channel():
    connection = ConnectionLifecycle()
    channel = FakeChannel()
    connection.begin(channel)
    connection.opened(channel)

    assert connection.disconnect() is True
    assert channel.closed
    assert connection.state == ConnectionState.DISCONNECTED


def test_invalid_transitions_raise():
    connection = ConnectionLifecycle()
    with pytest.raises(InvalidTransition):
        connection.transition(ConnectionState.CONNECTED)

    connection.fail()
    assert connection.state == ConnectionState.ERROR
    with pytest.raises(InvalidTransition):
        connection.begin()

    connection.recover()
    assert connection.state == ConnectionState.DISCONNECTED


def test_error_state_survives_channel_close():
    connection = ConnectionLifecycle()
    channel = FakeChannel()
    connection.begin(channel)
    connection.opened(channel)
    connection.fail()

    assert channel.closed
    assert not connection.closed(channel)
    assert connection.state == ConnectionState.ERROR


def test_abandon_closes_a_pending_attempt():
    connection = ConnectionLifecycle()
    channel = FakeChannel()
    connection.begin(channel)

    connection.abandon()

    assert channel.closed
    assert connection.state == ConnectionState.DISCONNECTED


def test_collision_budget():
    connection = ConnectionLifecycle(max_id_retries=2)
    assert connection.record_collision() is False
    assert connection.record_collision() is False
    assert connection.record_collision() is True
    connection.clear_collisions()
    assert connection.collisions == 0


@pytest.mark.parametrize("error_type, expected", [
    (TransportErrorType.UNAVAILABLE_ID, ErrorClass.COLLISION),
    (TransportErrorType.NETWORK, ErrorClass.TRANSIENT),
    (TransportErrorType.PEER_UNAVAILABLE, ErrorClass.TRANSIENT),
    (TransportErrorType.SOCKET_ERROR, ErrorClass.TRANSIENT),
    (TransportErrorType.CHANNEL_ERROR, ErrorClass.TRANSIENT),
    (TransportErrorType.UNSUPPORTED, ErrorClass.FATAL),
    (TransportErrorType.INVALID_ID, ErrorClass.OTHER),
    (TransportErrorType.UNKNOWN, ErrorClass.OTHER),
])
def test_error_classification(error_type, expected):
    assert classify_error(error_type) == expected
