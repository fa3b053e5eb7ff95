"""
BrokerConnection lifecycle tests (no real broker).

The paho client is replaced by FakeMQTTClient (conftest.py); callbacks are
fired by hand.

Usage:
    pytest test_broker_connection.py
"""

import socket
import threading
import time

import paho.mqtt.client as mqtt
import pytest

from firealarm_mqtt import (
    BrokerConnection,
    ConnectionState,
    ConnectError,
    ConnectFailure,
    SubscribeError,
    DEFAULT_PLAN,
)
from firealarm_mqtt.connection import CONNECT_TIMEOUT, create_paho_client


@pytest.fixture
def connection(logger, client_factory):
    return BrokerConnection(
        logger=logger,
        client_factory=client_factory,
        connect_timeout=0.5,
        subscribe_timeout=0.5,
    )


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# connect()
# ---------------------------------------------------------------------------

def test_connect_success(connection, client_factory, params):
    connection.connect(params)

    client = client_factory.last
    assert connection.state is ConnectionState.CONNECTED
    assert connection.is_connected()
    assert client.connect_calls == [("broker.test", 1883, 60)]
    assert client.loop_started
    assert client.params is params
    assert connection.get_stats()['connections'] == 1


@pytest.mark.parametrize("rc", [4, 5, 0x86, 0x87])
def test_connect_auth_failure(connection, client_factory, params, rc):
    client_factory.behaviour = {'connack': rc}

    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.AUTH_FAILURE
    assert exc.value.reason_code == rc
    assert connection.state is ConnectionState.DISCONNECTED
    assert client_factory.last.loop_stop_calls >= 1


def test_connect_refused_is_network_unreachable(connection, client_factory, params):
    client_factory.behaviour = {'connack': 3}

    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.NETWORK_UNREACHABLE


def test_socket_error_is_translated(connection, client_factory, params):
    client_factory.behaviour = {'connect_error': ConnectionRefusedError("refused")}

    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.NETWORK_UNREACHABLE
    assert isinstance(exc.value.__cause__, ConnectionRefusedError)
    assert connection.state is ConnectionState.DISCONNECTED


def test_socket_timeout_is_timeout(connection, client_factory, params):
    client_factory.behaviour = {'connect_error': socket.timeout("timed out")}

    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.TIMEOUT


def test_missing_connack_times_out(logger, client_factory, params):
    connection = BrokerConnection(logger=logger, client_factory=client_factory, connect_timeout=0.1)
    client_factory.behaviour = {'connack': None}

    started = time.monotonic()
    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.TIMEOUT
    assert time.monotonic() - started < 2.0
    assert connection.state is ConnectionState.DISCONNECTED


def test_socket_closed_before_connack(connection, client_factory, params):
    client_factory.behaviour = {'connack': None}
    errors = []

    def attempt():
        try:
            connection.connect(params)
        except ConnectError as e:
            errors.append(e)

    worker = threading.Thread(target=attempt)
    worker.start()
    assert wait_for(lambda: client_factory.clients and client_factory.last.loop_started)

    client_factory.last.drop(rc=7)
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.NETWORK_UNREACHABLE


def test_concurrent_connect_rejected(connection, client_factory, params):
    client_factory.behaviour = {'connack': None}
    errors = []

    worker = threading.Thread(target=lambda: connection.connect(params))
    worker.start()
    assert wait_for(lambda: client_factory.clients and client_factory.last.loop_started)
    assert connection.state is ConnectionState.CONNECTING

    try:
        connection.connect(params)
    except ConnectError as e:
        errors.append(e)

    client_factory.last.ack_connect(0)
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.ALREADY_CONNECTING
    assert connection.state is ConnectionState.CONNECTED
    assert len(client_factory.clients) == 1


def test_connect_while_connected_rejected(connection, params):
    connection.connect(params)

    with pytest.raises(ConnectError) as exc:
        connection.connect(params)

    assert exc.value.reason is ConnectFailure.ALREADY_CONNECTING


def test_disconnect_cancels_pending_connect(connection, client_factory, params):
    client_factory.behaviour = {'connack': None}
    connection.connect_timeout = 5.0
    errors = []

    def attempt():
        try:
            connection.connect(params)
        except ConnectError as e:
            errors.append(e)

    worker = threading.Thread(target=attempt)
    worker.start()
    assert wait_for(lambda: client_factory.clients and client_factory.last.loop_started)

    started = time.monotonic()
    connection.disconnect()
    worker.join(timeout=2.0)

    assert not worker.is_alive()
    assert time.monotonic() - started < 2.0
    assert errors[0].reason is ConnectFailure.CANCELLED
    assert connection.state is ConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# disconnect()
# ---------------------------------------------------------------------------

def test_disconnect_when_never_connected_is_noop(connection, client_factory):
    connection.disconnect()
    connection.disconnect()

    assert connection.state is ConnectionState.DISCONNECTED
    assert client_factory.clients == []
    assert connection.session == 0


def test_disconnect_twice_closes_once(connection, client_factory, params):
    connection.connect(params)
    connection.disconnect()
    connection.disconnect()

    assert client_factory.last.disconnect_calls == 1
    assert connection.state is ConnectionState.DISCONNECTED


def test_disconnect_swallows_client_errors(connection, client_factory, params):
    connection.connect(params)

    def boom():
        raise OSError("socket already closed")

    client_factory.last.disconnect = boom
    connection.disconnect()

    assert connection.state is ConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# subscribe()
# ---------------------------------------------------------------------------

def test_subscribe_sends_plan_as_one_batch(connection, client_factory, params):
    connection.connect(params)
    connection.subscribe(DEFAULT_PLAN)

    assert client_factory.last.subscribe_calls == [
        [("devices/+/status", 1), ("devices/+/alarm", 1)]
    ]


def test_subscribe_partial_failure(connection, client_factory, params):
    client_factory.behaviour = {'suback': [1, 0x80]}
    connection.connect(params)

    with pytest.raises(SubscribeError) as exc:
        connection.subscribe(DEFAULT_PLAN)

    assert exc.value.failed_filters == frozenset({"devices/+/alarm"})
    assert connection.is_connected()


def test_subscribe_without_suback_fails_whole_batch(connection, client_factory, params):
    client_factory.behaviour = {'suback': 'never'}
    connection.subscribe_timeout = 0.1
    connection.connect(params)

    with pytest.raises(SubscribeError) as exc:
        connection.subscribe(DEFAULT_PLAN)

    assert exc.value.failed_filters == frozenset(DEFAULT_PLAN.filters())


def test_subscribe_requires_connection(connection):
    with pytest.raises(SubscribeError) as exc:
        connection.subscribe(DEFAULT_PLAN)

    assert exc.value.failed_filters == frozenset(DEFAULT_PLAN.filters())


# ---------------------------------------------------------------------------
# Message and loss delivery
# ---------------------------------------------------------------------------

def test_messages_reach_handlers(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    connection.connect(params)

    client_factory.last.deliver("devices/s1/status", "OK", qos=1)

    assert len(received) == 1
    msg = received[0]
    assert msg.topic == "devices/s1/status"
    assert msg.payload == b"OK"
    assert msg.qos == 1
    assert msg.session == connection.session


def test_handler_errors_do_not_escape(connection, client_factory, params):
    received = []

    def broken(msg):
        raise RuntimeError("handler bug")

    connection.add_message_handler(broken)
    connection.add_message_handler(received.append)
    connection.connect(params)

    client_factory.last.deliver("devices/s1/alarm", "x")

    assert len(received) == 1


def test_loss_emits_one_event(connection, client_factory, params):
    events = []
    connection.add_connection_lost_handler(events.append)
    connection.connect(params)
    client = client_factory.last
    session = connection.session

    client.drop(rc=7)
    client.drop(rc=7)

    assert connection.state is ConnectionState.RECONNECT_PENDING
    assert len(events) == 1
    assert events[0].session == session
    assert events[0].reason_code == 7
    assert connection.get_stats()['connection_losses'] == 1


def test_no_message_after_loss(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    connection.connect(params)
    client = client_factory.last

    client.drop()
    client.deliver("devices/s1/alarm", "late")

    assert received == []


def test_no_loss_event_after_disconnect(connection, client_factory, params):
    events = []
    connection.add_connection_lost_handler(events.append)
    connection.connect(params)
    client = client_factory.last

    connection.disconnect()
    client.drop(rc=0)

    assert events == []
    assert connection.state is ConnectionState.DISCONNECTED


def test_stale_session_callbacks_ignored(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    connection.connect(params)
    old_client = client_factory.last

    old_client.drop()
    connection.connect(params)
    new_client = client_factory.last

    old_client.deliver("devices/old/alarm", "stale")
    new_client.deliver("devices/new/alarm", "fresh")

    assert [m.topic for m in received] == ["devices/new/alarm"]
    assert new_client is not old_client
    assert connection.get_stats()['stale_callbacks'] >= 1


def test_failed_reconnect_keeps_reconnect_pending(connection, client_factory, params):
    connection.connect(params)
    client_factory.last.drop()

    client_factory.behaviour = {'connect_error': OSError("network is unreachable")}
    with pytest.raises(ConnectError):
        connection.connect(params)

    assert connection.state is ConnectionState.RECONNECT_PENDING


# ---------------------------------------------------------------------------
# Between CONNACK and connect() returning
#
# Holding the connection lock keeps connect() from resuming, so the
# callbacks below land deterministically inside that window.
# ---------------------------------------------------------------------------

def connect_in_background(connection, client_factory, params):
    client_factory.behaviour = {'connack': None}
    errors = []

    def attempt():
        try:
            connection.connect(params)
        except ConnectError as e:
            errors.append(e)

    worker = threading.Thread(target=attempt)
    worker.start()
    assert wait_for(lambda: client_factory.clients and client_factory.last.loop_started)
    return worker, errors


def test_loss_right_after_connack_fails_connect(connection, client_factory, params):
    events = []
    connection.add_connection_lost_handler(events.append)
    worker, errors = connect_in_background(connection, client_factory, params)
    client = client_factory.last

    with connection._lock:
        client.ack_connect(0)
        client.drop(rc=7)
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.NETWORK_UNREACHABLE
    assert errors[0].reason_code == 7
    assert not connection.is_connected()
    assert connection.state is ConnectionState.DISCONNECTED
    assert connection.get_stats()['connections'] == 0
    # reported once, through connect(), not as a second loss event
    assert events == []


def test_loss_right_after_connack_while_recovering(connection, client_factory, params):
    connection.connect(params)
    client_factory.last.drop()

    worker, errors = connect_in_background(connection, client_factory, params)
    client = client_factory.last
    with connection._lock:
        client.ack_connect(0)
        client.drop(rc=0)
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.NETWORK_UNREACHABLE
    assert connection.state is ConnectionState.RECONNECT_PENDING


def test_message_right_after_connack_is_delivered(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    worker, errors = connect_in_background(connection, client_factory, params)
    client = client_factory.last

    with connection._lock:
        client.ack_connect(0)
        client.deliver("devices/s1/alarm", "FIRE")
    worker.join(timeout=2.0)

    assert errors == []
    assert connection.is_connected()
    assert [m.topic for m in received] == ["devices/s1/alarm"]
    assert connection.get_stats()['stale_callbacks'] == 0


def test_message_after_refused_connack_is_dropped(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    worker, errors = connect_in_background(connection, client_factory, params)
    client = client_factory.last

    with connection._lock:
        client.ack_connect(5)
        client.deliver("devices/s1/alarm", "FIRE")
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.AUTH_FAILURE
    assert received == []


def test_disconnect_after_connack_cancels_connect(connection, client_factory, params):
    received = []
    connection.add_message_handler(received.append)
    worker, errors = connect_in_background(connection, client_factory, params)
    client = client_factory.last

    with connection._lock:
        client.ack_connect(0)
        connection.disconnect()
        client.deliver("devices/s1/alarm", "late")
    worker.join(timeout=2.0)

    assert errors[0].reason is ConnectFailure.CANCELLED
    assert connection.state is ConnectionState.DISCONNECTED
    assert received == []


# ---------------------------------------------------------------------------
# paho client construction
# ---------------------------------------------------------------------------

class RecordingPahoClient:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.credentials = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)


def test_paho_client_never_reconnects_on_its_own(monkeypatch, params):
    monkeypatch.setattr(mqtt, "Client", RecordingPahoClient)

    client = create_paho_client(params, session=3)

    assert client.kwargs['reconnect_on_failure'] is False
    assert client.kwargs['callback_api_version'] is mqtt.CallbackAPIVersion.VERSION2
    assert client.kwargs['userdata'] == 3
    assert client.kwargs['client_id'] == "fire-alarm-test"
    assert client.kwargs['clean_session'] is True
    assert client.credentials == ("operator", "s3cret")
    assert client.connect_timeout == CONNECT_TIMEOUT
