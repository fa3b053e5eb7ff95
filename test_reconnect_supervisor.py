"""
ReconnectSupervisor tests.

Most tests drive the supervisor against a scripted FakeConnection; the last
group wires it to a real BrokerConnection over FakeClientFactory.

Usage:
    pytest test_reconnect_supervisor.py
"""

import threading
import time

import pytest

from firealarm_mqtt import (
    BackoffPolicy,
    BrokerConnection,
    ConnectError,
    ConnectFailure,
    ConnectionLostEvent,
    ConnectionState,
    DEFAULT_PLAN,
    ReconnectSupervisor,
    SubscribeError,
)

FAST = BackoffPolicy(initial=0.01, maximum=0.05)


class FakeConnection:
    """
    Scripted stand-in for BrokerConnection.

    connect_results / subscribe_results: consumed per call; an exception
    instance is raised, anything else is success. on_connect runs inside
    connect(), on the calling thread.
    """

    def __init__(self, connected=False):
        self.connected = connected
        self.session = 1
        self.connect_calls = []
        self.subscribe_calls = []
        self.connect_results = []
        self.subscribe_results = []
        self.lost_handlers = []
        self.connect_gate = None
        self.on_connect = None

    def add_connection_lost_handler(self, handler):
        self.lost_handlers.append(handler)

    def is_connected(self):
        return self.connected

    def connect(self, params):
        self.connect_calls.append(params)
        if self.on_connect is not None:
            self.on_connect(params)
        if self.connect_gate is not None:
            self.connect_gate.wait(timeout=2.0)
        result = self.connect_results.pop(0) if self.connect_results else None
        if isinstance(result, Exception):
            raise result
        self.connected = True
        self.session += 1

    def subscribe(self, plan):
        self.subscribe_calls.append(plan)
        result = self.subscribe_results.pop(0) if self.subscribe_results else None
        if isinstance(result, Exception):
            raise result

    def lose(self):
        self.connected = False
        event = ConnectionLostEvent(cause="keepalive timeout", reason_code=7, session=self.session)
        for handler in list(self.lost_handlers):
            handler(event)


@pytest.fixture
def fake_connection():
    return FakeConnection(connected=True)


@pytest.fixture
def supervisor(fake_connection, params, logger):
    sup = ReconnectSupervisor(
        connection=fake_connection,
        params=params,
        plan=DEFAULT_PLAN,
        logger=logger,
        backoff=FAST,
    )
    sup.start()
    yield sup
    sup.stop()


# ---------------------------------------------------------------------------
# BackoffPolicy
# ---------------------------------------------------------------------------

def test_default_backoff_schedule():
    policy = BackoffPolicy()
    assert [policy.delay(n) for n in range(8)] == [0.0, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_validation():
    with pytest.raises(ValueError):
        BackoffPolicy(initial=-1)
    with pytest.raises(ValueError):
        BackoffPolicy(initial=10, maximum=5)
    with pytest.raises(ValueError):
        BackoffPolicy(multiplier=0.5)


# ---------------------------------------------------------------------------
# Reconnect behaviour
# ---------------------------------------------------------------------------

def test_single_loss_reconnects_once_with_original_params(supervisor, fake_connection, params):
    fake_connection.lose()

    assert supervisor.join(timeout=2.0)
    assert fake_connection.connect_calls == [params]
    assert fake_connection.subscribe_calls == [DEFAULT_PLAN]
    assert fake_connection.is_connected()
    assert not supervisor.is_reconnecting()

    stats = supervisor.get_stats()
    assert stats['loss_events'] == 1
    assert stats['reconnects'] == 1
    assert stats['failed_attempts'] == 0


def test_retries_until_connect_succeeds(supervisor, fake_connection):
    fake_connection.connect_results = [
        ConnectError(ConnectFailure.NETWORK_UNREACHABLE),
        ConnectError(ConnectFailure.TIMEOUT),
        None,
    ]

    fake_connection.lose()

    assert supervisor.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 3
    assert len(fake_connection.subscribe_calls) == 1
    assert supervisor.get_stats()['failed_attempts'] == 2


def test_auth_failure_keeps_retrying(supervisor, fake_connection):
    fake_connection.connect_results = [
        ConnectError(ConnectFailure.AUTH_FAILURE, reason_code=5),
        None,
    ]

    fake_connection.lose()

    assert supervisor.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 2
    assert fake_connection.is_connected()


def test_subscribe_failure_retries_subscribe_only(supervisor, fake_connection):
    fake_connection.subscribe_results = [SubscribeError(["devices/+/alarm"]), None]

    fake_connection.lose()

    assert supervisor.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 1
    assert len(fake_connection.subscribe_calls) == 2


def test_losses_during_attempt_are_coalesced(supervisor, fake_connection):
    gate = threading.Event()
    fake_connection.connect_gate = gate

    fake_connection.lose()
    fake_connection.lose()
    fake_connection.lose()
    gate.set()

    assert supervisor.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 1
    stats = supervisor.get_stats()
    assert stats['loss_events'] == 3
    assert stats['coalesced_events'] == 2


def test_new_loss_after_recovery_starts_new_worker(supervisor, fake_connection):
    fake_connection.lose()
    assert supervisor.join(timeout=2.0)

    fake_connection.lose()
    assert supervisor.join(timeout=2.0)

    assert len(fake_connection.connect_calls) == 2
    assert supervisor.get_stats()['reconnects'] == 2


def test_stop_interrupts_backoff(fake_connection, params, logger):
    sup = ReconnectSupervisor(
        connection=fake_connection,
        params=params,
        plan=DEFAULT_PLAN,
        logger=logger,
        backoff=BackoffPolicy(initial=10.0, maximum=10.0),
    )
    sup.start()
    fake_connection.connect_results = [ConnectError(ConnectFailure.NETWORK_UNREACHABLE)]

    fake_connection.lose()
    time.sleep(0.1)

    started = time.monotonic()
    sup.stop(timeout=2.0)

    assert time.monotonic() - started < 2.0
    assert sup.join(timeout=0.1)
    assert len(fake_connection.connect_calls) == 1
    assert not sup.is_reconnecting()


def test_cancelled_connect_ends_worker(supervisor, fake_connection):
    fake_connection.connect_results = [ConnectError(ConnectFailure.CANCELLED)]

    fake_connection.lose()

    assert supervisor.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 1
    assert not supervisor.is_reconnecting()
    assert supervisor.get_stats()['reconnects'] == 0


def test_request_after_stop_is_refused(supervisor, fake_connection):
    supervisor.stop()

    assert supervisor.request_reconnect("manual") is False
    fake_connection.lose()
    assert fake_connection.connect_calls == []


def test_request_reconnect_when_never_connected(fake_connection, params, logger):
    fake_connection.connected = False
    sup = ReconnectSupervisor(fake_connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()

    assert sup.request_reconnect("initial connect failed") is True
    assert sup.join(timeout=2.0)
    assert fake_connection.connect_calls == [params]
    sup.stop()


# ---------------------------------------------------------------------------
# With a real BrokerConnection
# ---------------------------------------------------------------------------

def test_broker_connection_recovers_after_drop(client_factory, params, logger):
    connection = BrokerConnection(
        logger=logger,
        client_factory=client_factory,
        connect_timeout=0.5,
        subscribe_timeout=0.5,
    )
    sup = ReconnectSupervisor(connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()

    connection.connect(params)
    connection.subscribe(DEFAULT_PLAN)
    first = client_factory.last

    first.drop(rc=7)

    assert sup.join(timeout=2.0)
    assert connection.state is ConnectionState.CONNECTED
    assert len(client_factory.clients) == 2
    second = client_factory.last
    assert second.params is params
    assert second.subscribe_calls == [[("devices/+/status", 1), ("devices/+/alarm", 1)]]

    sup.stop()
    connection.disconnect()


def test_broker_connection_retries_refused_reconnect(client_factory, params, logger):
    connection = BrokerConnection(
        logger=logger,
        client_factory=client_factory,
        connect_timeout=0.5,
        subscribe_timeout=0.5,
    )
    sup = ReconnectSupervisor(connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()
    connection.connect(params)

    client_factory.script = [{'connack': 5}, {'connect_error': OSError("unreachable")}, {}]
    client_factory.last.drop()

    assert sup.join(timeout=3.0)
    assert connection.is_connected()
    assert len(client_factory.clients) == 4
    assert sup.get_stats()['failed_attempts'] == 2

    sup.stop()
    connection.disconnect()


def test_disconnect_suppresses_reconnect(client_factory, params, logger):
    connection = BrokerConnection(logger=logger, client_factory=client_factory, connect_timeout=0.5)
    sup = ReconnectSupervisor(connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()
    connection.connect(params)
    client = client_factory.last

    sup.stop()
    connection.disconnect()
    client.drop(rc=0)

    assert len(client_factory.clients) == 1
    assert sup.get_stats()['loss_events'] == 0


def test_stop_without_wait_then_join(fake_connection, params, logger):
    sup = ReconnectSupervisor(fake_connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()
    gate = threading.Event()
    fake_connection.connect_gate = gate

    fake_connection.lose()
    assert sup.is_reconnecting()

    started = time.monotonic()
    sup.stop(wait=False)
    assert time.monotonic() - started < 0.5

    gate.set()
    assert sup.join(timeout=2.0)
    assert len(fake_connection.connect_calls) == 1


def test_join_from_worker_thread_returns(fake_connection, params, logger):
    sup = ReconnectSupervisor(fake_connection, params, DEFAULT_PLAN, logger, backoff=FAST)
    sup.start()
    results = []

    def join_inside_connect(_params):
        results.append(sup.join(timeout=0.1))

    fake_connection.on_connect = join_inside_connect
    fake_connection.lose()

    assert sup.join(timeout=2.0)
    assert results == [True]
    sup.stop()
