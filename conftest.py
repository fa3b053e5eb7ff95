"""
Shared pytest fixtures: an in-memory stand-in for the paho client.

BrokerConnection takes a client factory; tests inject FakeClientFactory and
drive the paho callbacks by hand, the same way the broker would.
"""

import threading
from types import SimpleNamespace

import pytest

from firealarm_mqtt import ConnectionParameters, create_logger


class FakeMQTTClient:
    """
    Records calls and fires callbacks like a paho client would.

    Behaviour keys:
        connect_error: exception raised from connect()
        connack: CONNACK reason code fired from connect() (None: never)
        suback: SUBACK codes ('never': no SUBACK, None: grant requested QoS)
    """

    def __init__(self, params, session, behaviour):
        self.params = params
        self.userdata = session
        self.behaviour = behaviour

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_subscribe = None

        self.connect_calls = []
        self.subscribe_calls = []
        self.loop_started = False
        self.loop_stop_calls = 0
        self.disconnect_calls = 0
        self._mid = 0

    def connect(self, host, port, keepalive=60):
        self.connect_calls.append((host, port, keepalive))
        error = self.behaviour.get('connect_error')
        if error is not None:
            raise error
        rc = self.behaviour.get('connack', 0)
        if rc is not None:
            self.on_connect(self, self.userdata, {}, rc, None)

    def loop_start(self):
        self.loop_started = True

    def loop_stop(self):
        self.loop_stop_calls += 1

    def disconnect(self):
        self.disconnect_calls += 1

    def subscribe(self, topics):
        self._mid += 1
        mid = self._mid
        self.subscribe_calls.append(list(topics))

        codes = self.behaviour.get('suback')
        if codes == 'never':
            return (0, mid)
        if codes is None:
            codes = [qos for _, qos in topics]

        # SUBACK arrives on the network thread, after subscribe() returns
        threading.Thread(
            target=self.on_subscribe,
            args=(self, self.userdata, mid, list(codes), None),
            daemon=True
        ).start()
        return (0, mid)

    # ---- broker-side helpers ----

    def ack_connect(self, rc=0):
        self.on_connect(self, self.userdata, {}, rc, None)

    def deliver(self, topic, payload, qos=1, retain=False):
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        message = SimpleNamespace(topic=topic, payload=payload, qos=qos, retain=retain)
        self.on_message(self, self.userdata, message)

    def drop(self, rc=7):
        self.on_disconnect(self, self.userdata, None, rc, None)


class FakeClientFactory:
    """
    Client factory recording every client it builds.

    script: behaviours consumed one per client; afterwards `behaviour`.
    """

    def __init__(self):
        self.clients = []
        self.behaviour = {}
        self.script = []

    def __call__(self, params, session):
        behaviour = self.script.pop(0) if self.script else dict(self.behaviour)
        client = FakeMQTTClient(params, session, behaviour)
        self.clients.append(client)
        return client

    @property
    def last(self):
        return self.clients[-1]


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def params():
    return ConnectionParameters(
        host="broker.test",
        port=1883,
        client_id="fire-alarm-test",
        username="operator",
        password="s3cret",
    )


@pytest.fixture
def logger():
    return create_logger("test")
