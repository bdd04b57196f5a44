import os
import sys
import pytest

# Ensure the project root (containing the `quizroom` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from quizroom import create_app, socketio
from quizroom.engine import QuizEngine, get_engine


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    CORS_ORIGINS = ['http://localhost:5173']
    ROOM_CODE_LENGTH = 6
    ROOM_CODE_MAX_ATTEMPTS = 20
    HEARTBEAT_TIMEOUT_SEC = 30
    RECONNECT_GRACE_SEC = 60
    ROOM_IDLE_TIMEOUT_SEC = 3600
    DELIVERY_ATTEMPTS = 3
    LEADERBOARD_SIZE = 5
    CHECK_INVARIANTS = True


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSink:
    """Collects everything pushed to one session."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail
        self.calls = 0

    def __call__(self, message, payload):
        self.calls += 1
        if self.fail:
            raise ConnectionError('transport closed')
        self.messages.append((message, payload))

    def events(self):
        return [payload for message, payload in self.messages if message == 'event']

    def kinds(self):
        return [e['kind'] for e in self.events()]

    def snapshots(self):
        return [payload for message, payload in self.messages if message == 'snapshot']


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def engine(clock):
    config = {key: getattr(TestConfig, key) for key in dir(TestConfig) if key.isupper()}
    return QuizEngine(config, clock=clock)


@pytest.fixture()
def processor(engine):
    return engine.processor


@pytest.fixture()
def gateway(engine):
    return engine.gateway


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        yield application


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def app_engine(flask_app):
    return get_engine(flask_app)


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def make_sink():
    return RecordingSink


@pytest.fixture()
def room(processor):
    """A fresh room: (Room, host_token)."""
    return processor.create_room('Friday quiz')
