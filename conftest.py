import os
import random
import tempfile

# Keep test logs out of the working tree; must happen before monitoring is imported
os.environ.setdefault('CAPTCHA_LOG_DIR', tempfile.mkdtemp(prefix='text_captcha_logs_'))

import pytest

from widget_clock import ManualClock


class RecordingEventLogger:
    def __init__(self):
        self.events = []

    def log_captcha_event(self, event_type, data, ip=None):
        self.events.append((event_type, data))

    def types(self):
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def clock():
    return ManualClock(start_ms=1_000_000)


@pytest.fixture
def event_logger():
    return RecordingEventLogger()


@pytest.fixture
def registry(clock, event_logger):
    from widget_registry import WidgetRegistry

    registry = WidgetRegistry(clock=clock, event_logger=event_logger,
                              rng_factory=lambda: random.Random(7))
    yield registry
    registry.unmount_all()


@pytest.fixture
def app(registry):
    from text_captcha_server import create_app

    app = create_app({'TESTING': True, 'CAPTCHA': {}}, registry=registry)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
