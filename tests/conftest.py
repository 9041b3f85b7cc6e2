import json
from datetime import timedelta
from unittest.mock import Mock

import pytest

from edulure_sync import create_app
from edulure_sync.config import TestingConfig
from edulure_sync.datetime_utils import utcnow
from edulure_sync.models import db


class FakeClock:
    """Injected clock that only moves when a test advances it."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def clock():
    # Ahead of wall time so rows stamped with real defaults are already due
    return FakeClock(utcnow().replace(microsecond=0) + timedelta(minutes=1))


@pytest.fixture
def make_response():
    """Factory for fake requests.Response objects."""

    def factory(status_code=200, json_body=None, text=None, headers=None):
        response = Mock()
        response.status_code = status_code
        response.ok = status_code < 400
        response.headers = headers or {}
        if text is None:
            text = json.dumps(json_body) if json_body is not None else ""
        response.text = text
        response.json.return_value = json_body if json_body is not None else {}
        return response

    return factory
