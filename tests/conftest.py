import os
import sys
from datetime import datetime, timedelta

import pytest

os.environ["FLASK_ENV"] = "testing"
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pricebook import create_app, db as _db
from pricebook.services.pricing import PricingService


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, 0))


@pytest.fixture(scope="function")
def app(clock):
    app = create_app()
    app.config["TESTING"] = True
    app.config["PRICING_CLOCK"] = clock
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope="function")
def client(app):
    return app.test_client()


@pytest.fixture(scope="function")
def db(app):
    return _db


@pytest.fixture
def service(app, clock):
    return PricingService.from_config(app.config, clock=clock)
