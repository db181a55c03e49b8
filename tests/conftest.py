import pytest

from app import create_app
from store import StoreUnavailable, TrackerStore


@pytest.fixture
def store(tmp_path):
    s = TrackerStore.from_url(f"sqlite:///{tmp_path / 'tracker.db'}")
    s.init_db()
    yield s
    s.engine.dispose()


@pytest.fixture
def user_id(store):
    return store.create_user("Test User", "test@example.com")


@pytest.fixture
def client(store, user_id):
    app = create_app(store=store, auth_provider=lambda: user_id)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def anon_client(store):
    app = create_app(store=store, auth_provider=lambda: None)
    app.config["TESTING"] = True
    return app.test_client()


class FailingStore:
    """Stands in for a database that cannot be reached."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise StoreUnavailable("connection refused")

        return fail


@pytest.fixture
def failing_client():
    app = create_app(store=FailingStore(), auth_provider=lambda: 1)
    app.config["TESTING"] = True
    return app.test_client()
