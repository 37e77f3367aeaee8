"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from myflow.chat.gateway import reset_gateway
from myflow.chat.lifecycle import MessageLifecycle
from myflow.chat.membership import MembershipManager
from myflow.chat.store import ChatStore
from myflow.config import AppConfig, reset_config, set_config
from myflow.files.service import FileStorageService
from myflow.main import app
from myflow.preview.service import LinkPreviewService

DAY = 24 * 60 * 60


class FakeClock:
    """Manually advanced clock for deterministic timestamps."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _reset_singletons() -> None:
    reset_gateway()
    ChatStore.reset_instance()
    FileStorageService.reset_instance()
    LinkPreviewService.reset_instance()
    reset_config()


@pytest.fixture
def test_config(tmp_path):
    """Defaults, with an in-memory database, a temp upload dir and no network."""
    config = AppConfig()
    config.storage.db_path = ":memory:"
    config.storage.upload_dir = str(tmp_path / "uploads")
    config.link_preview.enabled = False
    return config


@pytest.fixture(autouse=True)
def isolated_services(test_config):
    """Fresh singletons and configuration for every test."""
    _reset_singletons()
    set_config(test_config)
    yield
    _reset_singletons()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    store = ChatStore(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def files(tmp_path):
    return FileStorageService(str(tmp_path / "uploads"), blocked_extensions=[".exe", ".sh"])


@pytest.fixture
def membership(store, files):
    return MembershipManager(store, files, resync_page_size=20)


@pytest.fixture
def lifecycle(store, files):
    return MessageLifecycle(store, files, default_page_size=20, max_page_size=100)


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app.

    Used as a context manager so the lifespan runs and every request and
    WebSocket shares one event loop (and one DuckDB connection).
    """
    with TestClient(app) as client:
        yield client
