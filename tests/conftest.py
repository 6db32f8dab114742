import httpx
import pytest

from adlex_app.llm.config import LLMConfig
from adlex_app.llm.gateway import Gateway
from adlex_app.storage.db import get_engine, init_db, make_session_factory
from adlex_app.storage.models import Dictionary, Organization, User

_ALLOWED_PREFIXES = (
    "http://testserver",
    "https://testserver",
    "http://localhost",
    "https://localhost",
    "http://127.0.0.1",
)


def _allowed(url) -> bool:
    u = str(url)
    if u.startswith(_ALLOWED_PREFIXES):
        return True
    host = httpx.URL(u).host if "://" in u else ""
    return host.endswith(".test")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    monkeypatch.setenv("AI_PROVIDER", "mock")
    monkeypatch.setenv("ADLEX_ENV", "test")
    monkeypatch.delenv("ADLEX_USE_MOCK", raising=False)
    monkeypatch.setenv("PYTHONHASHSEED", "0")
    yield


@pytest.fixture(autouse=True)
def _no_network(monkeypatch):
    orig_sync = httpx.Client.request
    orig_async = httpx.AsyncClient.request

    def block_sync(self, method, url, *args, **kwargs):
        if _allowed(url) or not str(url).startswith("http"):
            return orig_sync(self, method, url, *args, **kwargs)
        raise RuntimeError("External HTTP blocked")

    async def block_async(self, method, url, *args, **kwargs):
        if _allowed(url) or not str(url).startswith("http"):
            return await orig_async(self, method, url, *args, **kwargs)
        raise RuntimeError("External HTTP blocked")

    monkeypatch.setattr(httpx.Client, "request", block_sync)
    monkeypatch.setattr(httpx.AsyncClient, "request", block_async)
    yield


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(f"sqlite:///{tmp_path / 'adlex.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def Session(engine):
    return make_session_factory(engine)


@pytest.fixture
def seeded(Session):
    with Session() as session:
        with session.begin():
            session.add_all([Organization(id=1, name="Acme Health"), Organization(id=2, name="Other")])
            session.flush()
            session.add_all(
                [
                    User(id="user-1", organization_id=1, role="user"),
                    User(id="user-3", organization_id=1, role="user"),
                    User(id="admin-1", organization_id=1, role="admin"),
                    User(id="user-2", organization_id=2, role="user"),
                ]
            )
            session.add_all(
                [
                    Dictionary(organization_id=1, phrase="驚異的な効果", category="NG"),
                    Dictionary(organization_id=1, phrase="健康維持", category="ALLOW"),
                    Dictionary(organization_id=2, phrase="がんが治る", category="NG"),
                ]
            )
    return Session


@pytest.fixture
def mock_gateway():
    return Gateway(LLMConfig())
