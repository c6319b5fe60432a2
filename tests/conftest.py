"""
Pytest fixtures for the Pokify import service.

Provides an in-memory database for unit tests, a TestClient (over a
per-test SQLite file) wired to fake external services, and fakes for
the Anthropic client and the Playwright browser.
"""
import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from pokify.adapters.llm_client import ClaudeClient
from pokify.adapters.screenshot import BrowserPool
from pokify.config import Config
from pokify.database import Database
from pokify.layers import storage
from pokify.main import app, build_services


Reply = Union[str, Dict[str, Any], List[Any], Exception]


class FakeMessages:
    """Stands in for ``AsyncAnthropic().messages``."""

    def __init__(self, replies: Union[Reply, List[Reply], Callable[[Dict[str, Any]], Reply]]):
        self.replies = replies
        self.calls: List[Dict[str, Any]] = []

    def _next_reply(self, kwargs: Dict[str, Any]) -> Reply:
        if callable(self.replies):
            return self.replies(kwargs)
        if isinstance(self.replies, list) and self.replies and isinstance(self.replies[0], (str, Exception)):
            return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return self.replies

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self._next_reply(kwargs)
        if isinstance(reply, Exception):
            raise reply
        text = reply if isinstance(reply, str) else json.dumps(reply)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=10, output_tokens=20),
        )


class FakeAnthropic:
    def __init__(self, replies: Any = "{}"):
        self.messages = FakeMessages(replies)


def fake_claude(replies: Any = "{}") -> ClaudeClient:
    return ClaudeClient(client=FakeAnthropic(replies))


class FakeRoute:
    def __init__(self, resource_type: str):
        self.request = SimpleNamespace(resource_type=resource_type)
        self.aborted = False
        self.continued = False

    async def abort(self):
        self.aborted = True

    async def continue_(self):
        self.continued = True


class FakePage:
    def __init__(
        self,
        goto_error: Optional[Exception] = None,
        screenshot_error: Optional[Exception] = None,
    ):
        self.goto_error = goto_error
        self.screenshot_error = screenshot_error
        self.route_handler = None
        self.visited: List[str] = []

    async def route(self, pattern, handler):
        self.route_handler = handler

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        if self.goto_error:
            raise self.goto_error

    async def evaluate(self, script):
        if "devicePixelRatio" in script:
            return {"width": 1366, "height": 4000, "devicePixelRatio": 1}
        return None

    async def screenshot(self, **kwargs):
        if self.screenshot_error:
            raise self.screenshot_error
        return b"\xff\xd8fake-jpeg"


class FakeContext:
    def __init__(self, page: FakePage):
        self.page = page
        self.closed = False

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self, page_factory: Callable[[], FakePage] = FakePage):
        self.page_factory = page_factory
        self.contexts: List[FakeContext] = []
        self.closed = False

    async def new_context(self, **kwargs):
        context = FakeContext(self.page_factory())
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


def fake_pool(browser: FakeBrowser) -> BrowserPool:
    async def launcher():
        return browser

    return BrowserPool(max_contexts=2, launcher=launcher)


def not_found_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(404, text="not found"))


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def session(database):
    with database.session() as s:
        yield s


@pytest.fixture
def store(session):
    """A user with one Shopify store."""
    user = storage.create_user(session, "lojista@example.com", name="Lojista")
    return storage.create_store(
        session,
        user.id,
        name="Loja Teste",
        url="https://loja-teste.myshopify.com",
        api_key="shpat_test",
    )


@pytest.fixture
def product(session, store):
    return storage.create_product(
        session,
        store.id,
        title="Body Modelador",
        description="<p>Body canelado</p>",
        price="129.90",
        compare_at_price="199.90",
        images=["https://cdn.example.com/body-1.jpg", "https://cdn.example.com/body-2.jpg"],
        variants=["P", "M", "G"],
    )


@pytest.fixture
def test_config(tmp_path):
    cfg = Config()
    # File database: job workers and threadpool routes use it concurrently
    cfg.DATABASE_URL = f"sqlite:///{tmp_path / 'pokify.db'}"
    cfg.JOB_WORKERS = 1
    cfg.USE_NEW_EXTRACTOR = True
    cfg.LINKFY_API_URL = "https://linkfy.test/api/extract"
    cfg.LINKFY_API_TOKEN = None
    cfg.LINKFY_LEGACY_API_TOKEN = None
    cfg.PUBLIC_BASE_URL = "https://pokify.test"
    cfg.EXTRACTION_BUDGET_SECONDS = 10
    return cfg


@pytest.fixture
def make_client(test_config):
    """
    Factory for a TestClient over fake services.

    Usage: ``client, services = make_client(claude=..., transport=...)``
    """
    clients = []

    def factory(
        claude: Optional[ClaudeClient] = None,
        transport: Optional[httpx.MockTransport] = None,
        browser: Optional[FakeBrowser] = None,
        raise_server_exceptions: bool = True,
        **overrides,
    ):
        for key, value in overrides.items():
            setattr(test_config, key, value)
        services = build_services(
            test_config,
            claude=claude or ClaudeClient(api_key=None),
            browser_pool=fake_pool(browser or FakeBrowser()),
            transport=transport or not_found_transport(),
        )
        app.state.services = services
        client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
        client.__enter__()
        clients.append((client, services))
        return client, services

    yield factory

    for client, services in clients:
        client.__exit__(None, None, None)
        services.database.dispose()
    app.state.services = None
