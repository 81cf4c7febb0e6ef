import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from webshop_backend.auth_utils import create_access_token
from webshop_backend.cart import CartService
from webshop_backend.db.database import build_engine, build_session_factory
from webshop_backend.db.init_db import init_db, seed_products
from webshop_backend.inventory import InventoryService
from webshop_backend.main import create_app
from webshop_backend.owners import CartOwner
from webshop_backend.realtime import Broadcaster


class FakeWebSocket:
    """Stands in for a Starlette WebSocket: records what it is sent."""

    def __init__(self, fail=False):
        self.accepted = False
        self.fail = fail
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    def kinds(self):
        return [message["kind"] for message in self.sent]


def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'webshop.db'}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(database_url(tmp_path))
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = build_session_factory(engine)
    async with factory() as db:
        await seed_products(db)
    return factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def broadcaster():
    broadcaster = Broadcaster()
    await broadcaster.start()
    yield broadcaster
    await broadcaster.stop()


@pytest.fixture
def carts(broadcaster):
    return CartService(broadcaster)


@pytest.fixture
def inventory(broadcaster):
    return InventoryService(broadcaster)


@pytest.fixture
def alice():
    return CartOwner.for_user(1)


@pytest.fixture
def bob():
    return CartOwner.for_user(2)


@pytest.fixture
def app(tmp_path):
    return create_app(database_url=database_url(tmp_path), seed_catalog=True)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    def headers(user_id):
        token = create_access_token({"sub": f"user{user_id}@example.com", "id": user_id})
        return {"Authorization": f"Bearer {token}"}
    return headers
