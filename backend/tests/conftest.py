import os
import warnings
from decimal import Decimal

import pytest

# Set environment variables BEFORE importing registry modules
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["LOG_LEVEL"] = "WARNING"

warnings.filterwarnings("ignore", category=DeprecationWarning)

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from registry.core.security import create_access_token
from registry.db.session import Database
from registry.main import create_app
from registry.models.models import Gift, RoleEnum, User
from registry.services.accounting import ContributionService


ADMIN_PASSWORD = "AdminPass123!"
GUEST_PASSWORD = "GuestPass123!"


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'registry.db'}")
    await db.ensure_schema_ready()
    yield db
    await db.dispose()


@pytest.fixture
def accounting(database):
    return ContributionService(database)


async def make_user(database: Database, username: str, role: str = RoleEnum.GUEST.value) -> User:
    async with database.session() as session:
        user = User(username=username, hashed_password="not-a-real-hash", role=role)
        session.add(user)
        await session.commit()
        return user


async def make_gift(database: Database, price: str = "100.00", **kwargs) -> Gift:
    async with database.session() as session:
        gift = Gift(name=kwargs.pop("name", "Juego de copas"), price=Decimal(price), **kwargs)
        session.add(gift)
        await session.commit()
        return gift


@pytest.fixture
async def guest(database):
    return await make_user(database, "maria")


@pytest.fixture
async def gift(database):
    return await make_gift(database, "100.00")


@pytest.fixture
def client(tmp_path):
    """Synchronous client on a fresh database; lifespan runs on enter/exit."""
    app = create_app(Database(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
async def async_app(tmp_path):
    app = create_app(Database(f"sqlite+aiosqlite:///{tmp_path / 'async-api.db'}"))
    yield app
    await app.state.database.dispose()


@pytest.fixture
async def async_client(async_app):
    transport = ASGITransport(app=async_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def login(client, username: str, password: str) -> dict[str, str]:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture
def admin_headers(client) -> dict[str, str]:
    res = client.post("/auth/setup", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert res.status_code == 201, res.text
    return login(client, "admin", ADMIN_PASSWORD)


@pytest.fixture
def guest_headers(client, admin_headers) -> dict[str, str]:
    res = client.post(
        "/auth/users",
        json={"username": "lucia", "password": GUEST_PASSWORD},
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    return login(client, "lucia", GUEST_PASSWORD)


def create_gift(client, admin_headers, **kwargs) -> dict:
    payload = {"name": "Cafetera", "price": 100.0, **kwargs}
    res = client.post("/gifts", json=payload, headers=admin_headers)
    assert res.status_code == 201, res.text
    return res.json()


async def seed_user_headers(app, username: str, role: str = RoleEnum.GUEST.value) -> dict[str, str]:
    """Insert a user straight into the app's database and return auth headers."""
    database: Database = app.state.database
    await database.ensure_schema_ready()
    user = await make_user(database, username, role)
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}
