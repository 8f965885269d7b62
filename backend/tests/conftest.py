"""
Sales CRM - Test fixtures
In-memory MongoDB (mongomock-motor) is installed as config.db before any
route module is imported, so `from config import db` resolves to it.
Run: cd backend && pytest tests -v
"""

import os
import uuid
import asyncio
from datetime import datetime, timezone, timedelta

os.environ.setdefault("DB_NAME", "sales_crm_test")
os.environ["TIMELINE_URL_CHECK"] = "false"

import pytest
from mongomock_motor import AsyncMongoMockClient

import config

config.client = AsyncMongoMockClient()
config.db = config.client[config.DB_NAME]

from fastapi.testclient import TestClient  # noqa: E402
from server import app  # noqa: E402
from services.permissions import get_preset_permissions  # noqa: E402

PASSWORD = "SalesTest2026!"

COLLECTIONS = [
    "users", "sessions", "companies", "contacts", "leads", "opportunities",
    "pipelines", "daily_follow_ups", "activities", "attendance",
    "attendance_reports", "notifications", "event_log",
]


def _db_op(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _clear():
    for name in COLLECTIONS:
        await config.db[name].delete_many({})


@pytest.fixture(autouse=True)
def clean_db():
    _db_op(_clear())
    yield


@pytest.fixture
def client():
    return TestClient(app)


def create_user(role: str = "sales", name: str = None, email: str = None) -> dict:
    """Insert an active user with its role preset and an open session."""
    user_id = str(uuid.uuid4())
    user = {
        "id": user_id,
        "email": email or f"{role}_{user_id[:8]}@example.com",
        "password": config.hash_password(PASSWORD),
        "name": name or f"{role.title()} User",
        "role": role,
        "permissions": get_preset_permissions(role),
        "is_active": True,
        "created_at": config.now_iso(),
    }
    token = config.generate_token()
    session = {
        "token": token,
        "user_id": user_id,
        "created_at": config.now_iso(),
        "expires_at": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
    }

    async def _insert():
        await config.db.users.insert_one(dict(user))
        await config.db.sessions.insert_one(session)

    _db_op(_insert())
    user.pop("password")
    user["token"] = token
    return user


def auth_h(user_or_token) -> dict:
    token = user_or_token["token"] if isinstance(user_or_token, dict) else user_or_token
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def sales_user():
    return create_user("sales", name="Asha Sales")


@pytest.fixture
def other_sales_user():
    return create_user("sales", name="Ravi Sales")


@pytest.fixture
def admin_user():
    return create_user("admin", name="Admin User")


@pytest.fixture
def make_user():
    return create_user
