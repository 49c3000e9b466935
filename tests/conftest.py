"""
Shared pytest fixtures for the Civic Grievance Tracker test suite.

Provides an httpx AsyncClient bound to the in-process app, an in-memory
mongomock database standing in for MongoDB, and pre-authenticated users for
each role.
"""

import os
import sys
import uuid
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
import httpx
import mongomock

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

os.environ.setdefault("JWT_SECRET", "test-only-secret-that-is-long-enough-for-hs256")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from tracker import app, get_db, limiter, hash_password, create_access_token, build_location


@pytest.fixture
def db():
    """Fresh in-memory database wired into the app's get_db dependency."""
    database = mongomock.MongoClient(tz_aware=True)["civic_grievances_test"]
    app.dependency_overrides[get_db] = lambda: database
    yield database
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(db):
    """In-process httpx AsyncClient."""
    # Disable rate limiting during tests so auth calls aren't throttled
    limiter.enabled = False
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def make_user(db, name: str, email: str, role: str = "citizen",
              department=None, password: str = "secret123") -> dict:
    user = {
        "_id": str(uuid.uuid4()), "name": name, "email": email,
        "phone": None, "hashed_password": hash_password(password),
        "role": role, "department": department,
        "created_at": datetime.now(timezone.utc),
    }
    db.users.insert_one(user)
    return user


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def insert_complaint(db, citizen_id: str, **overrides) -> dict:
    """Insert a stored complaint directly, bypassing intake."""
    now = datetime.now(timezone.utc)
    doc = {
        "_id": str(uuid.uuid4()), "citizen_id": citizen_id,
        "title": "Seeded complaint", "description": "Seeded description",
        "category": "Roads", "severity": "LOW", "status": "PENDING",
        "department_assigned": "Roads", "sla_deadline": now + timedelta(hours=72),
        "resolved_at": None, "location": build_location(None),
        "evidence": [], "upvotes": [], "comments": [], "review": None,
        "created_at": now, "updated_at": now,
    }
    doc.update(overrides)
    db.complaints.insert_one(doc)
    return doc


@pytest.fixture
def citizen(db):
    return make_user(db, "Rahul Sharma", "rahul@example.com")


@pytest.fixture
def other_citizen(db):
    return make_user(db, "Priya Patel", "priya@example.com")


@pytest.fixture
def roads_official(db):
    return make_user(db, "Amit Singh", "amit.roads@gov.in", role="official", department="Roads")


@pytest.fixture
def water_official(db):
    return make_user(db, "Sneha Gupta", "sneha.water@gov.in", role="official", department="Water")


@pytest.fixture
def supervisor(db):
    return make_user(db, "Kavita Menon", "kavita@gov.in", role="official", department="All")


@pytest.fixture
def citizen_headers(citizen):
    return auth_headers(citizen)


@pytest.fixture
def other_citizen_headers(other_citizen):
    return auth_headers(other_citizen)


@pytest.fixture
def roads_headers(roads_official):
    return auth_headers(roads_official)


@pytest.fixture
def water_headers(water_official):
    return auth_headers(water_official)


@pytest.fixture
def supervisor_headers(supervisor):
    return auth_headers(supervisor)
