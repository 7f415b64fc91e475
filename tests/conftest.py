"""
Street Patrol Log - Test Infrastructure (conftest.py)
=====================================================
Provides:
  - Test database (patrol_test.db) selected before the app is imported
  - Deterministic seed data: two accounts, a handful of patrols
  - FastAPI TestClient with cookie sessions
  - Login helpers
  - DB assertion helpers
  - Artifact collection
"""

import os
import sys
import datetime
import json
import sqlite3
import pytest

# Ensure project root is on path
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT_DIR)

# ============================================================================
# TEST MODE: Use separate test database
# ============================================================================
TEST_DB_PATH = os.path.join(ROOT_DIR, "patrol_test.db")
ARTIFACTS_DIR = os.path.join(ROOT_DIR, "test_artifacts",
                             datetime.datetime.now().strftime("%Y%m%d_%H%M%S"))

os.environ["PATROL_DB_PATH"] = TEST_DB_PATH
os.environ["PATROL_EXPORT_DIR"] = os.path.join(ARTIFACTS_DIR, "exported_reports")
os.environ["PATROL_BCRYPT_ROUNDS"] = "4"

ALICE = ("alice@patrol.test", "alice-pass")
BOB = ("bob@patrol.test", "bob-pass")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Session-wide test environment setup."""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    for subdir in ["exported_reports", "json_snapshots"]:
        os.makedirs(os.path.join(ARTIFACTS_DIR, subdir), exist_ok=True)

    from app.config import set_config
    set_config("db_path", TEST_DB_PATH)

    yield

    try:
        if os.path.exists(TEST_DB_PATH):
            os.remove(TEST_DB_PATH)
    except (PermissionError, OSError):
        pass


@pytest.fixture(scope="session")
def app(setup_test_env):
    """The FastAPI app instance, bound to the test DB."""
    import main
    return main.app


@pytest.fixture(scope="session")
def client(app):
    """FastAPI TestClient (session-scoped for speed)."""
    from starlette.testclient import TestClient
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture(scope="session")
def seeded_db(app, client):
    """Seed the test database with deterministic data.

    Alice owns three patrols: January 2024 (completed), February 2024
    (completed) and one still active. Bob owns one completed patrol.
    """
    from app.auth.models import UserRepository
    from app.patrols.models import Patrol, PatrolRepository, PatrolStatus, empty_statistics

    users = UserRepository(TEST_DB_PATH)
    users.init_schema()
    alice = users.create(*ALICE)
    bob = users.create(*BOB)

    patrols = PatrolRepository(TEST_DB_PATH)
    patrols.init_schema()

    jan_stats = empty_statistics()
    jan_stats.update(conversations=3, water_bottles=2)
    feb_stats = empty_statistics()
    feb_stats.update(conversations=5)

    seed = [
        Patrol(
            id="seed-jan", owner=alice.user_id,
            location="Market Square", team_leader="Sam", team_members="Jo, Lee",
            start_time=datetime.datetime(2024, 1, 15, 22, 0),
            end_time=datetime.datetime(2024, 1, 16, 2, 30),
            status=PatrolStatus.COMPLETED, statistics=jan_stats,
            notes='Quiet night, "busy" around midnight',
        ),
        Patrol(
            id="seed-feb", owner=alice.user_id,
            location="Station Road", team_leader="Sam",
            start_time=datetime.datetime(2024, 2, 20, 21, 0),
            end_time=datetime.datetime(2024, 2, 21, 1, 0),
            police_notified=True, police_cad_number="CAD-2291",
            status=PatrolStatus.COMPLETED, statistics=feb_stats,
        ),
        Patrol(
            id="seed-active", owner=alice.user_id,
            location="High Street", team_leader="Kim",
            start_time=datetime.datetime(2024, 3, 2, 20, 0),
        ),
        Patrol(
            id="seed-bob", owner=bob.user_id,
            location="Riverside", team_leader="Bob",
            start_time=datetime.datetime(2024, 1, 20, 21, 0),
            end_time=datetime.datetime(2024, 1, 20, 23, 0),
            status=PatrolStatus.COMPLETED,
        ),
    ]
    for patrol in seed:
        patrols.insert(patrol)

    return {"alice": alice, "bob": bob}


# ============================================================================
# Session helpers
# ============================================================================

def login(client, email, password):
    """Login via the session endpoint; cookies are kept on the client."""
    return client.post("/api/session/login", json={"email": email, "password": password})


@pytest.fixture
def alice_session(client, seeded_db):
    """Client authenticated as alice."""
    login(client, *ALICE)
    return client


@pytest.fixture
def bob_session(client, seeded_db):
    """Client authenticated as bob."""
    login(client, *BOB)
    return client


@pytest.fixture
def anon_client(client, seeded_db):
    """Client with no session."""
    client.post("/api/session/logout")
    return client


# ============================================================================
# DB helpers
# ============================================================================

def get_test_db():
    """Direct connection to test database for assertions."""
    conn = sqlite3.connect(TEST_DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def db_query(sql, params=()):
    """Run a query against the test DB and return list of dicts."""
    conn = get_test_db()
    rows = conn.execute(sql, params).fetchall()
    result = [dict(r) for r in rows]
    conn.close()
    return result


def db_count(table, where="1=1", params=()):
    """Count rows in a table."""
    conn = get_test_db()
    row = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params).fetchone()
    conn.close()
    return row["cnt"]


# ============================================================================
# Artifact helpers
# ============================================================================

def save_artifact(name, content, subdir="json_snapshots"):
    """Save test artifact to the artifacts directory."""
    path = os.path.join(ARTIFACTS_DIR, subdir, name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if isinstance(content, (dict, list)):
        with open(path, "w") as f:
            json.dump(content, f, indent=2, default=str)
    elif isinstance(content, bytes):
        with open(path, "wb") as f:
            f.write(content)
    else:
        with open(path, "w") as f:
            f.write(str(content))
    return path
