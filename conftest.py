import os

# Must be set before the app (and its cached settings) are imported
os.environ.setdefault("AWS_EMF_ENVIRONMENT", "Local")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("UPWORK_CLIENT_ID", "test-client-id")
os.environ.setdefault("UPWORK_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("LOG_FORMAT", "console")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

# --- Alembic Imports ---
from alembic.config import Config
from alembic import command
# --- End Alembic Imports ---

# Import app and dependency providers first
from main import (
    app,
    get_db,
    get_job_cache,
    get_refresh_coordinator,
    get_upwork_client,
    get_upwork_oauth,
)

import auth
import models
from database import Base, enable_sqlite_pragmas
from job_cache import JobCache
from settings import get_settings
from upwork_client import UpworkClient
from upwork_oauth import RefreshCoordinator, UpworkOAuth

TEST_DATABASE_URL = "sqlite:///./upwork-assistant-test.db"

connect_args = (
    {"check_same_thread": False} if TEST_DATABASE_URL.startswith("sqlite") else {}
)
test_engine = create_engine(TEST_DATABASE_URL, connect_args=connect_args)
enable_sqlite_pragmas(test_engine)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models and stamp with Alembic head."""
    db_path = TEST_DATABASE_URL.split("///")[-1]
    if os.path.exists(db_path):
        os.unlink(db_path)

    Base.metadata.create_all(bind=test_engine)

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.stamp(alembic_cfg, "head")

    yield  # Tests run here

    test_engine.dispose()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture(autouse=True)
def clean_tables(setup_test_database):
    """Empty every table after each test; signup only works on an empty users table."""
    yield
    with test_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session directly from the test factory."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


# --- Fake upstream --- #
class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpwork:
    """Stands in for the Upwork token, GraphQL and proposal endpoints."""

    def __init__(self):
        settings = get_settings()
        self.token_url = settings.upwork_token_url
        self.graphql_url = settings.upwork_graphql_url
        self.token_status = 200
        self.token_body = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "token_type": "bearer",
            "expires_in": 86400,
        }
        self.graphql_status = 200
        # Access tokens the GraphQL endpoint answers with 401
        self.rejected_tokens = set()
        self.graphql_body = None
        self.nodes = []
        self.proposal_status = 200
        self.proposal_body = {"proposal_id": "upwork-proposal-1", "status": "submitted"}
        self.calls = {"token": 0, "graphql": 0, "proposal": 0}
        self.requests = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(self.token_url):
            self.calls["token"] += 1
            return httpx.Response(self.token_status, json=self.token_body)
        if url.startswith(self.graphql_url):
            self.calls["graphql"] += 1
            bearer = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if bearer in self.rejected_tokens:
                return httpx.Response(401, json={"message": "Unauthorized"})
            body = self.graphql_body
            if body is None:
                body = {
                    "data": {
                        "marketplaceJobPostingsSearch": {
                            "totalCount": len(self.nodes),
                            "edges": [{"node": node} for node in self.nodes],
                        }
                    }
                }
            return httpx.Response(self.graphql_status, json=body)
        if "/proposals/jobs/" in url:
            self.calls["proposal"] += 1
            return httpx.Response(self.proposal_status, json=self.proposal_body)
        return httpx.Response(404, json={"error": "unexpected url"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def fake_upwork():
    return FakeUpwork()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def job_cache(clock):
    return JobCache(ttl_seconds=300, clock=clock)


# Override the get_db dependency for tests
@pytest.fixture(scope="function")
def override_get_db():
    """Override the get_db dependency to use our test database.

    This creates a new session for each API call, allowing proper
    transaction handling within FastAPI endpoints.
    """

    def _override_get_db():
        db = TestSessionLocal()
        try:
            yield db
        finally:
            db.close()

    original = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = _override_get_db

    yield

    if original:
        app.dependency_overrides[get_db] = original
    else:
        del app.dependency_overrides[get_db]


@pytest.fixture(scope="function")
def override_upstream(fake_upwork, job_cache):
    settings = get_settings()
    coordinator = RefreshCoordinator()
    overrides = {
        get_upwork_client: lambda: UpworkClient(settings, transport=fake_upwork.transport()),
        get_upwork_oauth: lambda: UpworkOAuth(settings, transport=fake_upwork.transport()),
        get_job_cache: lambda: job_cache,
        get_refresh_coordinator: lambda: coordinator,
    }
    app.dependency_overrides.update(overrides)
    yield
    for dependency in overrides:
        app.dependency_overrides.pop(dependency, None)


@pytest.fixture(scope="function")
def test_client(override_get_db, override_upstream):
    """Provides a test client configured with our test database and fake upstream."""
    return TestClient(app)


@pytest.fixture
def make_user(db_session):
    def _make_user(email: str = "owner@example.com", password: str = "s3cret-pass", name: str = "Sam Carter"):
        user = models.User(
            email=email,
            password_hash=auth.hash_password(password),
            name=name,
            company_name="Carter Labs",
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_client(test_client):
    """A test client with a signed-up, logged-in user (cookie set)."""
    response = test_client.post(
        "/api/auth/signup",
        json={"email": "owner@example.com", "password": "s3cret-pass", "name": "Sam Carter"},
    )
    assert response.status_code == 200, response.text
    test_client.user_id = response.json()["user"]["id"]
    return test_client
