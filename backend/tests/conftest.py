"""
Test configuration and fixtures for TaskFlow tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, teams, milestones and tasks
"""

import os
import sys
import logging
import tempfile
from datetime import timedelta
from typing import Generator, Dict

# Configure the app before any backend module reads the environment
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="taskflow-uploads-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.identity import Principal, principal_claims
from auth.security import hash_password, create_access_token
from rate_limit import auth_limiter

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    auth_limiter.reset()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(db: Session, username: str, password: str = "secret123") -> models.User:
    user = models.User(
        username=username,
        email=f"{username}@example.com",
        password_hash=hash_password(password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def alice(test_db: Session) -> models.User:
    """Team creator in most scenarios."""
    return make_user(test_db, "alice")


@pytest.fixture(scope="function")
def bob(test_db: Session) -> models.User:
    """Ordinary team member."""
    return make_user(test_db, "bob")


@pytest.fixture(scope="function")
def carol(test_db: Session) -> models.User:
    """Outsider with no standing in the test team."""
    return make_user(test_db, "carol")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    return create_access_token(principal_claims(user), expires_delta)


def auth_headers(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


def principal_for(user: models.User) -> Principal:
    return Principal(id=user.id, email=user.email)


def add_membership(db: Session, team: models.Team, user: models.User) -> models.Membership:
    membership = models.Membership(team_id=team.id, user_id=user.id)
    db.add(membership)
    db.commit()
    return membership


@pytest.fixture(scope="function")
def alice_headers(alice: models.User) -> Dict[str, str]:
    return auth_headers(alice)


@pytest.fixture(scope="function")
def bob_headers(bob: models.User) -> Dict[str, str]:
    return auth_headers(bob)


@pytest.fixture(scope="function")
def carol_headers(carol: models.User) -> Dict[str, str]:
    return auth_headers(carol)


@pytest.fixture(scope="function")
def team(test_db: Session, alice: models.User) -> models.Team:
    """
    Create a test team with alice as creator and member.
    """
    logger.debug("Creating test team")
    team = models.Team(name="Eng", created_by=alice.id)
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    add_membership(test_db, team, alice)

    logger.info(f"Created test team with ID: {team.id}")
    return team


@pytest.fixture(scope="function")
def team_with_bob(test_db: Session, team: models.Team, bob: models.User) -> models.Team:
    """The test team with bob added as an ordinary member."""
    add_membership(test_db, team, bob)
    return team


@pytest.fixture(scope="function")
def task(test_db: Session, team: models.Team, alice: models.User) -> models.Task:
    """A task in the test team created by alice."""
    task = models.Task(
        title="Fix bug",
        team_id=team.id,
        created_by=alice.id,
        assigned_by_id=alice.id,
    )
    test_db.add(task)
    test_db.commit()
    test_db.refresh(task)
    return task


@pytest.fixture(scope="function")
def milestone(test_db: Session, team: models.Team, alice: models.User) -> models.Milestone:
    """A milestone in the test team created by alice, without due date."""
    milestone = models.Milestone(title="v1.0", team_id=team.id, created_by=alice.id)
    test_db.add(milestone)
    test_db.commit()
    test_db.refresh(milestone)
    return milestone
