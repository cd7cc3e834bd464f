import os

# Configure before the app modules read their settings
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["REDIS_URL"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from main import app

import models
from database import Base, get_db
from auth import get_password_hash
from utils.cache import JsonCache, reset_cache
from utils.rate_limiter import AuthRateLimiter, get_auth_rate_limiter
from utils.sessions import issue_session_tokens

# Setup in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Factory for extra sessions on the test database (used by jobs)."""
    return TestingSessionLocal


@pytest.fixture
def rate_limiter():
    return AuthRateLimiter()


@pytest.fixture(scope="function")
def client(db_session, rate_limiter):
    """Create a FastAPI TestClient with overridden database and rate limiter dependencies."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_auth_rate_limiter] = lambda: rate_limiter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_auth_rate_limiter, None)


@pytest.fixture(autouse=True)
def fresh_cache():
    """Each test gets an empty in-process cache; home ids repeat between tests."""
    reset_cache(JsonCache())
    yield
    reset_cache(None)


def make_user(db, name, email, phone, home=None, role="MEMBER", password="password123"):
    user = models.User(
        name=name,
        email=email,
        phone=phone,
        hashed_password=get_password_hash(password)
    )
    db.add(user)
    db.flush()
    if home is not None:
        db.add(models.HomeMember(home_id=home.id, user_id=user.id, role=role))
        user.home_id = home.id
        user.is_admin = role == "ADMIN"
    db.commit()
    db.refresh(user)
    return user


def headers_for(db, user):
    tokens = issue_session_tokens(db, user)
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def home(db_session):
    home = models.Home(name="Test Home", invite_code="HOME1234")
    db_session.add(home)
    db_session.commit()
    db_session.refresh(home)
    return home


@pytest.fixture
def test_user(db_session, home):
    """The home admin and default payer."""
    return make_user(db_session, "Test User", "test@example.com", "+5511999990001", home=home, role="ADMIN")


@pytest.fixture
def second_user(db_session, home, test_user):
    return make_user(db_session, "Second User", "second@example.com", "+5511999990002", home=home)


@pytest.fixture
def third_user(db_session, home, second_user):
    return make_user(db_session, "Third User", "third@example.com", "+5511999990003", home=home)


@pytest.fixture
def category(db_session, home):
    category = models.Category(home_id=home.id, name="Groceries", type="VARIABLE")
    db_session.add(category)
    db_session.commit()
    db_session.refresh(category)
    return category


@pytest.fixture
def auth_headers(db_session, test_user):
    """Return authorization headers for the test user."""
    return headers_for(db_session, test_user)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}
