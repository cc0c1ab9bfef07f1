import os
import tempfile

# Must be set before any application module reads its configuration
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.gettempdir(), "token_tracker_tests.db")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENABLE_SCHEDULER"] = "0"

import pytest

from auth import hash_password
from db import SessionLocal, engine
from dependencies import blacklist_cache
from models import Base, Profile, User, UserRole
from router.users import directory
from services.procedures import next_employee_code

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    directory.profiles.clear()
    directory.leaderboard.clear()
    blacklist_cache.clear()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_account(db, email, full_name, role, password=PASSWORD, tokens=0):
    user = User(email=email, hashed_password=hash_password(password))
    db.add(user)
    db.flush()
    profile = Profile(
        id=user.id,
        employee_id=next_employee_code(db),
        full_name=full_name,
        role=UserRole(role).value,
        email=email,
        is_temporary_password=False,
        total_tokens=tokens,
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture
def director(db):
    return make_account(db, "director@example.com", "Dana Director", UserRole.DIRECTOR)


@pytest.fixture
def admin(db):
    return make_account(db, "admin@example.com", "Alex Admin", UserRole.ADMIN)


@pytest.fixture
def user_a(db):
    return make_account(db, "usera@example.com", "Ursula User", UserRole.USER)


@pytest.fixture
def user_b(db):
    return make_account(db, "userb@example.com", "Ben User", UserRole.USER)
