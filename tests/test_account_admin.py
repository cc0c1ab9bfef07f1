import re
from datetime import timedelta

import pytest

from auth import verify_password
from models import (
    ActivityLog,
    ActivityType,
    PasswordResetRequest,
    PointsLog,
    Profile,
    ResetRequestStatus,
    Task,
    User,
    UserRole,
)
from services import procedures
from services.account_admin import AccountAdministration
from services.errors import ErrorKind
from services.realtime import ChangeNotifier
from services.task_lifecycle import TaskLifecycleEngine
from utils import utc_now

from conftest import make_account


def accounts(db):
    return AccountAdministration(db, notifier=ChangeNotifier())


# ============================================================================
# CREATE
# ============================================================================

def test_director_creates_admin_with_next_employee_code(db, director):
    result = accounts(db).create_user(
        director, email="  New.Admin@Example.com ", temp_password="Welcome1", full_name="Nia Admin", role="Admin"
    )

    assert result.ok, result.error
    profile = db.query(Profile).filter(Profile.id == result.value["user_id"]).one()
    assert profile.role == UserRole.ADMIN
    assert profile.email == "new.admin@example.com"
    assert profile.is_temporary_password is True
    assert profile.employee_id == result.value["employee_id"]
    assert re.match(r"^AV-\d{4}-\d{3}$", profile.employee_id)
    assert int(profile.employee_id[-3:]) == int(director.employee_id[-3:]) + 1

    entry = db.query(ActivityLog).one()
    assert entry.action_type == ActivityType.USER_ADDED.value
    assert entry.target_user_id == profile.id
    assert "as Admin" in entry.message


def test_employee_codes_are_unique_and_sequential(db, director):
    codes = [
        accounts(db).create_user(director, f"user{i}@example.com", "Welcome1", f"User {i}", "User").value["employee_id"]
        for i in range(3)
    ]
    numbers = [int(c[-3:]) for c in codes]
    assert len(set(codes)) == 3
    assert numbers == sorted(numbers)
    assert numbers[1] - numbers[0] == 1


@pytest.mark.parametrize("actor_fixture,role,kind", [
    ("admin", "Admin", ErrorKind.AUTHORIZATION),
    ("director", "Director", ErrorKind.AUTHORIZATION),
    ("user_a", "User", ErrorKind.AUTHORIZATION),
    ("director", "Manager", ErrorKind.VALIDATION),
])
def test_create_user_role_rules(db, request, actor_fixture, role, kind):
    actor = request.getfixturevalue(actor_fixture)

    result = accounts(db).create_user(actor, "someone@example.com", "Welcome1", "Someone", role)

    assert result.error.kind == kind
    assert db.query(User).filter(User.email == "someone@example.com").first() is None


def test_orphan_identity_is_completed_instead_of_failing(db, admin):
    orphan = procedures.create_identity(db, "orphan@example.com", "Welcome1")
    db.commit()

    result = accounts(db).create_user(admin, "orphan@example.com", "Welcome1", "Olive Orphan", "User")

    assert result.ok, result.error
    assert result.value["user_id"] == orphan.id
    assert db.query(Profile).filter(Profile.id == orphan.id).one().full_name == "Olive Orphan"

    again = accounts(db).create_user(admin, "orphan@example.com", "Welcome1", "Olive Orphan", "User")
    assert again.error.kind == ErrorKind.VALIDATION
    assert again.error.message == "A user with this email already exists."


def test_short_password_rejected(db, director):
    result = accounts(db).create_user(director, "short@example.com", "123", "Shorty", "User")
    assert result.error.kind == ErrorKind.VALIDATION


# ============================================================================
# DELETE
# ============================================================================

def test_delete_user_leaves_no_dangling_references(db, director, admin, user_a, user_b):
    engine = TaskLifecycleEngine(db, notifier=ChangeNotifier())
    deadline = utc_now() + timedelta(days=1)

    own = engine.create_task(director, "Own task", user_a.id, deadline, 10).value
    engine.mark_done(user_a, own.id, "done")
    engine.approve(admin, own.id)
    other = engine.create_task(admin, "Someone else's", user_b.id, deadline, 5).value
    accounts(db).give_tokens(director, user_a.id, 5, "thanks")
    user_a_id, own_id = user_a.id, own.id

    result = accounts(db).delete_user(admin, user_a_id)

    assert result.ok, result.error
    db.expire_all()
    assert db.query(User).filter(User.id == user_a_id).first() is None
    assert db.query(Profile).filter(Profile.id == user_a_id).first() is None
    assert db.query(Task).filter((Task.assigned_to == user_a_id) | (Task.created_by == user_a_id)).count() == 0
    assert db.query(PointsLog).filter((PointsLog.user_id == user_a_id) | (PointsLog.task_id == own_id)).count() == 0
    assert db.query(ActivityLog).filter(ActivityLog.actor_id == user_a_id).count() == 0
    assert db.query(ActivityLog).filter(ActivityLog.target_user_id == user_a_id).count() == 0
    assert db.query(ActivityLog).filter(ActivityLog.task_id == own_id).count() == 0
    # Activity by others survives, only its references are cleared
    assert db.query(ActivityLog).filter(ActivityLog.actor_id == director.id).count() > 0
    assert db.query(Task).filter(Task.id == other.id).one().assigned_to == user_b.id


def test_cascade_clears_reset_request_resolver(db, director):
    second = make_account(db, "second.director@example.com", "Second Director", UserRole.DIRECTOR)
    db.add(PasswordResetRequest(
        email="x@example.com",
        status=ResetRequestStatus.APPROVED.value,
        resolved_by=second.id,
        resolved_at=utc_now(),
    ))
    db.commit()

    procedures.delete_user_cascade(db, second.id)
    db.commit()

    assert db.query(PasswordResetRequest).one().resolved_by is None


@pytest.mark.parametrize("actor_fixture,target_fixture", [
    ("admin", "director"),
    ("director", "director"),
    ("admin", "admin"),
    ("user_a", "user_b"),
])
def test_delete_user_role_rules(db, request, actor_fixture, target_fixture):
    actor = request.getfixturevalue(actor_fixture)
    target = request.getfixturevalue(target_fixture)

    result = accounts(db).delete_user(actor, target.id)

    assert result.error.kind == ErrorKind.AUTHORIZATION
    assert db.query(Profile).filter(Profile.id == target.id).first() is not None


def test_director_can_delete_admin(db, director, admin):
    assert accounts(db).delete_user(director, admin.id).ok


# ============================================================================
# PASSWORD RESET
# ============================================================================

def test_reset_request_resolved_by_director(db, director, user_a):
    service = accounts(db)
    request = service.submit_password_reset_request("  UserA@Example.com ")
    assert request.email == "usera@example.com"
    assert service.submit_password_reset_request("usera@example.com").id == request.id

    pending = service.list_pending_reset_requests(director)
    assert [r.id for r in pending.value] == [request.id]

    result = service.reset_password(director, user_a.id, "Temp4567", request_id=request.id)

    assert result.ok, result.error
    db.expire_all()
    user = db.query(User).filter(User.id == user_a.id).one()
    assert verify_password("Temp4567", user.hashed_password)
    assert user.profile.is_temporary_password is True
    resolved = db.query(PasswordResetRequest).one()
    assert resolved.status == ResetRequestStatus.APPROVED.value
    assert resolved.resolved_by == director.id
    assert resolved.resolved_at is not None
    assert db.query(ActivityLog).one().action_type == ActivityType.PASSWORD_RESET_REQUEST.value
    assert service.list_pending_reset_requests(director).value == []


def test_only_directors_reset_passwords(db, admin, user_a):
    result = accounts(db).reset_password(admin, user_a.id, "Temp4567")
    assert result.error.kind == ErrorKind.AUTHORIZATION
    assert db.query(ActivityLog).count() == 0


def test_dismissed_request_cannot_be_resolved(db, director, user_a):
    service = accounts(db)
    request = service.submit_password_reset_request("usera@example.com")

    dismissed = service.dismiss_reset_request(director, request.id)
    assert dismissed.value.status == ResetRequestStatus.DISMISSED.value

    result = service.reset_password(director, user_a.id, "Temp4567", request_id=request.id)
    assert result.error.kind == ErrorKind.VALIDATION


def test_change_own_password_clears_temporary_flag(db, user_a):
    user = db.query(User).filter(User.id == user_a.id).one()
    user_a.is_temporary_password = True
    db.commit()

    wrong = accounts(db).change_own_password(user, "not-it", "Brand-new-1")
    assert wrong.error.kind == ErrorKind.VALIDATION

    result = accounts(db).change_own_password(user, "secret123", "Brand-new-1")
    assert result.ok
    db.expire_all()
    assert db.query(Profile).filter(Profile.id == user_a.id).one().is_temporary_password is False


# ============================================================================
# TOKENS
# ============================================================================

def test_director_gift_increments_balance_without_ledger_row(db, director, user_a):
    result = accounts(db).give_tokens(director, user_a.id, 50, "bonus")

    assert result.ok, result.error
    assert result.value == 50
    db.refresh(user_a)
    assert user_a.total_tokens == 50
    assert db.query(PointsLog).count() == 0
    entry = db.query(ActivityLog).one()
    assert entry.action_type == ActivityType.TOKENS_GIVEN.value
    assert "50 tokens" in entry.message
    assert "bonus" in entry.message


@pytest.mark.parametrize("actor_fixture,target_fixture,amount,kind", [
    ("admin", "director", 10, ErrorKind.AUTHORIZATION),
    ("admin", "admin", 10, ErrorKind.AUTHORIZATION),
    ("director", "director", 10, ErrorKind.AUTHORIZATION),
    ("user_a", "user_b", 10, ErrorKind.AUTHORIZATION),
    ("director", "user_a", 0, ErrorKind.VALIDATION),
    ("director", "user_a", 10001, ErrorKind.VALIDATION),
])
def test_give_tokens_rules(db, request, actor_fixture, target_fixture, amount, kind):
    actor = request.getfixturevalue(actor_fixture)
    target = request.getfixturevalue(target_fixture)

    result = accounts(db).give_tokens(actor, target.id, amount)

    assert result.error.kind == kind
    assert db.query(ActivityLog).count() == 0


def test_director_may_gift_admins(db, director, admin):
    assert accounts(db).give_tokens(director, admin.id, 10000).value == 10000


def test_leaderboard_lists_users_with_tokens(db, director, admin, user_a, user_b):
    service = accounts(db)
    service.give_tokens(director, user_b.id, 30)
    service.give_tokens(director, user_a.id, 80)
    service.give_tokens(director, admin.id, 500)
    make_account(db, "broke@example.com", "Broke User", UserRole.USER)

    board = service.leaderboard().value

    assert [p.id for p in board] == [user_a.id, user_b.id]
