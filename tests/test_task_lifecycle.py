from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from models import ActivityLog, ActivityType, PointsLog, Task, TaskStatus
from services import procedures
from services.errors import ErrorKind
from services.realtime import ChangeNotifier
from services.task_lifecycle import TaskLifecycleEngine
from services.task_repository import TaskRepository
from utils import utc_now


def lifecycle(db, clock=utc_now):
    return TaskLifecycleEngine(db, notifier=ChangeNotifier(), clock=clock)


def create(db, actor, assignee, tokens=100, deadline=None):
    result = lifecycle(db).create_task(
        actor,
        title="Write quarterly report",
        assigned_to=assignee.id,
        deadline=deadline or utc_now() + timedelta(days=1),
        tokens=tokens,
        description="Numbers for Q3",
    )
    assert result.ok, result.error
    return result.value


def submitted(db, creator, assignee, tokens=100):
    """A task that is approved for users and already under review."""
    task = create(db, creator, assignee, tokens=tokens)
    if not task.director_approved:
        raise AssertionError("use a Director as creator")
    result = lifecycle(db).mark_done(assignee, task.id, "done")
    assert result.ok, result.error
    return result.value


def activity_types(db):
    return [a.action_type for a in db.query(ActivityLog).order_by(ActivityLog.id).all()]


# ============================================================================
# SCENARIOS
# ============================================================================

def test_admin_task_full_flow_on_time(db, director, admin, user_a):
    repo = TaskRepository(db, ChangeNotifier())

    task = create(db, admin, user_a, tokens=100)
    assert task.status == TaskStatus.PENDING
    assert task.director_approved is False
    assert repo.list_tasks(user_a) == []

    result = lifecycle(db).director_approve(director, task.id)
    assert result.ok
    assert result.value.director_approved is True
    assert [t.id for t in repo.list_tasks(user_a)] == [task.id]

    result = lifecycle(db).mark_done(user_a, task.id, "Attached the report")
    assert result.ok
    assert result.value.status == TaskStatus.UNDER_REVIEW
    assert result.value.submitted_at is not None
    assert result.value.submission_note == "Attached the report"

    result = lifecycle(db).approve(admin, task.id)
    assert result.ok, result.error
    assert result.value.status == TaskStatus.COMPLETED
    assert result.value.approved_at is not None

    db.refresh(user_a)
    assert user_a.total_tokens == 120

    ledger = db.query(PointsLog).filter(PointsLog.user_id == user_a.id).all()
    assert [(e.task_id, e.tokens_awarded) for e in ledger] == [(task.id, 120)]

    assert activity_types(db) == [
        ActivityType.TASK_CREATED.value,
        ActivityType.DIRECTOR_APPROVED_TASK.value,
        ActivityType.TASK_MARKED_DONE.value,
        ActivityType.TASK_APPROVED.value,
    ]
    approved = db.query(ActivityLog).filter(ActivityLog.action_type == ActivityType.TASK_APPROVED.value).one()
    assert "120 tokens" in approved.message
    assert approved.target_user_id == user_a.id


def test_late_approval_pays_half(db, director, admin, user_a):
    task = submitted(db, director, user_a, tokens=100)

    later = task.deadline + timedelta(days=1)
    result = lifecycle(db, clock=lambda: later).approve(admin, task.id)
    assert result.ok, result.error

    db.refresh(user_a)
    assert user_a.total_tokens == 50
    entry = db.query(PointsLog).filter(PointsLog.task_id == task.id).one()
    assert entry.tokens_awarded == 50
    assert "late" in entry.reason


def test_director_created_task_is_visible_immediately(db, director, user_a, user_b):
    task = create(db, director, user_a)
    repo = TaskRepository(db, ChangeNotifier())

    assert task.director_approved is True
    assert [t.id for t in repo.list_tasks(user_a)] == [task.id]
    assert repo.list_tasks(user_b) == []


def test_staff_see_unapproved_tasks(db, director, admin, user_a):
    first = create(db, admin, user_a)
    second = create(db, director, user_a)
    repo = TaskRepository(db, ChangeNotifier())

    assert {t.id for t in repo.list_tasks(admin)} == {first.id, second.id}
    assert {t.id for t in repo.list_tasks(director)} == {first.id, second.id}


def test_approve_twice_never_pays_twice(db, director, admin, user_a):
    task = submitted(db, director, user_a)

    assert lifecycle(db).approve(admin, task.id).ok
    again = lifecycle(db).approve(director, task.id)

    assert not again.ok
    assert again.error.kind == ErrorKind.AUTHORIZATION
    db.refresh(user_a)
    assert user_a.total_tokens == 120
    assert db.query(PointsLog).count() == 1
    assert activity_types(db).count(ActivityType.TASK_APPROVED.value) == 1


def test_zero_token_task_skips_balance_increment(db, director, admin, user_a, monkeypatch):
    task = submitted(db, director, user_a, tokens=0)

    def fail(*args, **kwargs):
        raise AssertionError("increment must not be called for a zero award")

    monkeypatch.setattr(procedures, "increment_tokens", fail)
    result = lifecycle(db).approve(admin, task.id)

    assert result.ok, result.error
    entry = db.query(PointsLog).filter(PointsLog.task_id == task.id).one()
    assert entry.tokens_awarded == 0


def test_failed_payout_is_reported_as_partial_failure(db, director, admin, user_a, monkeypatch):
    task = submitted(db, director, user_a)

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE profiles", {}, Exception("connection reset"))

    monkeypatch.setattr(procedures, "increment_tokens", broken)
    result = lifecycle(db).approve(admin, task.id)

    assert not result.ok
    assert result.error.kind == ErrorKind.PARTIAL_FAILURE
    assert result.value.status == TaskStatus.COMPLETED
    assert "Do not approve again" in result.error.message

    db.refresh(user_a)
    assert user_a.total_tokens == 0
    assert db.query(PointsLog).filter(PointsLog.task_id == task.id).one().tokens_awarded == 120
    assert ActivityType.TASK_APPROVED.value not in activity_types(db)

    # The guard still blocks a blind retry of the whole transition
    monkeypatch.undo()
    retry = lifecycle(db).approve(admin, task.id)
    assert retry.error.kind == ErrorKind.AUTHORIZATION
    assert db.query(PointsLog).count() == 1


# ============================================================================
# ROLE MATRIX
# ============================================================================

def _future(days=3):
    return utc_now() + timedelta(days=days)


OPERATIONS = {
    "create": lambda eng, actor, task, assignee: eng.create_task(
        actor, title="Another", assigned_to=assignee.id, deadline=_future(), tokens=5
    ),
    "director_approve": lambda eng, actor, task, assignee: eng.director_approve(actor, task.id),
    "mark_done": lambda eng, actor, task, assignee: eng.mark_done(actor, task.id, None),
    "approve": lambda eng, actor, task, assignee: eng.approve(actor, task.id),
    "reject": lambda eng, actor, task, assignee: eng.reject(actor, task.id),
    "reassign": lambda eng, actor, task, assignee: eng.reassign(actor, task.id),
    "edit": lambda eng, actor, task, assignee: eng.edit_task(actor, task.id, {"title": "Renamed"}),
    "extend_deadline": lambda eng, actor, task, assignee: eng.extend_deadline(actor, task.id, _future(10)),
    "give_feedback": lambda eng, actor, task, assignee: eng.give_feedback(actor, task.id, "Nice"),
    "delete": lambda eng, actor, task, assignee: eng.delete_task(actor, task.id),
}

ROLE_FIXTURES = {"Director": "director", "Admin": "admin", "User": "user_a"}

DISALLOWED = [
    ("User", "create"),
    ("User", "director_approve"),
    ("Admin", "director_approve"),
    ("Admin", "mark_done"),
    ("Director", "mark_done"),
    ("User", "approve"),
    ("User", "reject"),
    ("User", "reassign"),
    ("User", "edit"),
    ("User", "extend_deadline"),
    ("User", "give_feedback"),
    ("User", "delete"),
]


def _snapshot(db, task_id):
    db.expire_all()
    task = db.query(Task).filter(Task.id == task_id).one()
    return (
        db.query(Task).count(),
        db.query(ActivityLog).count(),
        db.query(PointsLog).count(),
        task.status,
        task.director_approved,
        task.title,
        task.deadline,
        task.admin_feedback,
    )


@pytest.mark.parametrize("role,operation", DISALLOWED)
def test_disallowed_role_changes_nothing(db, request, director, admin, user_a, role, operation):
    task = create(db, director, user_a)
    actor = request.getfixturevalue(ROLE_FIXTURES[role])
    before = _snapshot(db, task.id)

    result = OPERATIONS[operation](lifecycle(db), actor, task, user_a)

    assert not result.ok
    assert result.error.kind == ErrorKind.AUTHORIZATION
    assert _snapshot(db, task.id) == before


def test_only_the_assignee_can_submit(db, director, user_a, user_b):
    task = create(db, director, user_a)

    result = lifecycle(db).mark_done(user_b, task.id, None)

    assert result.error.kind == ErrorKind.AUTHORIZATION
    db.refresh(task)
    assert task.status == TaskStatus.PENDING


def test_unapproved_task_cannot_be_submitted(db, admin, user_a):
    task = create(db, admin, user_a)

    result = lifecycle(db).mark_done(user_a, task.id, None)

    assert result.error.kind == ErrorKind.AUTHORIZATION


def test_admin_cannot_reject_task_awaiting_director(db, director, admin, user_a):
    task = create(db, admin, user_a)

    assert lifecycle(db).reject(admin, task.id).error.kind == ErrorKind.AUTHORIZATION

    result = lifecycle(db).reject(director, task.id)
    assert result.ok
    assert result.value.status == TaskStatus.REJECTED


# ============================================================================
# VALIDATION
# ============================================================================

@pytest.mark.parametrize("overrides", [
    {"title": "   "},
    {"tokens": -1},
    {"tokens": 1001},
    {"deadline_offset": timedelta(hours=-1)},
])
def test_invalid_create_is_rejected_before_any_write(db, director, user_a, overrides):
    deadline = utc_now() + overrides.get("deadline_offset", timedelta(days=1))
    result = lifecycle(db).create_task(
        director,
        title=overrides.get("title", "Valid title"),
        assigned_to=user_a.id,
        deadline=deadline,
        tokens=overrides.get("tokens", 10),
    )

    assert result.error.kind == ErrorKind.VALIDATION
    assert db.query(Task).count() == 0
    assert db.query(ActivityLog).count() == 0


def test_tasks_can_only_be_assigned_to_users(db, director, admin):
    result = lifecycle(db).create_task(
        director, title="Audit", assigned_to=admin.id, deadline=_future(), tokens=10
    )
    assert result.error.kind == ErrorKind.VALIDATION


def test_missing_task_is_not_found(db, director):
    result = lifecycle(db).approve(director, 9999)
    assert result.error.kind == ErrorKind.NOT_FOUND


# ============================================================================
# EDIT / EXTEND / REASSIGN / FEEDBACK
# ============================================================================

def test_admin_edit_requires_new_director_approval(db, director, admin, user_a, user_b):
    task = create(db, director, user_a)

    result = lifecycle(db).edit_task(admin, task.id, {"title": "Rewritten", "assigned_to": user_b.id})

    assert result.ok, result.error
    assert result.value.director_approved is False
    assert result.value.title == "Rewritten"
    assert result.value.assigned_to == user_b.id
    assert activity_types(db)[-1] == ActivityType.TASK_ASSIGNED.value


def test_director_edit_keeps_approval_state(db, director, admin, user_a):
    approved = create(db, director, user_a)
    pending = create(db, admin, user_a)

    assert lifecycle(db).edit_task(director, approved.id, {"tokens": 40}).value.director_approved is True
    assert lifecycle(db).edit_task(director, pending.id, {"tokens": 40}).value.director_approved is False


def test_edit_rejects_past_deadline_and_non_pending_tasks(db, director, user_a):
    task = create(db, director, user_a)
    past = lifecycle(db).edit_task(director, task.id, {"deadline": utc_now() - timedelta(minutes=1)})
    assert past.error.kind == ErrorKind.VALIDATION

    lifecycle(db).mark_done(user_a, task.id, None)
    locked = lifecycle(db).edit_task(director, task.id, {"title": "Too late"})
    assert locked.error.kind == ErrorKind.AUTHORIZATION


def test_extending_twice_keeps_first_original_deadline(db, director, admin, user_a):
    task = create(db, director, user_a)
    first_deadline = task.deadline

    once = lifecycle(db).extend_deadline(admin, task.id, first_deadline + timedelta(days=2))
    assert once.ok, once.error
    assert once.value.original_deadline == first_deadline

    twice = lifecycle(db).extend_deadline(admin, task.id, first_deadline + timedelta(days=5))
    assert twice.ok, twice.error
    assert twice.value.deadline == first_deadline + timedelta(days=5)
    assert twice.value.original_deadline == first_deadline
    assert activity_types(db).count(ActivityType.DEADLINE_EXTENDED.value) == 2


def test_extension_must_move_deadline_later(db, director, user_a):
    task = create(db, director, user_a)

    result = lifecycle(db).extend_deadline(director, task.id, task.deadline - timedelta(hours=1))

    assert result.error.kind == ErrorKind.VALIDATION


def test_completed_tasks_cannot_be_extended(db, director, admin, user_a):
    task = submitted(db, director, user_a)
    lifecycle(db).approve(admin, task.id)

    result = lifecycle(db).extend_deadline(director, task.id, task.deadline + timedelta(days=3))

    assert result.error.kind == ErrorKind.AUTHORIZATION


@pytest.mark.parametrize("review", ["under_review", "rejected"])
def test_reassign_returns_task_to_pending(db, director, admin, user_a, review):
    task = submitted(db, director, user_a)
    if review == "rejected":
        assert lifecycle(db).reject(admin, task.id).ok

    result = lifecycle(db).reassign(admin, task.id)

    assert result.ok, result.error
    assert result.value.status == TaskStatus.PENDING
    assert result.value.submitted_at is None
    assert result.value.submission_note is None
    assert result.value.approved_at is None
    assert result.value.director_approved is True
    assert activity_types(db)[-1] == ActivityType.TASK_REASSIGNED.value


def test_pending_task_cannot_be_reassigned(db, director, user_a):
    task = create(db, director, user_a)
    assert lifecycle(db).reassign(director, task.id).error.kind == ErrorKind.AUTHORIZATION


def test_feedback_only_after_submission_and_emits_nothing(db, director, admin, user_a):
    task = create(db, director, user_a)
    assert lifecycle(db).give_feedback(admin, task.id, "Early").error.kind == ErrorKind.AUTHORIZATION

    lifecycle(db).mark_done(user_a, task.id, None)
    count = db.query(ActivityLog).count()

    result = lifecycle(db).give_feedback(admin, task.id, "  Please add charts  ")
    assert result.ok
    assert result.value.admin_feedback == "Please add charts"
    assert result.value.status == TaskStatus.UNDER_REVIEW
    assert db.query(ActivityLog).count() == count


# ============================================================================
# DELETE
# ============================================================================

def test_delete_keeps_ledger_and_activity_without_task_reference(db, director, admin, user_a):
    task = submitted(db, director, user_a)
    lifecycle(db).approve(admin, task.id)
    task_id = task.id

    # An entry that only pointed at the task carries no other meaning
    db.add(ActivityLog(actor_id=admin.id, action_type=ActivityType.TASK_COMPLETED.value, task_id=task_id, message=""))
    db.commit()
    activity_before = db.query(ActivityLog).count()

    result = lifecycle(db).delete_task(director, task_id)

    assert result.ok, result.error
    db.expire_all()
    assert db.query(Task).filter(Task.id == task_id).first() is None
    assert db.query(PointsLog).one().task_id is None
    assert db.query(ActivityLog).filter(ActivityLog.task_id == task_id).count() == 0
    # one meaningless row removed, one task_deleted row added
    assert db.query(ActivityLog).count() == activity_before
    deleted = db.query(ActivityLog).order_by(ActivityLog.id.desc()).first()
    assert deleted.action_type == ActivityType.TASK_DELETED.value
    assert deleted.task_id is None
    assert "Write quarterly report" in deleted.message
    db.refresh(user_a)
    assert user_a.total_tokens == 120


def test_store_rejects_dangling_task_reference(db, admin):
    db.add(ActivityLog(actor_id=admin.id, action_type=ActivityType.TASK_CREATED.value, task_id=9999, message="x"))

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_delete_writes_one_unlinked_activity_entry(db, director, user_a):
    task = create(db, director, user_a)
    before = db.query(ActivityLog).count()

    result = lifecycle(db).delete_task(director, task.id)

    assert result.ok, result.error
    assert db.query(ActivityLog).count() == before + 1
    entry = db.query(ActivityLog).order_by(ActivityLog.id.desc()).first()
    assert entry.action_type == ActivityType.TASK_DELETED.value
    assert entry.task_id is None
    assert entry.target_user_id == user_a.id


def test_task_rejected_before_approval_returns_approved_through_director(db, director, admin, user_a):
    task = create(db, admin, user_a)
    assert lifecycle(db).reject(director, task.id).ok

    denied = lifecycle(db).reassign(admin, task.id)
    assert denied.error.kind == ErrorKind.AUTHORIZATION

    result = lifecycle(db).reassign(director, task.id)
    assert result.ok, result.error
    assert result.value.status == TaskStatus.PENDING
    assert result.value.director_approved is True
