"""
Task Lifecycle Engine
=====================
Drives every task state change: role and state guards, the Director approval
gate, token awards on review approval, and one activity entry per successful
transition.

States:
    Pending (unapproved) -> Pending (approved) -> Under Review -> Completed | Rejected
    Under Review / Rejected -> Pending (approved) via reassign

Every public operation returns an OperationResult; guard failures never touch
the database and never emit activity.
"""

import os
import logging
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from models import ActivityLog, ActivityType, PointsLog, Profile, Task, TaskStatus, UserRole
from services.activity_service import log_activity, render_message
from services.errors import (
    InvalidInputError,
    NotPermittedError,
    PartialFailureError,
    ServiceError,
    orchestrated,
)
from services.points_ledger import PointsLedger
from services.realtime import ChangeNotifier, change_notifier
from services.task_repository import TaskRepository
from services.token_calculator import calculate_award
from utils import ensure_utc_naive, utc_now

load_dotenv()

logger = logging.getLogger(__name__)

TASK_TOKEN_CAP = int(os.getenv("TASK_TOKEN_CAP", "1000"))

REVIEWED_STATUSES = (TaskStatus.UNDER_REVIEW, TaskStatus.COMPLETED, TaskStatus.REJECTED)
REASSIGNABLE_STATUSES = (TaskStatus.UNDER_REVIEW, TaskStatus.REJECTED)


def _format_deadline(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC")


class TaskLifecycleEngine:
    def __init__(
        self,
        db: Session,
        notifier: ChangeNotifier = change_notifier,
        clock=utc_now,
        token_cap: int = TASK_TOKEN_CAP,
    ):
        self.db = db
        self.notifier = notifier
        self.clock = clock
        self.token_cap = token_cap
        self.repo = TaskRepository(db, notifier)
        self.ledger = PointsLedger(db, notifier)

    # ========================================================================
    # GUARDS & VALIDATION
    # ========================================================================

    def _require_staff(self, actor: Profile, action: str):
        if not actor.is_staff:
            raise NotPermittedError(f"Only Admins and Directors can {action}")

    def _require_director(self, actor: Profile, action: str):
        if not actor.is_director:
            raise NotPermittedError(f"Only Directors can {action}")

    def _validate_title(self, title: Optional[str]) -> str:
        cleaned = (title or "").strip()
        if not cleaned:
            raise InvalidInputError("Title is required")
        return cleaned

    def _validate_tokens(self, tokens) -> int:
        if tokens is None or isinstance(tokens, bool) or not isinstance(tokens, int):
            raise InvalidInputError("Token value must be a whole number")
        if tokens < 0 or tokens > self.token_cap:
            raise InvalidInputError(f"Token value must be between 0 and {self.token_cap}")
        return tokens

    def _validate_future(self, deadline: Optional[datetime], now: datetime) -> datetime:
        if deadline is None:
            raise InvalidInputError("Deadline is required")
        deadline = ensure_utc_naive(deadline)
        if deadline <= now:
            raise InvalidInputError("Deadline must be in the future")
        return deadline

    def _resolve_assignee(self, assignee_id: int) -> Profile:
        assignee = self.db.query(Profile).filter(Profile.id == assignee_id).first()
        if not assignee:
            raise InvalidInputError("Assignee not found")
        if assignee.role != UserRole.USER:
            raise InvalidInputError("Tasks can only be assigned to Users")
        return assignee

    # ========================================================================
    # ACTIVITY
    # ========================================================================

    def _emit(
        self,
        actor: Profile,
        action: ActivityType,
        task: Task,
        target: Optional[Profile] = None,
        detail: Optional[str] = None,
        link_task: bool = True,
    ):
        target = target if target is not None else task.assignee
        message = render_message(
            action,
            actor.full_name,
            target.full_name if target else None,
            task.title,
            detail,
        )
        log_activity(
            self.db,
            actor_id=actor.id,
            action=action,
            message=message,
            target_user_id=target.id if target else None,
            task_id=task.id if link_task else None,
            notifier=self.notifier,
        )

    # ========================================================================
    # CREATE / APPROVAL GATE
    # ========================================================================

    @orchestrated("create_task")
    def create_task(
        self,
        actor: Profile,
        title: str,
        assigned_to: int,
        deadline: datetime,
        tokens: int,
        description: Optional[str] = None,
    ) -> Task:
        """Admin-created tasks wait for a Director; Director-created tasks are live at once."""
        self._require_staff(actor, "create tasks")

        now = self.clock()
        fields = {
            "title": self._validate_title(title),
            "description": description,
            "deadline": self._validate_future(deadline, now),
            "tokens": self._validate_tokens(tokens),
            "assigned_to": self._resolve_assignee(assigned_to).id,
            "created_by": actor.id,
            "status": TaskStatus.PENDING.value,
        }

        task = self.repo.insert(fields, director_approved=actor.is_director)
        self._emit(actor, ActivityType.TASK_CREATED, task)
        return task

    @orchestrated("director_approve")
    def director_approve(self, actor: Profile, task_id: int) -> Task:
        self._require_director(actor, "approve tasks for users")
        task = self.repo.get(task_id)

        if task.director_approved or task.status != TaskStatus.PENDING:
            raise NotPermittedError("Only pending tasks awaiting approval can be approved for users")

        task = self.repo.update_fields(task.id, {"director_approved": True})
        self._emit(actor, ActivityType.DIRECTOR_APPROVED_TASK, task)
        return task

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    @orchestrated("mark_done")
    def mark_done(self, actor: Profile, task_id: int, submission_note: Optional[str] = None) -> Task:
        if actor.role != UserRole.USER:
            raise NotPermittedError("Only Users can submit tasks")
        task = self.repo.get(task_id)

        if task.assigned_to != actor.id:
            raise NotPermittedError("You can only submit tasks assigned to you")
        if not task.director_approved:
            raise NotPermittedError("This task has not been approved yet")
        if task.status != TaskStatus.PENDING:
            raise NotPermittedError(f"Only pending tasks can be submitted (task is {task.status})")

        note = (submission_note or "").strip() or None
        moved = self.repo.transition_status(
            task.id,
            TaskStatus.PENDING.value,
            {
                "status": TaskStatus.UNDER_REVIEW.value,
                "submitted_at": self.clock(),
                "submission_note": note,
            },
        )
        if not moved:
            raise NotPermittedError("Task is no longer pending")

        task = self.repo.get(task.id)
        self._emit(actor, ActivityType.TASK_MARKED_DONE, task, target=task.creator)
        return task

    # ========================================================================
    # REVIEW
    # ========================================================================

    @orchestrated("approve")
    def approve(self, actor: Profile, task_id: int) -> Task:
        """
        Complete a task under review and pay its assignee.

        The status change and the ledger row commit together; the balance
        increment follows in its own transaction. If only the increment fails
        the result is a PartialFailureError carrying the completed task.
        """
        self._require_staff(actor, "approve tasks")
        task = self.repo.get(task_id)

        if task.status != TaskStatus.UNDER_REVIEW:
            raise NotPermittedError(f"Only tasks under review can be approved (task is {task.status})")

        now = self.clock()
        award = calculate_award(task.tokens, task.deadline, now)
        assignee_id = task.assigned_to

        moved = self.repo.transition_status(
            task.id,
            TaskStatus.UNDER_REVIEW.value,
            {"status": TaskStatus.COMPLETED.value, "approved_at": now},
            commit=False,
        )
        if not moved:
            # Someone else approved / moved it first: nothing may be paid twice
            self.db.rollback()
            raise NotPermittedError("Task is no longer under review")

        self.ledger.record(assignee_id, task.id, award.total, award.reason)
        self.repo.commit("approve")

        if award.total > 0:
            try:
                self.ledger.increment_balance(assignee_id, award.total)
            except ServiceError as e:
                self.db.rollback()
                completed = self.repo.get(task_id)
                raise PartialFailureError(
                    f"Task was completed but the {award.total} token payout failed ({e.message}). "
                    "Do not approve again; check the user's balance before retrying the payout.",
                    value=completed,
                )

        task = self.repo.get(task_id)
        logger.info(f"Task {task.id} approved: {award.total} tokens to {assignee_id} (on_time={award.on_time})")
        self._emit(actor, ActivityType.TASK_APPROVED, task, detail=f"{award.total} tokens")
        return task

    @orchestrated("reject")
    def reject(self, actor: Profile, task_id: int) -> Task:
        self._require_staff(actor, "reject tasks")
        task = self.repo.get(task_id)

        awaiting_director = task.status == TaskStatus.PENDING and not task.director_approved
        if task.status == TaskStatus.UNDER_REVIEW:
            pass
        elif awaiting_director:
            self._require_director(actor, "reject tasks awaiting approval")
        else:
            raise NotPermittedError(f"This task cannot be rejected (task is {task.status})")

        moved = self.repo.transition_status(task.id, task.status, {"status": TaskStatus.REJECTED.value})
        if not moved:
            raise NotPermittedError("Task changed while rejecting; refresh and try again")

        task = self.repo.get(task.id)
        self._emit(actor, ActivityType.TASK_REJECTED, task)
        return task

    @orchestrated("reassign")
    def reassign(self, actor: Profile, task_id: int) -> Task:
        """
        Send a reviewed task back to Pending and approved for the assignee.
        A task rejected before Director approval can only come back through a
        Director, whose reassignment counts as the approval.
        """
        self._require_staff(actor, "reassign tasks")
        task = self.repo.get(task_id)

        if task.status not in REASSIGNABLE_STATUSES:
            raise NotPermittedError(f"Only tasks under review or rejected can be reassigned (task is {task.status})")
        if not task.director_approved:
            self._require_director(actor, "reassign tasks awaiting approval")

        moved = self.repo.transition_status(
            task.id,
            task.status,
            {
                "status": TaskStatus.PENDING.value,
                "submitted_at": None,
                "submission_note": None,
                "approved_at": None,
                "director_approved": True,
            },
        )
        if not moved:
            raise NotPermittedError("Task changed while reassigning; refresh and try again")

        task = self.repo.get(task.id)
        self._emit(actor, ActivityType.TASK_REASSIGNED, task)
        return task

    # ========================================================================
    # EDITS
    # ========================================================================

    @orchestrated("edit_task")
    def edit_task(self, actor: Profile, task_id: int, changes: dict) -> Task:
        """
        Edit a pending task. An Admin edit sends the task back through Director
        approval; a Director edit leaves the approval state alone.
        """
        self._require_staff(actor, "edit tasks")
        task = self.repo.get(task_id)

        if task.status != TaskStatus.PENDING:
            raise NotPermittedError(f"Only pending tasks can be edited (task is {task.status})")

        allowed = {"title", "description", "assigned_to", "deadline", "tokens"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidInputError(f"Cannot edit fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise InvalidInputError("Nothing to update")

        now = self.clock()
        fields = {}
        if "title" in changes:
            fields["title"] = self._validate_title(changes["title"])
        if "description" in changes:
            fields["description"] = changes["description"]
        if "deadline" in changes:
            fields["deadline"] = self._validate_future(changes["deadline"], now)
        if "tokens" in changes:
            fields["tokens"] = self._validate_tokens(changes["tokens"])
        if "assigned_to" in changes:
            fields["assigned_to"] = self._resolve_assignee(changes["assigned_to"]).id

        if not actor.is_director:
            fields["director_approved"] = False

        task = self.repo.update_fields(task.id, fields)
        self._emit(actor, ActivityType.TASK_ASSIGNED, task)
        return task

    @orchestrated("extend_deadline")
    def extend_deadline(self, actor: Profile, task_id: int, new_deadline: datetime) -> Task:
        self._require_staff(actor, "extend deadlines")
        task = self.repo.get(task_id)

        if task.status == TaskStatus.COMPLETED:
            raise NotPermittedError("Completed tasks cannot be extended")

        new_deadline = self._validate_future(new_deadline, self.clock())
        if new_deadline <= task.deadline:
            raise InvalidInputError("New deadline must be later than the current deadline")

        fields = {"deadline": new_deadline}
        # Keep the very first deadline across repeated extensions
        if task.original_deadline is None:
            fields["original_deadline"] = task.deadline

        task = self.repo.update_fields(task.id, fields)
        self._emit(actor, ActivityType.DEADLINE_EXTENDED, task, detail=_format_deadline(new_deadline))
        return task

    @orchestrated("give_feedback")
    def give_feedback(self, actor: Profile, task_id: int, feedback: str) -> Task:
        self._require_staff(actor, "give feedback")
        task = self.repo.get(task_id)

        if task.status not in REVIEWED_STATUSES:
            raise NotPermittedError("Feedback can only be given on submitted or reviewed tasks")

        text = (feedback or "").strip()
        if not text:
            raise InvalidInputError("Feedback cannot be empty")

        return self.repo.update_fields(task.id, {"admin_feedback": text})

    # ========================================================================
    # DELETE
    # ========================================================================

    @orchestrated("delete_task")
    def delete_task(self, actor: Profile, task_id: int) -> Task:
        """
        Delete a task in any state. Ledger rows and activity entries keep
        their meaning, so their task reference is cleared instead; activity
        rows that said nothing beyond the task reference are removed.
        """
        self._require_staff(actor, "delete tasks")
        task = self.repo.get(task_id)
        title, assignee = task.title, task.assignee

        self.db.query(ActivityLog).filter(
            and_(
                ActivityLog.task_id == task.id,
                ActivityLog.target_user_id.is_(None),
                ActivityLog.message == "",
            )
        ).delete(synchronize_session=False)
        self.db.execute(update(ActivityLog).where(ActivityLog.task_id == task.id).values(task_id=None))
        self.db.execute(update(PointsLog).where(PointsLog.task_id == task.id).values(task_id=None))

        self.repo.delete_by_id(task.id)
        logger.info(f"Task {task_id} ('{title}') deleted by {actor.id}")

        deleted = Task(id=task_id, title=title, assigned_to=assignee.id if assignee else None)
        self._emit(actor, ActivityType.TASK_DELETED, deleted, target=assignee, link_task=False)
        return deleted
