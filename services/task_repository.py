"""
Task data access.

- CRUD + query operations on the ``tasks`` table
- Role-scoped listing (Users only ever see their own approved tasks)
- A "tasks changed" signal after every committed write

No business rules live here; the lifecycle engine decides what may change.
"""

import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Profile, Task, UserRole
from services.errors import NotFoundError, PersistenceError, friendly_error
from services.realtime import TASKS, ChangeNotifier, change_notifier
from utils import utc_now

logger = logging.getLogger(__name__)


class TaskRepository:
    def __init__(self, db: Session, notifier: ChangeNotifier = change_notifier):
        self.db = db
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_tasks(self, viewer: Profile | None = None) -> list[Task]:
        """
        Tasks visible to ``viewer``, newest first.

        Users see only tasks assigned to them that a Director has approved;
        Admins and Directors see everything, including unapproved tasks.
        """
        logger.info(f"list_tasks viewer={getattr(viewer, 'id', None)} role={getattr(viewer, 'role', None)}")

        query = self.db.query(Task)
        if viewer is None or viewer.role == UserRole.USER:
            viewer_id = viewer.id if viewer is not None else None
            query = query.filter(Task.assigned_to == viewer_id, Task.director_approved == True)

        try:
            tasks = query.order_by(Task.created_at.desc(), Task.id.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"list_tasks failed: {e}")
            raise PersistenceError(friendly_error(str(e)))

        logger.debug(f"list_tasks returned {len(tasks)} rows")
        return tasks

    def get(self, task_id: int) -> Task:
        task = self.db.query(Task).filter(Task.id == task_id).first()
        if not task:
            raise NotFoundError("Task not found")
        return task

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, fields: dict, director_approved: bool) -> Task:
        logger.info(
            f"insert task title={fields.get('title')!r} assigned_to={fields.get('assigned_to')} "
            f"created_by={fields.get('created_by')} director_approved={director_approved}"
        )
        task = Task(**fields, director_approved=director_approved)
        self.db.add(task)
        self._commit("insert")
        self.db.refresh(task)
        logger.info(f"insert task success id={task.id}")
        return task

    def update_fields(self, task_id: int, fields: dict) -> Task:
        logger.info(f"update_fields task={task_id} fields={sorted(fields)}")
        task = self.get(task_id)
        for key, value in fields.items():
            setattr(task, key, value)
        task.updated_at = utc_now()
        self._commit("update_fields")
        self.db.refresh(task)
        return task

    def transition_status(self, task_id: int, expected_status: str, fields: dict, commit: bool = True) -> bool:
        """
        Conditionally update a task that is still in ``expected_status``.

        Issued as a single UPDATE ... WHERE status = :expected so two racing
        callers cannot both move the same task. Returns False when the row
        was not in the expected state (or no longer exists).
        """
        logger.info(f"transition_status task={task_id} from={expected_status} to={fields.get('status')}")
        values = dict(fields)
        values["updated_at"] = utc_now()
        updated = (
            self.db.query(Task)
            .filter(Task.id == task_id, Task.status == expected_status)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            return False
        if commit:
            self._commit("transition_status")
        return True

    def delete_by_id(self, task_id: int) -> None:
        logger.info(f"delete_by_id task={task_id}")
        deleted = self.db.query(Task).filter(Task.id == task_id).delete(synchronize_session=False)
        if deleted == 0:
            raise NotFoundError("Task not found")
        self._commit("delete_by_id")

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    def subscribe_to_changes(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a no-payload change callback. Returns an unsubscribe function."""
        return self.notifier.subscribe(TASKS, callback)

    def _commit(self, operation: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"{operation} failed: {e}")
            raise PersistenceError(friendly_error(str(e)))
        self.notifier.publish(TASKS)

    def commit(self, operation: str = "commit"):
        """Commit work staged by the caller on the shared session."""
        self._commit(operation)
