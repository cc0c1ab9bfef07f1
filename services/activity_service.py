"""
Activity Service
================
Produces the audit / notification feed consumed by the dashboard.

Writes are best-effort: the primary mutation has already been committed when
an entry is logged, so a failed activity write is logged and reported as
``None`` but never raised to the caller.
"""

from datetime import datetime
from typing import Callable, Dict, Optional, Tuple
import logging

from sqlalchemy.orm import Session, joinedload

from models import ActivityLog, ActivityType, Profile
from services.errors import InvalidInputError, NotFoundError, NotPermittedError
from services.realtime import ACTIVITY, ChangeNotifier, change_notifier

logger = logging.getLogger(__name__)

MAX_CUSTOM_MESSAGE_LENGTH = 1000


# ============================================================================
# MESSAGE + PRESENTATION TABLES
# ============================================================================

# (actor_name, target_name, task_title, detail) -> message
MessageBuilder = Callable[[str, Optional[str], Optional[str], Optional[str]], str]

MESSAGE_BUILDERS: Dict[ActivityType, MessageBuilder] = {
    ActivityType.USER_ADDED: lambda a, t, title, d: f"{a} added {t} as {d}" if d else f"{a} added {t} to the team",
    ActivityType.TASK_CREATED: lambda a, t, title, d: f'{a} created task "{title}" for {t}',
    ActivityType.TASK_ASSIGNED: lambda a, t, title, d: f'{a} assigned task "{title}" to {t}',
    ActivityType.TASK_COMPLETED: lambda a, t, title, d: f'{t} completed task "{title}"',
    ActivityType.TASK_MARKED_DONE: lambda a, t, title, d: f'{a} submitted task "{title}" for review',
    ActivityType.TASK_APPROVED: lambda a, t, title, d: f'{a} approved task "{title}" for {t}' + (f" ({d})" if d else ""),
    ActivityType.TASK_REJECTED: lambda a, t, title, d: f'{a} rejected task "{title}" from {t}',
    ActivityType.TASK_REASSIGNED: lambda a, t, title, d: f'{a} sent task "{title}" back to {t}',
    ActivityType.DIRECTOR_APPROVED_TASK: lambda a, t, title, d: f'{a} approved task "{title}" for users',
    ActivityType.CUSTOM_MESSAGE: lambda a, t, title, d: d or "",
    ActivityType.TASK_DELETED: lambda a, t, title, d: f'{a} deleted task "{title}"',
    ActivityType.DEADLINE_EXTENDED: lambda a, t, title, d: f'{a} extended the deadline of "{title}" to {d}',
    ActivityType.PASSWORD_RESET_REQUEST: lambda a, t, title, d: f"{a} reset password for {t}",
    ActivityType.TOKENS_GIVEN: lambda a, t, title, d: f"{a} gave {d} to {t}",
}

# (icon, colour classes) used by feed and toast renderers
ACTIVITY_STYLES: Dict[ActivityType, Tuple[str, str]] = {
    ActivityType.USER_ADDED: ("user-plus", "bg-blue-500/20 text-blue-500"),
    ActivityType.TASK_CREATED: ("clipboard-list", "bg-purple-500/20 text-purple-500"),
    ActivityType.TASK_ASSIGNED: ("clipboard-list", "bg-indigo-500/20 text-indigo-500"),
    ActivityType.TASK_COMPLETED: ("check-circle", "bg-emerald-500/20 text-emerald-500"),
    ActivityType.TASK_MARKED_DONE: ("send", "bg-amber-500/20 text-amber-500"),
    ActivityType.TASK_APPROVED: ("check-circle", "bg-green-500/20 text-green-500"),
    ActivityType.TASK_REJECTED: ("x-circle", "bg-red-500/20 text-red-500"),
    ActivityType.TASK_REASSIGNED: ("rotate-ccw", "bg-yellow-500/20 text-yellow-500"),
    ActivityType.DIRECTOR_APPROVED_TASK: ("shield-check", "bg-orange-500/20 text-orange-500"),
    ActivityType.CUSTOM_MESSAGE: ("message-square", "bg-cyan-500/20 text-cyan-500"),
    ActivityType.TASK_DELETED: ("trash-2", "bg-rose-500/20 text-rose-500"),
    ActivityType.DEADLINE_EXTENDED: ("clock", "bg-amber-500/20 text-amber-500"),
    ActivityType.PASSWORD_RESET_REQUEST: ("key-round", "bg-yellow-500/20 text-yellow-500"),
    ActivityType.TOKENS_GIVEN: ("gift", "bg-emerald-500/20 text-emerald-500"),
}


def _assert_exhaustive(table: dict, name: str):
    missing = set(ActivityType) - set(table)
    if missing:
        raise RuntimeError(f"{name} has no entry for: {sorted(m.value for m in missing)}")


# Adding an ActivityType without updating every table fails at import
_assert_exhaustive(MESSAGE_BUILDERS, "MESSAGE_BUILDERS")
_assert_exhaustive(ACTIVITY_STYLES, "ACTIVITY_STYLES")


def render_message(
    action: ActivityType,
    actor_name: str,
    target_name: Optional[str] = None,
    task_title: Optional[str] = None,
    detail: Optional[str] = None,
) -> str:
    return MESSAGE_BUILDERS[ActivityType(action)](actor_name, target_name, task_title, detail)


def activity_style(action: str) -> Tuple[str, str]:
    return ACTIVITY_STYLES[ActivityType(action)]


# ============================================================================
# WRITE
# ============================================================================

def log_activity(
    db: Session,
    actor_id: int,
    action: ActivityType,
    message: str,
    target_user_id: int | None = None,
    task_id: int | None = None,
    notifier: ChangeNotifier = change_notifier,
) -> Optional[ActivityLog]:
    """
    Append one activity entry (best-effort, non-blocking for the caller).

    Returns the stored entry, or None if the write failed. Failures are
    logged with a traceback and the session is rolled back.
    """
    try:
        entry = ActivityLog(
            actor_id=actor_id,
            action_type=ActivityType(action).value,
            target_user_id=target_user_id,
            task_id=task_id,
            message=message,
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except Exception:
        db.rollback()
        logger.exception(f"Activity write failed: action={action} actor={actor_id} task={task_id}")
        return None

    logger.info(f"Activity logged: {entry.action_type} by {actor_id} (task={task_id})")
    notifier.publish(ACTIVITY)
    return entry


def post_custom_message(
    db: Session,
    actor: Profile,
    message: str,
    notifier: ChangeNotifier = change_notifier,
) -> Optional[ActivityLog]:
    text = (message or "").strip()
    if not text:
        raise InvalidInputError("Message cannot be empty")
    if len(text) > MAX_CUSTOM_MESSAGE_LENGTH:
        raise InvalidInputError(f"Message cannot exceed {MAX_CUSTOM_MESSAGE_LENGTH} characters")

    return log_activity(
        db,
        actor_id=actor.id,
        action=ActivityType.CUSTOM_MESSAGE,
        message=render_message(ActivityType.CUSTOM_MESSAGE, actor.full_name, detail=text),
        notifier=notifier,
    )


def delete_activity(
    db: Session,
    activity_id: int,
    actor: Profile,
    notifier: ChangeNotifier = change_notifier,
) -> bool:
    """Delete one entry. Staff may delete any entry, others only their own."""
    entry = db.query(ActivityLog).filter(ActivityLog.id == activity_id).first()
    if not entry:
        raise NotFoundError("Activity entry not found")
    if not actor.is_staff and entry.actor_id != actor.id:
        raise NotPermittedError("You can only delete your own activity entries")

    db.delete(entry)
    db.commit()
    logger.info(f"Activity {activity_id} deleted by {actor.id}")
    notifier.publish(ACTIVITY)
    return True


# ============================================================================
# READ (feed)
# ============================================================================

def fetch_activities(
    db: Session,
    limit: int = 50,
    unread_since: datetime | None = None,
) -> list[ActivityLog]:
    """Recent entries, newest first, with actor / target profiles loaded."""
    query = db.query(ActivityLog).options(
        joinedload(ActivityLog.actor),
        joinedload(ActivityLog.target_user),
    )
    if unread_since is not None:
        query = query.filter(ActivityLog.created_at > unread_since)

    return query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()


def unread_count(db: Session, since: datetime | None) -> int:
    query = db.query(ActivityLog)
    if since is not None:
        query = query.filter(ActivityLog.created_at > since)
    return query.count()
