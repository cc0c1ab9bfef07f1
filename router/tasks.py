"""
Tasks Router
============
Thin HTTP layer over the task lifecycle engine. Staff-only routes are gated
with RoleChecker for a fast 403; the engine re-checks every rule.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Path
from sqlalchemy.orm import Session
from typing import List, Optional

from models import Profile
from schemas import (
    TaskCreate,
    TaskUpdate,
    TaskSubmit,
    TaskOut,
    TaskDeletedOut,
    DeadlineExtension,
    FeedbackRequest,
)
from db import get_db
from dependencies import get_current_profile, allow_staff, allow_director, unwrap
from services.errors import ErrorKind
from services.task_lifecycle import TaskLifecycleEngine
from services.task_repository import TaskRepository

import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.get("", response_model=List[TaskOut])
def list_tasks(
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """
    Tasks visible to the caller, newest first.

    Users only see their own tasks once a Director has approved them.
    """
    return TaskRepository(db).list_tasks(profile)


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(allow_staff)])
def create_task(
    task: TaskCreate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    result = TaskLifecycleEngine(db).create_task(
        profile,
        title=task.title,
        description=task.description,
        assigned_to=task.assigned_to,
        deadline=task.deadline,
        tokens=task.tokens,
    )
    return unwrap(result)


@router.post("/{task_id}/director-approve", response_model=TaskOut, dependencies=[Depends(allow_director)])
def director_approve(
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(TaskLifecycleEngine(db).director_approve(profile, task_id))


@router.post("/{task_id}/submit", response_model=TaskOut)
def submit_task(
    task_id: int = Path(...),
    body: Optional[TaskSubmit] = None,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """Assignee marks the task done; it moves to Under Review."""
    return unwrap(TaskLifecycleEngine(db).mark_done(profile, task_id, body.submission_note if body else None))


@router.post(
    "/{task_id}/approve",
    response_model=TaskOut,
    dependencies=[Depends(allow_staff)],
    responses={500: {"description": "Task completed but the token payout failed (error_code PAYOUT_FAILED)"}},
)
def approve_task(
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """
    Approve a task under review and award its tokens.

    A PAYOUT_FAILED error means the task IS completed and the award is on the
    ledger, but the balance was not incremented. Do not approve again.
    """
    result = TaskLifecycleEngine(db).approve(profile, task_id)
    if result.error is not None and result.error.kind == ErrorKind.PARTIAL_FAILURE:
        logger.error(f"Payout failed for task {task_id}: {result.error.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": result.error.message,
                "error_code": "PAYOUT_FAILED",
                "task": TaskOut.model_validate(result.value).model_dump() if result.value else None,
            },
        )
    return unwrap(result)


@router.post("/{task_id}/reject", response_model=TaskOut, dependencies=[Depends(allow_staff)])
def reject_task(
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(TaskLifecycleEngine(db).reject(profile, task_id))


@router.post("/{task_id}/reassign", response_model=TaskOut, dependencies=[Depends(allow_staff)])
def reassign_task(
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(TaskLifecycleEngine(db).reassign(profile, task_id))


@router.post("/{task_id}/extend-deadline", response_model=TaskOut, dependencies=[Depends(allow_staff)])
def extend_deadline(
    body: DeadlineExtension,
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(TaskLifecycleEngine(db).extend_deadline(profile, task_id, body.new_deadline))


@router.post("/{task_id}/feedback", response_model=TaskOut, dependencies=[Depends(allow_staff)])
def give_feedback(
    body: FeedbackRequest,
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return unwrap(TaskLifecycleEngine(db).give_feedback(profile, task_id, body.feedback))


@router.put("/{task_id}", response_model=TaskOut, dependencies=[Depends(allow_staff)])
def edit_task(
    body: TaskUpdate,
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """Edit a pending task. Admin edits send it back for Director approval."""
    changes = body.model_dump(exclude_unset=True)
    return unwrap(TaskLifecycleEngine(db).edit_task(profile, task_id, changes))


@router.delete("/{task_id}", response_model=TaskDeletedOut, dependencies=[Depends(allow_staff)])
def delete_task(
    task_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    deleted = unwrap(TaskLifecycleEngine(db).delete_task(profile, task_id))
    return TaskDeletedOut(id=deleted.id, title=deleted.title)
