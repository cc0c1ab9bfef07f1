"""
Activity Feed Router
====================
Reverse-chronological feed of lifecycle events, unread counts, custom
announcements and entry removal.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Path, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime

from models import ActivityLog, Profile
from schemas import ActivityOut, UnreadCountOut, CustomMessageRequest
from db import get_db
from dependencies import get_current_profile
from services.errors import InvalidInputError, NotFoundError, NotPermittedError
from services.activity_service import (
    activity_style,
    delete_activity,
    fetch_activities,
    post_custom_message,
    unread_count,
)
from utils import ensure_utc_naive

import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/activity", tags=["Activity"])


def _to_out(entry: ActivityLog) -> ActivityOut:
    icon, color = activity_style(entry.action_type)
    return ActivityOut(
        id=entry.id,
        actor_id=entry.actor_id,
        actor_name=entry.actor.full_name if entry.actor else None,
        action_type=entry.action_type,
        target_user_id=entry.target_user_id,
        target_name=entry.target_user.full_name if entry.target_user else None,
        task_id=entry.task_id,
        message=entry.message,
        icon=icon,
        color=color,
        created_at=entry.created_at,
    )


@router.get("", response_model=List[ActivityOut])
def get_feed(
    limit: int = Query(50, ge=1, le=200),
    unread_since: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    since = ensure_utc_naive(unread_since)
    return [_to_out(e) for e in fetch_activities(db, limit=limit, unread_since=since)]


@router.get("/unread-count", response_model=UnreadCountOut)
def get_unread_count(
    since: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    return UnreadCountOut(count=unread_count(db, ensure_utc_naive(since)))


@router.post("/messages", response_model=ActivityOut, status_code=status.HTTP_201_CREATED)
def post_message(
    body: CustomMessageRequest,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """Post an announcement to the feed"""
    try:
        entry = post_custom_message(db, profile, body.message)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=e.message)

    if entry is None:
        raise HTTPException(status_code=503, detail="Temporary server issue. Please try again in a moment.")
    return _to_out(entry)


@router.delete("/{activity_id}")
def remove_activity(
    activity_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    try:
        delete_activity(db, activity_id, profile)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except NotPermittedError as e:
        raise HTTPException(status_code=403, detail=e.message)

    return {"success": True, "deleted_id": activity_id}
