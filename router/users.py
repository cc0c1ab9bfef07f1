"""
Users Router
============
Profile directory, account administration, token gifts, the leaderboard and
each user's points history.

The directory and leaderboard are served from TTL caches; any committed
change to profiles invalidates both. Rows written through this router are
merged into the directory right away so the next reload cannot resurrect an
older copy.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Path, Query
from sqlalchemy.orm import Session
from typing import List

from models import Profile
from schemas import (
    ProfileOut,
    ProfileUpdate,
    LeaderboardEntry,
    UserCreate,
    UserCreatedOut,
    GiveTokensRequest,
    TokenBalanceOut,
    PointsLogOut,
)
from db import SessionLocal, get_db
from dependencies import get_current_profile, allow_staff, unwrap
from services.account_admin import AccountAdministration
from services.cache import CachedCollection
from services.points_ledger import PointsLedger
from services.realtime import PROFILES, ChangeNotifier, change_notifier

import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


# ============================================================================
# PROFILE DIRECTORY (cached)
# ============================================================================

class ProfileDirectory:
    """Cached profile list and leaderboard, invalidated by profile changes."""

    def __init__(self, session_factory, notifier: ChangeNotifier = change_notifier):
        self.session_factory = session_factory
        self.profiles = CachedCollection("profiles", self._load_profiles)
        self.leaderboard = CachedCollection("leaderboard", self._load_leaderboard)
        self._unsubscribe = notifier.subscribe(PROFILES, self.invalidate)

    def _load_profiles(self) -> list:
        db = self.session_factory()
        try:
            rows = db.query(Profile).order_by(Profile.created_at.desc(), Profile.id.desc()).all()
            return [ProfileOut.model_validate(p) for p in rows]
        finally:
            db.close()

    def _load_leaderboard(self) -> list:
        db = self.session_factory()
        try:
            rows = unwrap(AccountAdministration(db).leaderboard())
            return [LeaderboardEntry.model_validate(p) for p in rows]
        finally:
            db.close()

    def invalidate(self):
        self.profiles.invalidate()
        self.leaderboard.invalidate()

    def apply_profile(self, profile: Profile) -> ProfileOut:
        row = ProfileOut.model_validate(profile)
        self.profiles.apply(row)
        return row

    def forget_profile(self, user_id: int):
        self.profiles.remove(user_id)
        self.leaderboard.remove(user_id)


directory = ProfileDirectory(SessionLocal)


@router.get("", response_model=List[ProfileOut], dependencies=[Depends(allow_staff)])
def list_users(refresh: bool = Query(False, description="Bypass the cache")):
    return directory.profiles.get(force=refresh)


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
def leaderboard(
    refresh: bool = Query(False, description="Bypass the cache"),
    profile: Profile = Depends(get_current_profile)
):
    """Users with tokens, highest balance first"""
    return directory.leaderboard.get(force=refresh)


# ============================================================================
# ACCOUNT ADMINISTRATION
# ============================================================================

@router.post("", response_model=UserCreatedOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(allow_staff)])
def create_user(
    body: UserCreate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """
    Add a user with a temporary password.

    Admins may only add Users; Directors may add Admins or Users.
    """
    result = AccountAdministration(db).create_user(
        profile,
        email=body.email,
        temp_password=body.temp_password,
        full_name=body.full_name,
        role=body.role,
    )
    return unwrap(result)


@router.delete("/{user_id}", dependencies=[Depends(allow_staff)])
def delete_user(
    user_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    deleted_id = unwrap(AccountAdministration(db).delete_user(profile, user_id))
    directory.forget_profile(deleted_id)
    return {"success": True, "deleted_user_id": deleted_id}


@router.post("/{user_id}/tokens", response_model=TokenBalanceOut, dependencies=[Depends(allow_staff)])
def give_tokens(
    body: GiveTokensRequest,
    user_id: int = Path(...),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    new_total = unwrap(AccountAdministration(db).give_tokens(profile, user_id, body.amount, body.reason))
    target = db.query(Profile).filter(Profile.id == user_id).first()
    if target:
        db.refresh(target)
        directory.apply_profile(target)
    return TokenBalanceOut(user_id=user_id, total_tokens=new_total)


@router.get("/{user_id}/points-log", response_model=List[PointsLogOut])
def points_log(
    user_id: int = Path(...),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    """Award history. Users may only read their own."""
    if not profile.is_staff and profile.id != user_id:
        raise HTTPException(status_code=403, detail="Operation not permitted")
    return PointsLedger(db).history(user_id, limit=limit)


# ============================================================================
# SELF SERVICE
# ============================================================================

@router.patch("/me/profile", response_model=ProfileOut)
def update_my_profile(
    body: ProfileUpdate,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile)
):
    changes = body.model_dump(exclude_unset=True)
    updated = unwrap(AccountAdministration(db).update_own_profile(profile, changes))
    return directory.apply_profile(updated)
