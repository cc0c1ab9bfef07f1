from fastapi import APIRouter, FastAPI, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
import os

from sqlalchemy.orm import Session
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from dotenv import load_dotenv
import logging

# Database imports
from db import get_db, engine, SessionLocal

# Model imports
from models import User, Base, TokenBlacklist

# Schema imports
from schemas import TokenExtended, LogoutResponse

# Auth imports
from auth import (
    verify_password,
    create_session_token,
    decode_access_token,
    token_expiry,
)

# Dependency imports
from dependencies import (
    get_current_user,
    oauth2_scheme,
    blacklist_cache,
    _cleanup_expired_cache,
)
from dependencies import router as dependencies_router

# Router imports
from router import tasks, users, auth_password, activity, realtime

from pytz import timezone as pytz_timezone

load_dotenv()

SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "UTC")
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "1").lower() not in ("0", "false", "no")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")

scheduler_tz = pytz_timezone(SCHEDULER_TIMEZONE)

# Initialize scheduler
scheduler = BackgroundScheduler(timezone=scheduler_tz)
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("scheduler")


def cleanup_expired_blacklist():
    """
    Remove expired tokens from blacklist table and memory cache.

    Runs daily at 2:30 AM (scheduler timezone).
    """
    db = SessionLocal()
    try:
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        deleted = db.query(TokenBlacklist).filter(
            TokenBlacklist.token_exp < now
        ).delete(synchronize_session=False)
        db.commit()

        _cleanup_expired_cache()

        if deleted:
            logger.info(f"✅ Cleanup complete: Removed {deleted} expired tokens from database and cache")
        else:
            logger.info("✅ Token blacklist cleanup: No expired tokens")

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Cleanup error: {str(e)}")

    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    if not ENABLE_SCHEDULER:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=0)")
        yield
        return

    scheduler.add_job(
        cleanup_expired_blacklist,
        CronTrigger(hour=2, minute=30, timezone=scheduler_tz),
        id='cleanup_token_blacklist',
        name='Clean up expired token blacklist entries',
        replace_existing=True
    )
    scheduler.start()
    try:
        yield
    finally:
        # shutdown
        scheduler.shutdown()


Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Token Task Tracker API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter()


@router.post("/token", response_model=TokenExtended)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    # Authenticate by email and return JWT token.
    email = form_data.username.strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    if user.profile is None:
        logger.warning(f"Login for {email} without a profile")
        raise HTTPException(status_code=403, detail="Account setup is incomplete. Contact an administrator.")

    access_token, expires_in = create_session_token(user.email, user.profile.role)
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": expires_in,
        "email": user.email,
        "role": user.profile.role,
        "is_temporary_password": user.profile.is_temporary_password,
    }


@app.post("/logout", response_model=LogoutResponse)
def logout(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Logout user by blacklisting their current JWT token.
    """
    payload = decode_access_token(token)
    jti = payload.get("jti")

    if not jti:
        logger.warning(f"Logout attempt without JTI: {current_user.email}")
        raise HTTPException(
            status_code=400,
            detail="Token does not contain required tracking ID"
        )

    existing = db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
    if existing:
        logger.info(f"User {current_user.email} attempted logout but already logged out")
        return LogoutResponse(message="Already logged out", success=True, email=current_user.email)

    token_exp = token_expiry(payload)

    try:
        db.add(TokenBlacklist(
            jti=jti,
            user_id=current_user.id,
            email=current_user.email,
            token_exp=token_exp,
            reason="user_logout"
        ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Logout failed for {current_user.email}: {str(e)}")
        raise HTTPException(status_code=500, detail="Logout failed")

    # Immediately add to cache
    blacklist_cache[jti] = token_exp

    logger.info(f"✅ User {current_user.email} logged out successfully")
    return LogoutResponse(message="Logged out successfully", success=True, email=current_user.email)


# Routers
app.include_router(router)
app.include_router(dependencies_router)
app.include_router(tasks.router)
app.include_router(users.router)
app.include_router(auth_password.router)
app.include_router(activity.router)
app.include_router(realtime.router)
