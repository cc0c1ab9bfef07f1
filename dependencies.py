from fastapi.security import OAuth2PasswordBearer
from fastapi import Depends, HTTPException, status, APIRouter
from sqlalchemy.orm import Session, joinedload
from db import get_db
from models import Profile, User, TokenBlacklist, UserRole
from auth import decode_access_token
from schemas import ProfileOut
from services.errors import ErrorKind, OperationResult
from datetime import datetime, timezone
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

# In-memory cache for blacklisted tokens
# Dictionary: {jti: expiry_datetime (naive UTC)}
blacklist_cache = {}
CACHE_MAX_SIZE = 10000  # Maximum tokens to cache in memory


def _naive_utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _cleanup_expired_cache():
    """Remove expired tokens from memory cache"""
    now = _naive_utc_now()
    expired_keys = [jti for jti, exp_time in blacklist_cache.items() if exp_time < now]
    for key in expired_keys:
        del blacklist_cache[key]

    if expired_keys:
        logger.debug(f"Cache cleanup: Removed {len(expired_keys)} expired tokens")


def is_token_blacklisted_cached(jti: str, db: Session) -> bool:
    """
    Check if token is blacklisted with in-memory caching.

    1. Check memory cache first
    2. If not in cache, query database
    3. Cache a positive result until the token would have expired anyway
    """
    if jti in blacklist_cache:
        if blacklist_cache[jti] > _naive_utc_now():
            logger.debug(f"Cache HIT: Token {jti[:8]}... is blacklisted")
            return True
        del blacklist_cache[jti]
        return False

    blacklisted = db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
    if blacklisted:
        blacklist_cache[jti] = blacklisted.token_exp
        if len(blacklist_cache) > CACHE_MAX_SIZE:
            _cleanup_expired_cache()
        logger.debug(f"Cache MISS->STORE: Token {jti[:8]}... cached")
        return True

    return False


def resolve_user_from_token(token: str, db: Session) -> User:
    """
    Validate a bearer token and return its identity.

    Shared by the HTTP dependency and the websocket endpoint (which receives
    the token as a query parameter).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    # decode_access_token raises 401 itself for expired / malformed tokens
    payload = decode_access_token(token)
    email: str = payload.get("sub")
    role: str = payload.get("role")
    jti: str = payload.get("jti")

    if email is None or role is None:
        logger.warning("Invalid token payload: missing sub or role")
        raise credentials_exception

    if jti and is_token_blacklisted_cached(jti, db):
        logger.warning(f"User {email} attempted access with blacklisted token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked. Please login again.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.query(User).options(joinedload(User.profile)).filter(User.email == email).first()
    if user is None:
        logger.warning(f"User not found: {email}")
        raise credentials_exception

    # A deleted-then-recreated account must not reuse an old token's role
    if user.profile is not None and user.profile.role != role:
        logger.warning(f"Role mismatch for user {email}: token={role}, db={user.profile.role}")
        raise credentials_exception

    logger.debug(f"✅ Authentication successful: {email} ({role})")
    return user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    return resolve_user_from_token(token, db)


def get_current_profile(current_user: User = Depends(get_current_user)) -> Profile:
    """Get the profile of the authenticated identity"""
    if current_user.profile is None:
        logger.warning(f"Profile not found for user {current_user.email}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )
    return current_user.profile


class RoleChecker:
    def __init__(self, allowed_roles):
        self.allowed_roles = {UserRole(r).value for r in allowed_roles}

    def __call__(self, profile: Profile = Depends(get_current_profile)):
        if profile.role not in self.allowed_roles:
            logger.warning(f"Unauthorized access attempt: {profile.email} tried to access role={self.allowed_roles}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Operation not permitted",
            )
        return True


allow_staff = RoleChecker([UserRole.ADMIN, UserRole.DIRECTOR])
allow_director = RoleChecker([UserRole.DIRECTOR])


# ============================================================================
# OPERATION RESULT -> HTTP
# ============================================================================

ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.PARTIAL_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

ERROR_CODES = {
    ErrorKind.VALIDATION: "VALIDATION_ERROR",
    ErrorKind.AUTHORIZATION: "NOT_PERMITTED",
    ErrorKind.NOT_FOUND: "NOT_FOUND",
    ErrorKind.PERSISTENCE: "TEMPORARY_FAILURE",
    ErrorKind.PARTIAL_FAILURE: "PAYOUT_FAILED",
}


def unwrap(result: OperationResult):
    """Return the operation's value or raise the matching HTTPException."""
    if result.ok:
        return result.value

    error = result.error
    raise HTTPException(
        status_code=ERROR_STATUS[error.kind],
        detail={"error": error.message, "error_code": ERROR_CODES[error.kind]},
    )

router = APIRouter()


@router.get("/users/me", response_model=ProfileOut)
def read_users_me(profile: Profile = Depends(get_current_profile)):
    """Get current user's profile"""
    logger.debug(f"Profile requested by {profile.email}")
    return profile


@router.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.
    Returns cache and authentication statistics.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "cache": {
            "size": len(blacklist_cache),
            "max_size": CACHE_MAX_SIZE,
            "utilization_percent": round((len(blacklist_cache) / CACHE_MAX_SIZE) * 100, 2) if CACHE_MAX_SIZE > 0 else 0
        }
    }
