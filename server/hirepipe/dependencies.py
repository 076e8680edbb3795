import secrets
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_settings
from .core.models.auth import CurrentUser, UserRole
from .core.services.auth import decode_token
from .core.services.email import EmailService
from .core.services.rate_limiter import CommandRateLimiter, get_rate_limit_client
from .core.services.stripe_service import PaymentGateway, StripeService
from .database import get_connection
from .services.notifications import NotificationSender

security = HTTPBearer()
cron_security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """Dependency to get the current authenticated user."""
    payload = decode_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = UUID(payload.sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    async with get_connection() as conn:
        user_row = await conn.fetchrow(
            """SELECT u.id, u.email, u.role, u.is_active,
                      e.id AS employer_id, c.id AS candidate_id
               FROM users u
               LEFT JOIN employers e ON e.user_id = u.id
               LEFT JOIN candidates c ON c.user_id = u.id
               WHERE u.id = $1""",
            user_id
        )

    if not user_row or not user_row["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive"
        )

    return CurrentUser(
        id=user_row["id"],
        email=user_row["email"],
        role=user_row["role"],
        employer_id=user_row["employer_id"],
        candidate_id=user_row["candidate_id"],
    )


def require_roles(*roles: UserRole):
    """Dependency factory for role-based access control."""
    async def role_checker(current_user: CurrentUser = Depends(get_current_user)):
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(roles)}"
            )
        return current_user
    return role_checker


# Convenience dependencies
require_admin = require_roles("admin")
require_employer = require_roles("employer")
require_candidate = require_roles("candidate")
require_admin_or_employer = require_roles("admin", "employer")


def get_notifier() -> NotificationSender:
    return EmailService()


def get_payment_gateway() -> PaymentGateway:
    return StripeService()


def get_rate_limiter() -> CommandRateLimiter:
    return CommandRateLimiter(
        get_rate_limit_client(),
        get_settings().command_rate_limit_per_minute,
    )


def rate_limited(command: str):
    """Dependency factory: authenticate, then count the call against the actor's budget."""
    async def checker(
        current_user: CurrentUser = Depends(get_current_user),
        limiter: CommandRateLimiter = Depends(get_rate_limiter),
    ) -> CurrentUser:
        await limiter.check_and_record(current_user.id, command)
        return current_user
    return checker


async def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(cron_security)
) -> None:
    """Shared-secret bearer check for scheduler-invoked endpoints."""
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron endpoints are disabled: CRON_SECRET is not configured",
        )
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
