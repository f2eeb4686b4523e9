"""Bearer-token identity for API routes.

Accounts and logins live with the identity provider; this service only
verifies the HS256 tokens it issues and loads the caller's row.
"""

import jwt
from datetime import datetime, timedelta, timezone
from fastapi import APIRouter, Depends, HTTPException, Request
from app.db.database import get_db
from app.config import settings

router = APIRouter(prefix="/api/auth", tags=["auth"])

JWT_SECRET = settings.jwt_secret
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72

ROLES = ("student", "teacher", "admin")
STAFF_ROLES = ("teacher", "admin")


def create_token(user_id: int, email: str, role: str = "student") -> str:
    """Issue a token in the identity provider's format (tooling and tests)."""
    issued = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "iat": issued,
            "exp": issued + timedelta(hours=JWT_EXPIRY_HOURS),
        },
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return token.strip()


async def get_current_user(request: Request, db) -> dict:
    payload = decode_token(_bearer_token(request))
    try:
        user_id = int(payload["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")

    cursor = await db.execute("SELECT id, name, email, role FROM users WHERE id = ?", (user_id,))
    row = await cursor.fetchone()
    if row is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    user = dict(row)
    user["role"] = user["role"] or "student"
    return user


def require_role(*allowed_roles: str):
    """Build a checker for routes restricted to some roles.

        user = await require_role("teacher", "admin")(request, db)
    """
    async def _check(request: Request, db) -> dict:
        user = await get_current_user(request, db)
        if user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required role: {', '.join(allowed_roles)}",
            )
        return user
    return _check


async def require_student_owner(request: Request, student_id: int, db) -> dict:
    """Students read only their own data; staff read anyone's."""
    user = await get_current_user(request, db)
    if user["role"] not in STAFF_ROLES and user["id"] != student_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return user


@router.get("/me")
async def me(request: Request, db=Depends(get_db)):
    return await get_current_user(request, db)
