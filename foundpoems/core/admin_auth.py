"""
Admin authentication for session and stream management.

Supports hybrid authentication:
- Bearer JWT (preferred): HS256 token signed with ADMIN_JWT_SECRET whose
  `email` claim is in the ADMIN_EMAILS allow-list
- Legacy X-Admin-Key: Shared secret (feature-flagged)

Auth modes (ADMIN_AUTH_MODE):
- "jwt": Only bearer JWT allowed (production default)
- "legacy": Only X-Admin-Key allowed (testing/migration)
- "hybrid": Both allowed

In prod (ENVIRONMENT=prod), legacy keys are blocked unless the mode is
explicitly "legacy".
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Literal, Optional

import jwt
from fastapi import HTTPException, Request

from foundpoems.core.config import settings

logger = logging.getLogger("foundpoems")


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # email or "legacy:<hash>"
    actor_email: Optional[str] = None
    auth_mechanism: Literal["jwt", "x_admin_key"] = "jwt"


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def verify_admin_jwt(token: str) -> Optional[str]:
    """Verify the bearer credential and return its email claim.

    Raises jwt.PyJWTError on an invalid signature or expired token.
    """
    claims = jwt.decode(
        token,
        settings.ADMIN_JWT_SECRET,
        algorithms=["HS256"],
        options={"verify_aud": False},
    )
    email = claims.get("email")
    return email.strip().lower() if isinstance(email, str) else None


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """
    Verify legacy X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"legacy:{key_hash}", auth_mechanism="x_admin_key")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.post("/api/sessions")
        def create(actor: AdminActor = Depends(require_admin)):
            ...
    """
    mode = settings.ADMIN_AUTH_MODE.lower()
    env = settings.ENVIRONMENT.lower()
    has_jwt = bool(settings.ADMIN_JWT_SECRET and settings.admin_emails)
    has_legacy = bool(settings.ADMIN_KEY)

    if not has_jwt and not has_legacy:
        raise HTTPException(
            status_code=503,
            detail={"error": "Admin auth not configured", "code": "admin_auth_unconfigured"},
        )

    if mode in {"jwt", "hybrid"} and has_jwt:
        token = _bearer_token(request)
        if token:
            try:
                email = verify_admin_jwt(token)
            except jwt.PyJWTError as e:
                logger.info("admin.jwt_invalid", extra={"error": str(e)})
                raise HTTPException(
                    status_code=401,
                    detail={"error": "Invalid token", "code": "admin_unauthorized"},
                )
            if not email or email not in settings.admin_emails:
                raise HTTPException(
                    status_code=403,
                    detail={"error": "Forbidden", "code": "forbidden"},
                )
            return AdminActor(actor_id=email, actor_email=email)

    if mode == "legacy" or (mode == "hybrid" and env != "prod"):
        actor = verify_legacy_key(request)
        if actor:
            return actor

    raise HTTPException(
        status_code=401,
        detail={"error": "Missing token", "code": "admin_unauthorized"},
    )
