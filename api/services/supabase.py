"""
Supabase client configuration and request authentication.

- get_service_client: service-role client (bypasses RLS) for the pipeline
- get_current_user: caller identity from a bearer token Supabase Auth accepts
- verify_admin_access: verified caller on the ADMIN_ALLOWED_EMAILS allowlist

Recommendation reads and writes run on the service client, so the user id
must come from a token Supabase Auth has verified, never from the raw claims.
"""
from __future__ import annotations

import os
import json
import base64
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Optional

from supabase import create_client, Client
from fastapi import Depends, HTTPException, Header

logger = logging.getLogger(__name__)


def decode_jwt_payload(token: str) -> dict:
    """Decode JWT payload without verification. Only used to reject malformed tokens early."""
    try:
        parts = token.split(".")
        if len(parts) != 3:
            raise ValueError("Invalid JWT format")

        payload = parts[1]
        padding = 4 - len(payload) % 4
        if padding != 4:
            payload += "=" * padding

        return json.loads(base64.urlsafe_b64decode(payload))
    except Exception as e:
        raise ValueError(f"Failed to decode JWT: {e}")


def _bearer_token(authorization: Optional[str]) -> str:
    """Well-formed bearer token from an Authorization header, or 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    token = authorization.replace("Bearer ", "")
    try:
        claims = decode_jwt_payload(token)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token: no user ID")
    return token


@dataclass
class AuthenticatedUser:
    """A caller whose token Supabase Auth has verified."""
    user_id: str
    email: Optional[str] = None


@lru_cache()
def get_supabase_url() -> str:
    url = os.environ.get("SUPABASE_URL")
    if not url:
        raise ValueError("SUPABASE_URL must be set")
    return url


@lru_cache()
def get_service_client() -> Client:
    """Supabase client with the service key (bypasses RLS)."""
    key = os.environ.get("SUPABASE_SERVICE_KEY")
    if not key:
        raise ValueError("SUPABASE_SERVICE_KEY must be set")
    return create_client(get_supabase_url(), key)


def verify_token(token: str) -> AuthenticatedUser:
    """
    Ask Supabase Auth who the token belongs to.

    Signature, expiry and revocation are all checked server-side; any
    failure is a 401.
    """
    try:
        response = get_service_client().auth.get_user(token)
    except Exception as e:
        logger.warning(f"[AUTH] Token rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = getattr(response, "user", None)
    if user is None or not user.id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return AuthenticatedUser(user_id=str(user.id), email=user.email)


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    """FastAPI dependency: the verified caller."""
    return verify_token(_bearer_token(authorization))


@lru_cache()
def get_admin_allowlist() -> frozenset[str]:
    raw = os.environ.get("ADMIN_ALLOWED_EMAILS", "")
    return frozenset(email.strip().lower() for email in raw.split(",") if email.strip())


def is_admin_email(email: Optional[str]) -> bool:
    return bool(email) and email.lower() in get_admin_allowlist()


def verify_admin_access(authorization: Optional[str] = Header(None)) -> AuthenticatedUser:
    """FastAPI dependency for the admin trace surface."""
    user = verify_token(_bearer_token(authorization))

    if not user.email:
        raise HTTPException(status_code=401, detail="Invalid token: no email")
    if not is_admin_email(user.email):
        raise HTTPException(status_code=403, detail="Admin access required")

    return user


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
AdminAuth = Annotated[AuthenticatedUser, Depends(verify_admin_access)]
