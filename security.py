import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional

from fastapi import Depends, Header, HTTPException

import config
from schemas import CurrentUser, Role

PBKDF2_ITERATIONS = 260000


# -----------------------------
# Passwords
# -----------------------------

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        algorithm, iterations, salt, expected = hashed.split("$")
    except (AttributeError, ValueError):
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


# -----------------------------
# Tokens (HS256 JWT)
# -----------------------------

def _b64url(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b"=")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _sign(signing_input: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()


def create_access_token(claims: dict, secret: Optional[str] = None, expires_minutes: Optional[int] = None) -> str:
    secret = secret or config.JWT_SECRET
    expires_minutes = expires_minutes or config.JWT_EXPIRES_MINUTES
    now = int(time.time())
    payload = {**claims, "iat": now, "exp": now + expires_minutes * 60}
    header = {"alg": "HS256", "typ": "JWT"}
    segments = [
        _b64url(json.dumps(header, separators=(",", ":")).encode()),
        _b64url(json.dumps(payload, separators=(",", ":"), default=str).encode()),
    ]
    signing_input = b".".join(segments)
    segments.append(_b64url(_sign(signing_input, secret)))
    return b".".join(segments).decode()


def decode_access_token(token: str, secret: Optional[str] = None) -> dict:
    secret = secret or config.JWT_SECRET
    try:
        header_seg, payload_seg, signature_seg = token.split(".")
        signature = _b64url_decode(signature_seg)
        payload = json.loads(_b64url_decode(payload_seg))
    except ValueError:
        raise HTTPException(status_code=401, detail="Unauthorized: malformed token")
    expected = _sign(f"{header_seg}.{payload_seg}".encode(), secret)
    if not hmac.compare_digest(signature, expected):
        raise HTTPException(status_code=401, detail="Unauthorized: invalid token signature")
    if payload.get("exp") is not None and payload["exp"] < time.time():
        raise HTTPException(status_code=401, detail="Unauthorized: token expired")
    return payload


# -----------------------------
# Dependencies
# -----------------------------

def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized: missing bearer token")
    payload = decode_access_token(authorization.split(" ", 1)[1].strip())
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Unauthorized: token has no subject")
    return CurrentUser(
        user_id=str(payload["sub"]),
        username=payload.get("username", ""),
        role=payload.get("role", Role.USER.value),
        assigned_zone=payload.get("assignedZone") or "",
    )


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.role != Role.ADMIN.value:
        raise HTTPException(status_code=403, detail="Forbidden: admin role required")
    return user


def get_optional_user(authorization: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    if not authorization:
        return None
    return get_current_user(authorization)
