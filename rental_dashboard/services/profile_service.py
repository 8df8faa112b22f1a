from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models.rental_models import Profile
from services.errors import ValidationError, write_transaction


ROLES = ("admin", "staff")
DEFAULT_ROLE = "staff"
MIN_PASSWORD_LENGTH = 6
SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS") or 60 * 60 * 12)

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in ROLES:
        return role
    return DEFAULT_ROLE


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def set_password(profile: Profile, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    profile.password_salt = secrets.token_hex(16)
    profile.password_hash = _password_hash(trimmed, profile.password_salt)


def verify_password(profile: Profile | None, password: str) -> bool:
    if profile is None or not profile.password_hash or not profile.password_salt:
        return False
    candidate = _password_hash(str(password or "").strip(), profile.password_salt)
    return hmac.compare_digest(candidate, profile.password_hash)


def serialize_profile(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "email": profile.email,
        "fullname": profile.fullname,
        "role": profile.role,
        "canDelete": can_delete(profile),
        "createdAt": profile.created_at.isoformat() if profile.created_at else None,
    }


def is_admin(profile: Profile | dict | None) -> bool:
    if profile is None:
        return False
    role = profile.get("role") if isinstance(profile, dict) else profile.role
    return str(role or "").strip().lower() == "admin"


def can_delete(profile: Profile | dict | None) -> bool:
    return is_admin(profile)


def create_session(profile: Profile) -> str:
    payload: dict[str, Any] = {
        "id": profile.id,
        "fullname": profile.fullname,
        "role": profile.role,
        "nonce": secrets.token_hex(8),
        "expiresAt": time.time() + SESSION_TTL_SECONDS,
    }
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = base64.urlsafe_b64encode(body).decode("ascii").rstrip("=")
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    encoded_sig = base64.urlsafe_b64encode(signature).decode("ascii").rstrip("=")
    return f"{encoded}.{encoded_sig}"


def _decode_token(token: str) -> dict[str, Any] | None:
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        supplied_sig = base64.urlsafe_b64decode(encoded_sig + "=" * (-len(encoded_sig) % 4))
        if not hmac.compare_digest(expected_sig, supplied_sig):
            return None
        payload_raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
        decoded = json.loads(payload_raw.decode("utf-8"))
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    decoded = _decode_token(token)
    if decoded is None:
        return None
    now = time.time()
    if now >= float(decoded.get("expiresAt") or 0.0):
        return None
    with _LOCK:
        for revoked_token, expires_at in list(_REVOKED_TOKENS.items()):
            if now >= expires_at:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return dict(decoded)


def remove_session(token: str | None) -> None:
    if not token:
        return
    decoded = _decode_token(token)
    if decoded is None:
        return
    with _LOCK:
        _REVOKED_TOKENS[token] = float(decoded.get("expiresAt") or time.time() + SESSION_TTL_SECONDS)


def is_logged_in(token: str | None) -> bool:
    return get_session(token) is not None


def get_current_user_profile(db: Session, token: str | None) -> Profile | None:
    session = get_session(token)
    if not session:
        return None
    return db.get(Profile, str(session.get("id") or ""))


def authenticate(db: Session, email: str, password: str) -> Profile | None:
    normalized = (email or "").strip().lower()
    if not normalized or not password:
        return None
    profile = db.execute(
        select(Profile).where(func.lower(Profile.email) == normalized)
    ).scalars().first()
    if not verify_password(profile, password):
        return None
    return profile


def list_profiles(db: Session) -> list[Profile]:
    return db.execute(select(Profile).order_by(Profile.fullname)).scalars().all()


def create_profile(db: Session, email: str, fullname: str, password: str, role: str | None = None) -> Profile:
    email = (email or "").strip().lower()
    fullname = (fullname or "").strip()
    if not email or not fullname:
        raise ValidationError("Please fill in all fields.")
    profile = Profile(email=email, fullname=fullname, role=normalize_role(role))
    set_password(profile, password)
    with write_transaction(db, f"Creating profile {email}"):
        db.add(profile)
        db.flush()
    return profile


def update_profile(
    db: Session,
    profile_id: str,
    *,
    fullname: str | None = None,
    role: str | None = None,
    password: str | None = None,
) -> Profile | None:
    profile = db.get(Profile, profile_id)
    if profile is None:
        return None
    with write_transaction(db, f"Updating profile {profile_id}"):
        if fullname is not None:
            if not fullname.strip():
                raise ValidationError("Please enter a full name.")
            profile.fullname = fullname.strip()
        if role is not None:
            profile.role = normalize_role(role)
        if password is not None:
            set_password(profile, password)
    return profile


def delete_profile(db: Session, profile_id: str) -> bool:
    with write_transaction(db, f"Deleting profile {profile_id}"):
        result = db.execute(delete(Profile).where(Profile.id == profile_id))
    return bool(result.rowcount)
