"""Authentication: users, passwords, signed API tokens."""

from __future__ import annotations

from typing import Any

import hashlib
import hmac
import json
import re
import secrets
import time

import settings


TOKEN_EXPIRY = 86400 * 7  # 7 days
_USERNAME_RE = re.compile(r"[a-z0-9_]{3,32}")


def _get_secret_key() -> str:
    """Get or generate the token signing key (persisted in settings)."""
    key = settings.load_settings().get("secret_key")
    if not key:
        key = secrets.token_hex(32)
        settings.update_settings(secret_key=key)
    return key


def _hash_password(password: str, salt: str | None = None) -> str:
    """Hash password with salt using PBKDF2."""
    if salt is None:
        salt = secrets.token_hex(16)
    key = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100000)
    return f"{salt}:{key.hex()}"


def _verify_hashed_password(password: str, hashed: str) -> bool:
    if ":" not in hashed:
        return False
    salt, _ = hashed.split(":", 1)
    return hmac.compare_digest(_hash_password(password, salt), hashed)


def _get_users() -> dict[str, dict[str, Any]]:
    """User format: {username: {password: str, created: float}}."""
    return settings.load_settings().get("users", {})


def is_valid_username(username: str) -> bool:
    """Usernames become slug prefixes, so keep them URL-safe."""
    return bool(_USERNAME_RE.fullmatch(username))


def user_exists(username: str) -> bool:
    return username in _get_users()


def create_user(username: str, password: str) -> None:
    """Create a user. Raises ValueError if the name is invalid or taken."""
    if not is_valid_username(username):
        raise ValueError("Invalid username")
    users = _get_users()
    if username in users:
        raise ValueError("User already exists")
    users[username] = {"password": _hash_password(password), "created": time.time()}
    settings.update_settings(users=users)


def verify_password(username: str, password: str) -> bool:
    """Verify username and password (constant work for unknown users)."""
    users = _get_users()
    user_data = users.get(username, {"password": _hash_password("dummy")})
    valid = _verify_hashed_password(password, user_data["password"])
    return valid and username in users


def create_token(username: str) -> str:
    """Create a signed, expiring token for username."""
    payload = {"sub": username, "exp": int(time.time()) + TOKEN_EXPIRY}
    data = json.dumps(payload, separators=(",", ":")).encode()
    sig = hmac.new(_get_secret_key().encode(), data, hashlib.sha256).hexdigest()
    return f"{data.hex()}.{sig}"


def verify_token(token: str) -> str | None:
    """Return the token's username, or None if invalid/expired/user gone."""
    try:
        data_hex, sig = token.split(".")
        data = bytes.fromhex(data_hex)
        payload = json.loads(data)
    except ValueError:
        return None
    expected = hmac.new(_get_secret_key().encode(), data, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    username = payload.get("sub")
    if not isinstance(username, str) or not user_exists(username):
        return None
    return username
