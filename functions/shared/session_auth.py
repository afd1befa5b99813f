"""
Session cookie verification for browser-facing billing endpoints.

Sessions are issued by the signup/login flow as ``<b64 payload>.<hmac>``
cookies signed with the secret stored at SESSION_SECRET_ARN.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
from datetime import datetime, timezone
from http.cookies import CookieError, SimpleCookie

from shared.billing_utils import read_secret

logger = logging.getLogger(__name__)


def _get_session_secret() -> str:
    """Session HMAC secret from Secrets Manager (shared TTL cache)."""
    session_secret_arn = os.environ.get("SESSION_SECRET_ARN")
    if not session_secret_arn:
        logger.error("SESSION_SECRET_ARN not configured")
        return ""
    return read_secret(session_secret_arn, "secret") or ""


def create_session_token(data: dict, secret: str) -> str:
    """Create a signed session token."""
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode()
    signature = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()
    return f"{payload}.{signature}"


def verify_session_token(token: str) -> dict | None:
    """Verify a session token and return the data if valid."""
    session_secret = _get_session_secret()
    if not session_secret or "." not in token:
        return None

    try:
        payload, signature = token.rsplit(".", 1)
        expected_sig = hmac.new(session_secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

        if not hmac.compare_digest(signature, expected_sig):
            return None

        data = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (ValueError, TypeError) as e:
        logger.warning(f"Malformed session token: {e}")
        return None

    if data.get("exp", 0) < datetime.now(timezone.utc).timestamp():
        return None

    return data


def get_session_token(event: dict) -> str | None:
    """Pull the ``session`` cookie out of an API Gateway event."""
    headers = event.get("headers") or {}
    cookie_header = headers.get("cookie") or headers.get("Cookie") or ""
    if not cookie_header:
        return None

    cookies = SimpleCookie()
    try:
        cookies.load(cookie_header)
    except CookieError:
        return None
    if "session" in cookies:
        return cookies["session"].value
    return None

