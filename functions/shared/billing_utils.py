"""Shared billing utilities: Stripe credentials from Secrets Manager."""

import json
import logging
import os
import time

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import SECRETS_CACHE_TTL

logger = logging.getLogger(__name__)

# secret ARN -> (value, fetched_at)
_secret_cache: dict[str, tuple[str, float]] = {}


def read_secret(secret_arn: str | None, json_field: str) -> str | None:
    """Read a secret that is either plain text or JSON with ``json_field``.

    Values are cached per ARN with a TTL so rotation takes effect without
    a redeploy. Failures return None and are not cached.
    """
    if not secret_arn:
        return None

    cached = _secret_cache.get(secret_arn)
    if cached and (time.time() - cached[1]) < SECRETS_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        value = secret_json.get(json_field) if isinstance(secret_json, dict) else None
        value = value or secret_value
    except json.JSONDecodeError:
        value = secret_value

    if not value:
        return None

    _secret_cache[secret_arn] = (value, time.time())
    return value


def get_stripe_api_key() -> str | None:
    """Retrieve Stripe API key from Secrets Manager (cached with TTL)."""
    # Read at runtime to allow tests to set this env var
    return read_secret(os.environ.get("STRIPE_SECRET_ARN"), "key")


def get_webhook_secret() -> str | None:
    """Retrieve the Stripe webhook signing secret (cached with TTL)."""
    return read_secret(os.environ.get("STRIPE_WEBHOOK_SECRET_ARN"), "secret")


def configure_stripe() -> bool:
    """Point the Stripe SDK at the current API key. Returns False if unset."""
    api_key = get_stripe_api_key()
    if not api_key:
        return False
    stripe.api_key = api_key
    return True


def stripe_to_dict(obj) -> dict | None:
    """Convert a Stripe SDK object to plain nested dicts.

    ``StripeObject`` is not a dict, so objects returned by ``retrieve`` are
    converted once at the call site and read with ``.get`` like webhook
    payloads.
    """
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def clear_secret_cache():
    """Drop cached secrets. Used in tests for clean state."""
    _secret_cache.clear()
