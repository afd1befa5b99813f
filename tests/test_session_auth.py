"""
Tests for session cookie verification.
"""

import os
import time
from unittest.mock import patch

from moto import mock_aws

from conftest import SESSION_SECRET, session_cookie


class TestSessionToken:

    @mock_aws
    def test_valid_token_roundtrip(self, mock_dynamodb, stripe_secrets):
        from shared.session_auth import create_session_token, verify_session_token

        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) + 60}, SESSION_SECRET)

        assert verify_session_token(token)["user_id"] == "user_123"

    @mock_aws
    def test_wrong_secret_rejected(self, mock_dynamodb, stripe_secrets):
        from shared.session_auth import create_session_token, verify_session_token

        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) + 60}, "other-secret")

        assert verify_session_token(token) is None

    @mock_aws
    def test_expired_token_rejected(self, mock_dynamodb, stripe_secrets):
        from shared.session_auth import create_session_token, verify_session_token

        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) - 1}, SESSION_SECRET)

        assert verify_session_token(token) is None

    @mock_aws
    def test_garbage_token_rejected(self, mock_dynamodb, stripe_secrets):
        from shared.session_auth import verify_session_token

        assert verify_session_token("no-dot-here") is None
        assert verify_session_token("%%%.abc") is None

    @mock_aws
    def test_no_secret_configured(self, mock_dynamodb):
        from shared.session_auth import create_session_token, verify_session_token

        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) + 60}, SESSION_SECRET)

        assert verify_session_token(token) is None


    @mock_aws
    def test_secret_uses_shared_secret_cache(self, mock_dynamodb, stripe_secrets):
        """Rotation of the session secret follows the same TTL cache as the Stripe secrets."""
        from shared import billing_utils
        from shared.session_auth import create_session_token, verify_session_token

        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) + 60}, SESSION_SECRET)
        assert verify_session_token(token)["user_id"] == "user_123"

        assert billing_utils._secret_cache[os.environ["SESSION_SECRET_ARN"]][0] == SESSION_SECRET

    @mock_aws
    def test_plain_text_session_secret(self, mock_dynamodb):
        import boto3

        from shared.session_auth import create_session_token, verify_session_token

        sm = boto3.client("secretsmanager", region_name="us-east-1")
        arn = sm.create_secret(Name="session-plain", SecretString="plain-session-secret")["ARN"]
        token = create_session_token({"user_id": "user_123", "exp": int(time.time()) + 60}, "plain-session-secret")

        with patch.dict(os.environ, {"SESSION_SECRET_ARN": arn}):
            assert verify_session_token(token)["user_id"] == "user_123"


class TestGetSessionToken:

    def test_reads_session_cookie(self):
        from shared.session_auth import get_session_token

        cookie = session_cookie()
        event = {"headers": {"Cookie": f"theme=dark; {cookie}"}}

        assert get_session_token(event) == cookie.split("=", 1)[1]

    def test_missing_cookie(self):
        from shared.session_auth import get_session_token

        assert get_session_token({"headers": {}}) is None
        assert get_session_token({"headers": None}) is None
        assert get_session_token({"headers": {"cookie": "theme=dark"}}) is None
