"""
Pytest configuration and fixtures for the SnapThis app.
"""

import hashlib
import hmac
import io
import json
import time

import pytest
from werkzeug.datastructures import FileStorage

from snapthis.app import create_app

TEST_JWT_SECRET = "snapthis-test-secret-0123456789abcdef"


def isolated_config(upload_folder: str) -> dict:
    """Configuration that ignores whatever the developer has in their .env."""
    return {
        "TESTING": True,
        "MONGO_URI": None,
        "UPLOAD_FOLDER": upload_folder,
        "SUPABASE_URL": "",
        "SUPABASE_SERVICE_ROLE_KEY": "",
        "SUPABASE_BUCKET": "",
        "STRIPE_SECRET_KEY": "",
        "STRIPE_PUBLISHABLE_KEY": "",
        "STRIPE_WEBHOOK_SECRET": "",
        "STRIPE_CURRENCY": "pln",
        "ADMIN_USER": "",
        "ADMIN_PASS": "",
        "ADMIN_PASS_HASH": "",
        "JWT_SECRET_KEY": TEST_JWT_SECRET,
        "RESEND_API_KEY": "",
        "PUBLIC_BASE_URL": "",
        "TRUSTED_PROXY_HOPS": 0,
        "REQUIRE_PAYMENT_FOR_UPLOADS": False,
        "MAX_UPLOAD_SIZE_MB": 5,
    }


@pytest.fixture
def upload_folder(tmp_path):
    return str(tmp_path / "uploads")


@pytest.fixture
def make_app(upload_folder):
    """Build an app with test overrides layered on the isolated config."""

    def factory(**overrides):
        config = isolated_config(upload_folder)
        config.update(overrides)
        return create_app(config)

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["snapthis"]["store"]


@pytest.fixture
def photo_file():
    def factory(filename="party.jpg", content=b"\xff\xd8\xff\xe0fake-jpeg", content_type="image/jpeg"):
        return FileStorage(
            stream=io.BytesIO(content), filename=filename, content_type=content_type
        )

    return factory


def stripe_signature(payload: str, secret: str, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook bodies."""
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed_payload = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(
        secret.encode("utf-8"), signed_payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_completed_event(token: str, **session_fields) -> str:
    session = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "client_reference_id": token,
        "metadata": {"guest_token": token},
        "amount_total": 399,
        "currency": "pln",
        "payment_status": "paid",
        "customer_details": {"email": "buyer@example.com"},
    }
    session.update(session_fields)
    return json.dumps(
        {
            "id": "evt_test_123",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": session},
        }
    )
