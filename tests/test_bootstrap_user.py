"""Tests for the local user seeding script."""

import importlib.util
from pathlib import Path

import pytest

from ditto.service.errors import InvalidPhoneFormat
from ditto.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"
_module_spec = importlib.util.spec_from_file_location("bootstrap_user", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_module_spec)
_module_spec.loader.exec_module(bootstrap)


async def test_creates_user():
    result = await bootstrap.bootstrap_user("+15551234567", "Ada", "Lovelace")

    assert result["status"] == "created"
    user = get_runtime().store.get_user_by_phone("+15551234567")
    assert user.id == result["user_id"]
    assert user.first_name == "Ada"


async def test_existing_user_is_reported():
    first = await bootstrap.bootstrap_user("+15551234567", "Ada", "Lovelace")
    second = await bootstrap.bootstrap_user("+15551234567", "Someone", "Else")

    assert second["status"] == "exists"
    assert second["user_id"] == first["user_id"]


async def test_dry_run_creates_nothing():
    result = await bootstrap.bootstrap_user("+15551234567", "Ada", "Lovelace", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_phone("+15551234567") is None


async def test_issued_token_verifies():
    result = await bootstrap.bootstrap_user(
        "+15551234567", "Ada", "Lovelace", issue_tokens=True
    )

    ctx = get_runtime().auth.verify_access_token(result["access_token"])
    assert ctx.user_id == result["user_id"]
    assert ctx.subject == "+15551234567"


async def test_rejects_malformed_phone():
    with pytest.raises(InvalidPhoneFormat):
        await bootstrap.bootstrap_user("5551234567", "Ada", "Lovelace")
