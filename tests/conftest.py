"""Shared fixtures for the PayBridge test suite."""

from __future__ import annotations

import pytest
from tortoise import Tortoise

from paybridge.services.database import build_tortoise_config, close_db
from tests.helpers import FakeRcon


@pytest.fixture()
async def db():
    """Fresh in-memory ledger per test."""
    await Tortoise.init(config=build_tortoise_config("sqlite://:memory:"))
    await Tortoise.generate_schemas()
    yield
    await close_db()


@pytest.fixture()
def fake_rcon() -> FakeRcon:
    return FakeRcon()
