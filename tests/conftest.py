"""Shared fixtures for pg-upsert-sync tests."""

from __future__ import annotations

import logging

import pytest

from fakes import FakeDatabase, utc


@pytest.fixture(autouse=True)
def restore_package_logger():
    """setup_logging() replaces handlers on the package logger; undo it."""
    logger = logging.getLogger("pg_upsert_sync")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def leader(journal: list) -> FakeDatabase:
    """Leader with two users, created and updated in early January 2024."""
    db = FakeDatabase("leader", journal)
    db.add_table(
        "users",
        rows=[
            {
                "id": 1,
                "name": "alice",
                "created_at": utc(2024, 1, 1, 10),
                "updated_at": utc(2024, 1, 1, 10),
            },
            {
                "id": 2,
                "name": "bob",
                "created_at": utc(2024, 1, 2),
                "updated_at": utc(2024, 1, 2),
            },
        ],
    )
    return db


@pytest.fixture
def follower(journal: list) -> FakeDatabase:
    db = FakeDatabase("follower", journal)
    db.add_table("users")
    return db
