"""
Tests for database helper retry behaviour.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest

from app.db.helpers import DatabaseError, fetch_one, with_db_retry


def _database_error(cause: Exception) -> DatabaseError:
    try:
        raise DatabaseError("Query failed", operation="fetch_one") from cause
    except DatabaseError as e:
        return e


@pytest.mark.asyncio
async def test_with_db_retry_retries_operational_errors():
    calls = {"count": 0}

    @with_db_retry(max_retries=2, base_delay=0)
    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise _database_error(psycopg.OperationalError("connection reset"))
        return "ok"

    assert await flaky() == "ok"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_with_db_retry_gives_up_after_max_retries():
    calls = {"count": 0}

    @with_db_retry(max_retries=1, base_delay=0)
    async def always_down():
        calls["count"] += 1
        raise _database_error(psycopg.OperationalError("server closed the connection"))

    with pytest.raises(DatabaseError) as exc_info:
        await always_down()

    assert calls["count"] == 2
    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_with_db_retry_does_not_retry_permanent_errors():
    calls = {"count": 0}

    @with_db_retry(max_retries=3, base_delay=0)
    async def bad_insert():
        calls["count"] += 1
        raise _database_error(psycopg.errors.UniqueViolation("duplicate key"))

    with pytest.raises(DatabaseError):
        await bad_insert()

    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_fetch_one_wraps_psycopg_errors():
    cursor = MagicMock()
    cursor.execute = AsyncMock(side_effect=psycopg.OperationalError("boom"))
    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=False)
    connection = MagicMock()
    connection.cursor.return_value = cursor_cm

    with patch("app.db.helpers.logger"):
        with pytest.raises(DatabaseError) as exc_info:
            await fetch_one("SELECT 1", connection=connection)

    assert exc_info.value.operation == "fetch_one"
    assert isinstance(exc_info.value.__cause__, psycopg.OperationalError)
