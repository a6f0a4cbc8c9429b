"""Tests for database retry functionality."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from engine.db_retry import (
    DatabaseRetryableError,
    execute_with_retry,
    is_retryable_database_error,
)


class TestIsRetryableDatabaseError:
    """Tests for is_retryable_database_error function."""

    def test_database_is_locked_message(self):
        assert is_retryable_database_error(sqlite3.OperationalError("database is locked")) is True

    def test_database_table_is_locked_message(self):
        assert is_retryable_database_error(sqlite3.OperationalError("database table is locked")) is True

    def test_sqlite_busy_message(self):
        assert is_retryable_database_error(Exception("SQLITE_BUSY: some other text")) is True

    def test_case_insensitive(self):
        assert is_retryable_database_error(Exception("DATABASE IS LOCKED")) is True

    def test_wrapped_cause_detected(self):
        """Should look through exception chaining to the driver error."""
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer) is True

    def test_non_locking_error(self):
        assert is_retryable_database_error(Exception("connection refused")) is False

    def test_other_sqlite_error(self):
        assert is_retryable_database_error(sqlite3.OperationalError("no such table: jobs")) is False


class TestExecuteWithRetry:
    """Tests for execute_with_retry function."""

    async def test_success_on_first_try(self):
        mock_func = AsyncMock(return_value="success")

        result = await execute_with_retry(mock_func)

        assert result == "success"
        assert mock_func.call_count == 1

    async def test_retry_on_database_locked_then_succeed(self):
        """Should retry on database locked error and return result on success."""
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "success",
            ]
        )

        with patch("engine.db_retry.asyncio.sleep", new_callable=AsyncMock):
            result = await execute_with_retry(mock_func, max_retries=3, base_delay=0.01)

        assert result == "success"
        assert mock_func.call_count == 3

    async def test_exhaust_retries_raises(self):
        mock_func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch("engine.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError) as exc_info:
                await execute_with_retry(mock_func, max_retries=2, base_delay=0.01)

        assert "3 attempts" in str(exc_info.value)
        assert mock_func.call_count == 3

    async def test_non_locking_error_raised_immediately(self):
        mock_func = AsyncMock(side_effect=ValueError("some other error"))

        with pytest.raises(ValueError):
            await execute_with_retry(mock_func, max_retries=5)

        assert mock_func.call_count == 1

    async def test_exponential_backoff(self):
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "success",
            ]
        )
        sleep_mock = AsyncMock()

        with patch("engine.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, max_retries=3, base_delay=0.1, max_delay=2.0)

        # jitter factor is 0 when random() == 0.5
        assert sleep_mock.call_count == 2
        assert sleep_mock.call_args_list[0][0][0] == pytest.approx(0.1, rel=0.01)
        assert sleep_mock.call_args_list[1][0][0] == pytest.approx(0.2, rel=0.01)

    async def test_max_delay_cap(self):
        mock_func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked")] * 4 + ["success"])
        sleep_mock = AsyncMock()

        with patch("engine.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, max_retries=5, base_delay=1.0, max_delay=2.0)

        assert sleep_mock.call_count == 4
        assert sleep_mock.call_args_list[3][0][0] == pytest.approx(2.0, rel=0.01)

    async def test_passes_args_and_kwargs(self):
        mock_func = AsyncMock(return_value="result")

        result = await execute_with_retry(mock_func, "arg1", "arg2", kwarg1="value1")

        assert result == "result"
        mock_func.assert_called_once_with("arg1", "arg2", kwarg1="value1")
