"""
Unit tests for the advisory lock managers.

PostgreSQLLockManager is exercised against a mocked session factory; the
SQL it issues is asserted by statement text.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ccmigrate.entities import EntityType
from ccmigrate.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    LockNotHeldError,
    PostgreSQLLockManager,
    key_to_lock_id,
    migration_lock_key,
)
from ccmigrate.observability import MockTracer


class TestLockKeys:
    """Tests for lock key helpers."""

    def test_migration_lock_key(self):
        key = migration_lock_key("org-1", "env-prod", EntityType.QUEUE)
        assert key == "ccmigrate:org-1:env-prod:queue"

    def test_lock_id_is_stable_and_fits_bigint(self):
        lock_id = key_to_lock_id("ccmigrate:org-1:env-prod:user")

        assert lock_id == key_to_lock_id("ccmigrate:org-1:env-prod:user")
        assert 0 <= lock_id < 2**63
        assert lock_id != key_to_lock_id("ccmigrate:org-1:env-prod:queue")


class TestInMemoryLockManager:
    """Tests for the process-local lock manager."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryLockManager(), LockManager)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        locks = InMemoryLockManager(holder_id="worker-1")

        async with locks.acquire("k", timeout=1.0) as info:
            assert info.key == "k"
            assert info.holder_id == "worker-1"
            assert await locks.is_held("k") is True

        assert await locks.is_held("k") is False

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        locks = InMemoryLockManager()
        assert await locks.try_acquire("k") is not None

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with locks.acquire("k", timeout=0.05):
                pass

        assert exc_info.value.timeout == 0.05
        await locks.release("k")

    @pytest.mark.asyncio
    async def test_try_acquire_held_lock(self):
        locks = InMemoryLockManager()

        assert await locks.try_acquire("k") is not None
        assert await locks.try_acquire("k") is None
        await locks.release("k")

    @pytest.mark.asyncio
    async def test_release_not_held(self):
        with pytest.raises(LockNotHeldError):
            await InMemoryLockManager().release("k")

    @pytest.mark.asyncio
    async def test_released_on_exception(self):
        locks = InMemoryLockManager()

        with pytest.raises(RuntimeError):
            async with locks.acquire("k"):
                raise RuntimeError("boom")

        assert await locks.is_held("k") is False

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self):
        locks = InMemoryLockManager()
        order: list[str] = []

        async def hold() -> None:
            async with locks.acquire("k"):
                order.append("first")
                await asyncio.sleep(0.02)

        async def wait() -> None:
            await asyncio.sleep(0.005)
            async with locks.acquire("k", timeout=1.0):
                order.append("second")

        await asyncio.gather(hold(), wait())
        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_traces_acquisition(self):
        tracer = MockTracer()
        locks = InMemoryLockManager(tracer=tracer)

        async with locks.acquire("k"):
            pass

        assert "ccmigrate.lock.acquire" in tracer.span_names


def _session_with_results(*values: bool) -> AsyncMock:
    session = AsyncMock()
    results = []
    for value in values:
        result = MagicMock()
        result.scalar.return_value = value
        results.append(result)
    session.execute.side_effect = results + [MagicMock()]
    return session


def _statements(session: AsyncMock) -> list[str]:
    return [str(call.args[0]) for call in session.execute.call_args_list]


class TestPostgreSQLLockManager:
    """Tests for PostgreSQL advisory locks against a mocked session."""

    @pytest.mark.asyncio
    async def test_blocking_acquire_and_release(self):
        session = AsyncMock()
        manager = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        async with manager.acquire("k") as info:
            assert await manager.is_held("k") is True
            assert manager.held_lock_count == 1
            assert info.lock_id == key_to_lock_id("k")

        assert _statements(session) == [
            "SELECT pg_advisory_lock(:lock_id)",
            "SELECT pg_advisory_unlock(:lock_id)",
        ]
        session.close.assert_awaited_once()
        assert manager.held_lock_count == 0

    @pytest.mark.asyncio
    async def test_try_lock_retries_until_acquired(self):
        session = _session_with_results(False, True)
        manager = PostgreSQLLockManager(
            MagicMock(return_value=session), retry_interval=0.001, enable_tracing=False
        )

        async with manager.acquire("k", timeout=1.0):
            pass

        assert _statements(session)[:2] == [
            "SELECT pg_try_advisory_lock(:lock_id)",
            "SELECT pg_try_advisory_lock(:lock_id)",
        ]

    @pytest.mark.asyncio
    async def test_timeout_closes_session(self):
        session = AsyncMock()
        result = MagicMock()
        result.scalar.return_value = False
        session.execute.return_value = result
        manager = PostgreSQLLockManager(
            MagicMock(return_value=session), retry_interval=0.01, enable_tracing=False
        )

        with pytest.raises(LockAcquisitionError, match="Timeout"):
            async with manager.acquire("k", timeout=0.03):
                pass

        session.close.assert_awaited_once()
        assert await manager.is_held("k") is False

    @pytest.mark.asyncio
    async def test_database_error_wrapped(self):
        session = AsyncMock()
        session.execute.side_effect = OSError("connection refused")
        manager = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        with pytest.raises(LockAcquisitionError, match="Database error"):
            async with manager.acquire("k"):
                pass

        session.close.assert_awaited_once()

    def test_satisfies_protocol(self):
        assert isinstance(PostgreSQLLockManager(MagicMock()), LockManager)

    @pytest.mark.asyncio
    async def test_try_acquire_holds_until_release(self):
        session = _session_with_results(True)
        manager = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        info = await manager.try_acquire("k")

        assert info is not None
        assert info.lock_id == key_to_lock_id("k")
        assert await manager.is_held("k") is True
        session.close.assert_not_awaited()

        await manager.release("k")

        assert _statements(session) == [
            "SELECT pg_try_advisory_lock(:lock_id)",
            "SELECT pg_advisory_unlock(:lock_id)",
        ]
        session.close.assert_awaited_once()
        assert await manager.is_held("k") is False

    @pytest.mark.asyncio
    async def test_try_acquire_held_elsewhere(self):
        session = _session_with_results(False)
        manager = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        assert await manager.try_acquire("k") is None
        session.close.assert_awaited_once()
        assert manager.held_lock_count == 0

    @pytest.mark.asyncio
    async def test_try_acquire_database_error(self):
        session = AsyncMock()
        session.execute.side_effect = OSError("connection refused")
        manager = PostgreSQLLockManager(MagicMock(return_value=session), enable_tracing=False)

        with pytest.raises(LockAcquisitionError, match="Database error"):
            await manager.try_acquire("k")

        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_release_not_held(self):
        manager = PostgreSQLLockManager(MagicMock(), enable_tracing=False)

        with pytest.raises(LockNotHeldError):
            await manager.release("k")
