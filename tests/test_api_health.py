"""
Tests for syncgate/api/health.py - health check endpoints (liveness, readiness, deep).
"""
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

from syncgate.api.health import (
    APP_VERSION,
    health_check,
    readiness_check,
    deep_health_check,
    _check_database,
    _check_redis,
    _check_workers,
    _check_queue,
    _expected_workers,
)
from tests.helpers import make_queue_item


def _healthy_db():
    mock_db = AsyncMock()
    mock_result = MagicMock()
    mock_result.scalar.return_value = 0
    mock_db.execute = AsyncMock(return_value=mock_result)
    return mock_db


# ---------------------------------------------------------------------------
# GET /health - basic liveness
# ---------------------------------------------------------------------------


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_returns_healthy(self):
        """Liveness check always returns healthy with timestamp and version."""
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == APP_VERSION
        parsed = datetime.fromisoformat(result["timestamp"])
        assert parsed.tzinfo is not None


# ---------------------------------------------------------------------------
# GET /health/ready - readiness check (DB + Redis)
# ---------------------------------------------------------------------------


class TestReadinessCheck:
    @pytest.mark.asyncio
    async def test_all_healthy_returns_ready(self, mock_redis):
        result = await readiness_check(db=_healthy_db())

        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}

    @pytest.mark.asyncio
    async def test_redis_failure_returns_degraded(self):
        """Redis is down by default in tests."""
        result = await readiness_check(db=_healthy_db())

        assert result["status"] == "degraded"
        assert result["checks"]["database"] is True
        assert result["checks"]["redis"] is False

    @pytest.mark.asyncio
    async def test_db_failure_returns_degraded(self, mock_redis):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("connection refused"))

        result = await readiness_check(db=mock_db)

        assert result["status"] == "degraded"
        assert result["checks"]["database"] is False


# ---------------------------------------------------------------------------
# GET /health/deep
# ---------------------------------------------------------------------------


class TestDeepHealthCheck:
    @pytest.mark.asyncio
    async def test_all_workers_beating_is_healthy(self, mock_redis):
        mock_redis.get = AsyncMock(return_value="2026-03-01T12:00:00+00:00")

        result = await deep_health_check(db=_healthy_db())

        assert result["status"] == "healthy"
        assert result["checks"]["workers"]["healthy"] is True
        assert result["checks"]["queue"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_missing_heartbeat_is_degraded(self, mock_redis):
        mock_redis.get = AsyncMock(return_value=None)

        result = await deep_health_check(db=_healthy_db())

        assert result["status"] == "degraded"
        workers = result["checks"]["workers"]["workers"]
        assert workers["sync_worker_0"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_database_down_is_unhealthy(self, mock_redis):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("db error"))

        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            result = await deep_health_check(db=mock_db)

        assert result["status"] == "unhealthy"
        assert "queue" not in result["checks"]
        alert.assert_awaited_once()
        assert alert.await_args.args[0] == "health_check_failed"
        assert "database" in alert.await_args.args[1]
        assert alert.await_args.kwargs["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_degraded_does_not_alert(self, mock_redis):
        mock_redis.get = AsyncMock(return_value=None)

        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            result = await deep_health_check(db=_healthy_db())

        assert result["status"] == "degraded"
        alert.assert_not_awaited()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    @pytest.mark.asyncio
    async def test_database_error(self):
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock(side_effect=Exception("timeout"))

        result = await _check_database(mock_db)
        assert result["healthy"] is False
        assert "timeout" in result["error"]

    @pytest.mark.asyncio
    async def test_redis_error(self):
        result = await _check_redis()
        assert result["healthy"] is False
        assert "redis unavailable" in result["error"]

    @pytest.mark.asyncio
    async def test_workers_unknown_when_redis_down(self):
        result = await _check_workers()
        assert result["healthy"] is True
        assert "note" in result

    def test_expected_workers(self, monkeypatch):
        from syncgate.config import get_settings

        monkeypatch.setenv("SYNC_WORKER_COUNT", "2")
        get_settings.cache_clear()
        assert _expected_workers() == [
            "sync_worker_0", "sync_worker_1", "stale_claim_sweeper", "event_retention",
        ]

    @pytest.mark.asyncio
    async def test_queue_counts(self, db):
        db.add_all([
            make_queue_item(status="pending"),
            make_queue_item(status="failed"),
            make_queue_item(status="failed"),
        ])
        await db.commit()

        result = await _check_queue(db)
        assert result == {"healthy": True, "due_pending": 1, "dead_letters": 2}

    @pytest.mark.asyncio
    async def test_redis_key_prefix(self, mock_redis):
        mock_redis.get = AsyncMock(return_value=None)
        with patch("syncgate.api.health._expected_workers", return_value=["sync_worker_0"]):
            await _check_workers()
        mock_redis.get.assert_awaited_once_with("syncgate:worker_health:sync_worker_0")

    @pytest.mark.asyncio
    async def test_queue_backlog_over_threshold(self, db, monkeypatch):
        from syncgate.config import get_settings

        monkeypatch.setenv("SYNC_QUEUE_BACKLOG_THRESHOLD", "2")
        get_settings.cache_clear()
        db.add_all([make_queue_item(status="pending") for _ in range(3)])
        await db.commit()

        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            result = await _check_queue(db)

        assert result["healthy"] is False
        assert result["due_pending"] == 3
        alert.assert_awaited_once()
        assert alert.await_args.args[0] == "sync_queue_backlog"
        assert "3 items overdue" in alert.await_args.args[1]

    @pytest.mark.asyncio
    async def test_queue_under_threshold_does_not_alert(self, db):
        db.add(make_queue_item(status="pending"))
        await db.commit()

        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            result = await _check_queue(db)

        assert result["healthy"] is True
        alert.assert_not_awaited()
