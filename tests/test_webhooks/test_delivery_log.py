"""Tests for the delivery audit log."""

from unittest.mock import AsyncMock, patch

import pytest

from src.webhooks.delivery_log import DeliveryLog
from src.webhooks.errors import DeliveryLogError
from src.webhooks.models import LogLevel
from src.webhooks.storage import WebhookStorage


@pytest.fixture
async def storage(tmp_path):
    """Create initialized storage with a temp database."""
    store = WebhookStorage(db_path=tmp_path / "webhooks.db")
    await store.initialize()
    yield store
    await store.close()


class TestDeliveryLog:
    """Tests for DeliveryLog."""

    @pytest.mark.asyncio
    async def test_append_and_list(self, storage):
        log = DeliveryLog(storage)

        entry = await log.append("tenant-a", "del_1", LogLevel.INFO, "Starting webhook delivery", {"attempt_number": 1})
        await log.append("tenant-a", "del_1", LogLevel.WARN, "Webhook delivery failed, will retry")

        assert entry is not None
        assert entry.level == LogLevel.INFO
        entries = await log.list_entries("del_1", "tenant-a")
        assert [e.level for e in entries] == [LogLevel.INFO, LogLevel.WARN]
        assert entries[0].data == {"attempt_number": 1}
        assert entries[1].data is None

    @pytest.mark.asyncio
    async def test_append_swallows_storage_failure(self, storage):
        log = DeliveryLog(storage)

        with patch.object(storage, "insert_log_entry", AsyncMock(side_effect=DeliveryLogError("disk full"))):
            entry = await log.append("tenant-a", "del_1", LogLevel.ERROR, "Webhook delivery abandoned")

        assert entry is None
        assert await log.list_entries("del_1", "tenant-a") == []

    @pytest.mark.asyncio
    async def test_closed_storage_reported_not_raised(self, storage):
        log = DeliveryLog(storage)
        await storage.close()

        assert await log.append("tenant-a", "del_1", LogLevel.INFO, "message") is None

