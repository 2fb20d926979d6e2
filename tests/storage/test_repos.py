"""Tests for the storage repositories against a SQLite database."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from token_alert_hub.alerter.models import Batch, DeliveryRecord, DeliveryStatus
from token_alert_hub.rules.models import (
    AlertType,
    LeafCondition,
    PendingAlert,
    Priority,
    Rule,
)
from token_alert_hub.storage import (
    BatchRepository,
    DatabaseManager,
    DedupCacheRepository,
    DeliveryLogRepository,
    RuleRepository,
    SqlDedupStore,
    SqlDeliveryLog,
    SqlRuleStore,
)
from token_alert_hub.storage.models import AlertRuleModel

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[DatabaseManager]:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'alerts.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


def make_rule(rule_id: str = "rule-1", **kwargs: object) -> Rule:
    params: dict = {
        "id": rule_id,
        "name": "Whale buys",
        "condition": LeafCondition("whale.amount", ">", 10_000),
        "channels": ("discord", "webhook"),
        "priority": Priority.HIGH,
        "alert_type": AlertType.WHALE_MOVEMENT,
        "owner": "alice",
        "tags": ("whales",),
    }
    params.update(kwargs)
    return Rule(**params)


def make_record(alert_id: str = "alert-1", **kwargs: object) -> DeliveryRecord:
    params: dict = {
        "alert_id": alert_id,
        "rule_id": "rule-1",
        "channel_id": "discord",
        "channel_type": "discord",
        "created_at": NOW,
    }
    params.update(kwargs)
    return DeliveryRecord(**params)


def make_alert(alert_id: str) -> PendingAlert:
    return PendingAlert(
        id=alert_id,
        rule_id="rule-1",
        rule_name="Whale buys",
        identity="mint",
        alert_type=AlertType.VOLUME_SPIKE,
        priority=Priority.NORMAL,
        title="Whale buys",
        message="msg",
        reasons=(),
        channels=("discord",),
        dedup_key=alert_id,
    )


# ============================================================================
# DatabaseManager Tests
# ============================================================================


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    def test_sqlite_url_gets_async_driver(self, tmp_path: Path) -> None:
        manager = DatabaseManager(f"sqlite:///{tmp_path / 'x.db'}")
        assert manager.database_url.startswith("sqlite+aiosqlite://")
        assert manager.is_sqlite

    def test_postgres_url_gets_async_driver(self) -> None:
        manager = DatabaseManager("postgresql://user:pw@localhost/alerts")
        assert manager.database_url == "postgresql+asyncpg://user:pw@localhost/alerts"
        assert not manager.is_sqlite

    async def test_rollback_on_error(self, db: DatabaseManager) -> None:
        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await RuleRepository(session).save(make_rule())
                raise RuntimeError("abort")

        async with db.get_async_session() as session:
            assert await RuleRepository(session).get("rule-1") is None


# ============================================================================
# RuleRepository Tests
# ============================================================================


class TestRuleRepository:
    """Tests for RuleRepository."""

    async def test_save_and_get(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule())

        async with db.get_async_session() as session:
            rule = await RuleRepository(session).get("rule-1")

        assert rule is not None
        assert rule.name == "Whale buys"
        assert rule.condition == LeafCondition("whale.amount", ">", 10_000)
        assert rule.channels == ("discord", "webhook")
        assert rule.priority is Priority.HIGH
        assert rule.alert_type is AlertType.WHALE_MOVEMENT
        assert rule.owner == "alice"
        assert rule.tags == ("whales",)

    async def test_save_updates_existing(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule())
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule(name="Renamed"))

        async with db.get_async_session() as session:
            rules = await RuleRepository(session).list_all()

        assert [r.name for r in rules] == ["Renamed"]

    async def test_list_enabled(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = RuleRepository(session)
            await repo.save(make_rule("a"))
            await repo.save(make_rule("b", enabled=False))

        async with db.get_async_session() as session:
            enabled = await RuleRepository(session).list_enabled()

        assert [r.id for r in enabled] == ["a"]

    async def test_invalid_rows_skipped(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule("good"))
            session.add(
                AlertRuleModel(
                    id="bad",
                    name="Broken",
                    root_condition={"field": "x", "operator": "~", "value": 1},
                    channels=["discord"],
                )
            )

        async with db.get_async_session() as session:
            rules = await RuleRepository(session).list_enabled()

        assert [r.id for r in rules] == ["good"]

    async def test_set_enabled_and_delete(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule())

        async with db.get_async_session() as session:
            repo = RuleRepository(session)
            assert await repo.set_enabled("rule-1", False) is True
            assert await repo.set_enabled("missing", False) is False
            assert await repo.list_enabled() == []
            assert await repo.delete("rule-1") is True
            assert await repo.delete("rule-1") is False

    async def test_list_by_owner(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = RuleRepository(session)
            await repo.save(make_rule("a", owner="alice"))
            await repo.save(make_rule("b", owner="bob"))

        async with db.get_async_session() as session:
            rules = await RuleRepository(session).list_by_owner("bob")

        assert [r.id for r in rules] == ["b"]

    async def test_record_trigger(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule())

        store = SqlRuleStore(db.get_async_session)
        await store.record_trigger("rule-1", NOW)
        await store.record_trigger("rule-1", NOW + timedelta(minutes=5))

        async with db.get_async_session() as session:
            rule = await RuleRepository(session).get("rule-1")

        assert rule is not None
        assert rule.trigger_count == 2
        assert rule.last_triggered_at == NOW + timedelta(minutes=5)

    async def test_store_notifies_retired_rules(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule("a"))
            await RuleRepository(session).save(make_rule("b"))

        store = SqlRuleStore(db.get_async_session)
        retired: list[str] = []
        store.add_retire_listener(retired.append)

        assert await store.set_enabled("a", False) is True
        assert await store.set_enabled("missing", False) is False
        assert await store.delete("b") is True

        assert retired == ["a", "b"]
        assert await store.list_enabled() == []


# ============================================================================
# DeliveryLogRepository Tests
# ============================================================================


class TestDeliveryLogRepository:
    """Tests for DeliveryLogRepository."""

    async def test_upsert_tracks_latest_state(self, db: DatabaseManager) -> None:
        record = make_record()
        log = SqlDeliveryLog(db.get_async_session)
        await log.record(record)

        record.transition(DeliveryStatus.SENDING)
        record.transition(DeliveryStatus.RETRYING)
        record.retry_count = 1
        record.last_error = "HTTP 503"
        record.next_retry_at = NOW + timedelta(seconds=2)
        await log.record(record)

        async with db.get_async_session() as session:
            stored = await DeliveryLogRepository(session).get(record.id)

        assert stored is not None
        assert stored.status == "retrying"
        assert stored.retry_count == 1
        assert stored.last_error == "HTTP 503"
        assert stored.next_retry_at == NOW + timedelta(seconds=2)
        assert stored.created_at == NOW

    async def test_list_and_count(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            repo = DeliveryLogRepository(session)
            await repo.upsert(make_record(channel_id="discord"))
            await repo.upsert(make_record(channel_id="webhook", channel_type="webhook"))
            await repo.upsert(make_record("alert-2", status=DeliveryStatus.FAILED))

        async with db.get_async_session() as session:
            repo = DeliveryLogRepository(session)
            for_alert = await repo.list_for_alert("alert-1")
            counts = await repo.count_by_status()

        assert {r.channel_id for r in for_alert} == {"discord", "webhook"}
        assert counts == {"pending": 2, "failed": 1}

    async def test_cleanup_removes_old_terminal_rows(self, db: DatabaseManager) -> None:
        old = NOW - timedelta(days=10)
        async with db.get_async_session() as session:
            repo = DeliveryLogRepository(session)
            await repo.upsert(make_record("old-sent", status=DeliveryStatus.SENT, created_at=old))
            await repo.upsert(make_record("old-pending", created_at=old))
            await repo.upsert(make_record("new-sent", status=DeliveryStatus.SENT))

        async with db.get_async_session() as session:
            deleted = await DeliveryLogRepository(session).cleanup(7, now=NOW)

        async with db.get_async_session() as session:
            repo = DeliveryLogRepository(session)
            remaining = await repo.list_for_alert("old-pending") + await repo.list_for_alert(
                "new-sent"
            )

        assert deleted == 1
        assert len(remaining) == 2


# ============================================================================
# BatchRepository Tests
# ============================================================================


class TestBatchRepository:
    """Tests for BatchRepository."""

    async def test_insert_and_mark_sent(self, db: DatabaseManager) -> None:
        batch = Batch(
            alert_type=AlertType.VOLUME_SPIKE,
            priority=Priority.NORMAL,
            alerts=[make_alert("a1"), make_alert("a2")],
            summary="2 volume spikes detected",
            created_at=NOW,
        )
        await SqlDeliveryLog(db.get_async_session).record_batch(batch)

        async with db.get_async_session() as session:
            assert await BatchRepository(session).mark_sent(batch.id, NOW) is True

        async with db.get_async_session() as session:
            stored = await BatchRepository(session).get(batch.id)
            recent = await BatchRepository(session).recent()

        assert stored is not None
        assert stored.alert_ids == ["a1", "a2"]
        assert stored.batch_type == "volume_spike"
        assert stored.sent_at == NOW
        assert [b.id for b in recent] == [batch.id]


# ============================================================================
# Dedup cache Tests
# ============================================================================


class TestDedupCache:
    """Tests for the persisted dedup cache."""

    async def test_try_insert(self, db: DatabaseManager) -> None:
        expires = NOW + timedelta(minutes=5)
        async with db.get_async_session() as session:
            repo = DedupCacheRepository(session)
            assert await repo.try_insert("k", expires, now=NOW) is True
            assert await repo.try_insert("k", expires, now=NOW) is False
            assert await repo.is_live("k", now=NOW) is True

    async def test_expired_entry_replaced(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await DedupCacheRepository(session).try_insert(
                "k", NOW + timedelta(minutes=5), now=NOW
            )

        later = NOW + timedelta(minutes=6)
        async with db.get_async_session() as session:
            repo = DedupCacheRepository(session)
            assert await repo.is_live("k", now=later) is False
            assert await repo.try_insert("k", later + timedelta(minutes=5), now=later) is True

    async def test_sql_dedup_store(self, db: DatabaseManager) -> None:
        clock = {"now": NOW}
        store = SqlDedupStore(db.get_async_session, now=lambda: clock["now"])

        assert await store.should_suppress("key", 60) is False
        assert await store.should_suppress("key", 60) is True

        clock["now"] = NOW + timedelta(seconds=61)
        assert await store.sweep() == 1
        assert await store.should_suppress("key", 60) is False


class TestSqlRuleStore:
    """Tests for the rule store adapter."""

    async def test_list_enabled(self, db: DatabaseManager) -> None:
        async with db.get_async_session() as session:
            await RuleRepository(session).save(make_rule())

        rules = await SqlRuleStore(db.get_async_session).list_enabled()

        assert [r.id for r in rules] == ["rule-1"]
