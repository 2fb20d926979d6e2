"""Tests for the in-memory rule store."""

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from token_alert_hub.rules.models import LeafCondition, Rule, RuleValidationError
from token_alert_hub.rules.store import InMemoryRuleStore

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def rule() -> Rule:
    return Rule(
        id="r1",
        name="Big volume",
        condition=LeafCondition("volume_24h", ">", 1000),
        channels=("discord",),
    )


@pytest.fixture
def store(rule: Rule) -> InMemoryRuleStore:
    return InMemoryRuleStore([rule])


# ============================================================================
# InMemoryRuleStore Tests
# ============================================================================


class TestInMemoryRuleStore:
    """Tests for InMemoryRuleStore."""

    async def test_list_enabled(self, store: InMemoryRuleStore) -> None:
        rules = await store.list_enabled()
        assert [r.id for r in rules] == ["r1"]

    async def test_disabled_rules_excluded(self, store: InMemoryRuleStore) -> None:
        store.set_enabled("r1", False)
        assert await store.list_enabled() == []
        assert len(store.all()) == 1

    async def test_snapshot_is_isolated(self, store: InMemoryRuleStore) -> None:
        """Edits after a read do not leak into the returned snapshot."""
        snapshot = await store.list_enabled()
        store.set_enabled("r1", False)
        assert snapshot[0].enabled is True

    async def test_record_trigger(self, store: InMemoryRuleStore) -> None:
        when = datetime(2026, 3, 1, tzinfo=UTC)
        await store.record_trigger("r1", when)
        await store.record_trigger("r1", when)
        rule = store.get("r1")
        assert rule is not None
        assert rule.trigger_count == 2
        assert rule.last_triggered_at == when

    async def test_record_trigger_unknown_rule(self, store: InMemoryRuleStore) -> None:
        await store.record_trigger("gone", datetime.now(UTC))

    def test_delete(self, store: InMemoryRuleStore) -> None:
        assert store.delete("r1") is True
        assert store.delete("r1") is False
        assert store.get("r1") is None

    def test_set_enabled_unknown(self, store: InMemoryRuleStore) -> None:
        assert store.set_enabled("nope", True) is None

    def test_disable_notifies_listeners(self, store: InMemoryRuleStore) -> None:
        retired: list[str] = []
        store.add_retire_listener(retired.append)

        store.set_enabled("r1", False)
        store.set_enabled("r1", False)
        store.set_enabled("r1", True)

        assert retired == ["r1"]

    def test_delete_notifies_listeners(self, store: InMemoryRuleStore) -> None:
        retired: list[str] = []
        store.add_retire_listener(retired.append)

        store.delete("r1")
        store.delete("r1")

        assert retired == ["r1"]

    def test_failing_listener_does_not_block_others(self, store: InMemoryRuleStore) -> None:
        retired: list[str] = []

        def broken(rule_id: str) -> None:
            raise RuntimeError("listener down")

        store.add_retire_listener(broken)
        store.add_retire_listener(retired.append)

        assert store.delete("r1") is True
        assert retired == ["r1"]


class TestFromFile:
    """Tests for loading rules from a JSON file."""

    def test_loads_rules(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "id": "a",
                        "name": "Whale buy",
                        "condition": {"field": "whale.action", "operator": "==", "value": "buy"},
                        "channels": ["telegram"],
                    },
                    {
                        "id": "b",
                        "name": "Off",
                        "condition": {"field": "x", "operator": ">", "value": 0},
                        "channels": ["discord"],
                        "enabled": False,
                    },
                ]
            )
        )
        store = InMemoryRuleStore.from_file(path)
        assert {r.id for r in store.all()} == {"a", "b"}

    def test_not_a_list(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"id": "a"}))
        with pytest.raises(RuleValidationError):
            InMemoryRuleStore.from_file(path)

    def test_invalid_rule(self, tmp_path: Path) -> None:
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([{"name": "no condition", "channels": ["x"]}]))
        with pytest.raises(RuleValidationError):
            InMemoryRuleStore.from_file(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(OSError):
            InMemoryRuleStore.from_file(tmp_path / "missing.json")
