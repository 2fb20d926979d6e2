"""Rule storage interfaces used by the rule engine."""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

from token_alert_hub.rules.models import Rule, RuleValidationError

logger = logging.getLogger(__name__)

RuleRetiredCallback = Callable[[str], object]


class RuleStore(Protocol):
    """Read access to the active rule set plus trigger bookkeeping."""

    async def list_enabled(self) -> list[Rule]:
        """Return a snapshot of all enabled rules."""
        ...

    async def record_trigger(self, rule_id: str, triggered_at: datetime) -> None:
        """Update last-triggered time and trigger count for a rule."""
        ...


class RetirementNotifier:
    """Tells listeners when a rule stops being active (disabled or deleted).

    Listeners run synchronously, in registration order, before the store
    call returns.
    """

    def __init__(self) -> None:
        self._retire_listeners: list[RuleRetiredCallback] = []

    def add_retire_listener(self, callback: RuleRetiredCallback) -> None:
        """Register a callback taking the retired rule's id."""
        self._retire_listeners.append(callback)

    def _notify_retired(self, rule_id: str) -> None:
        for callback in self._retire_listeners:
            try:
                callback(rule_id)
            except Exception as e:
                logger.error("Rule retirement listener failed for %s: %s", rule_id, e)


class InMemoryRuleStore(RetirementNotifier):
    """Rule store kept in process memory.

    Rules are copied on read so edits made between events never show up in
    the middle of an evaluation pass.
    """

    def __init__(self, rules: list[Rule] | None = None) -> None:
        super().__init__()
        self._rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.upsert(rule)

    @classmethod
    def from_file(cls, path: str | Path) -> InMemoryRuleStore:
        """Load rules from a JSON file holding a list of rule objects.

        Raises:
            RuleValidationError: If any rule in the file is invalid.
            OSError: If the file cannot be read.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise RuleValidationError("Rules file must contain a JSON list")
        store = cls([Rule.from_dict(item) for item in raw])
        logger.info("Loaded %d rules from %s", len(store.all()), path)
        return store

    def upsert(self, rule: Rule) -> Rule:
        """Insert or replace a rule."""
        rule.validate()
        self._rules[rule.id] = rule
        logger.info("Stored rule %s (%s)", rule.name, rule.id)
        return rule

    def delete(self, rule_id: str) -> bool:
        """Remove a rule. Returns False if it was not present."""
        deleted = self._rules.pop(rule_id, None) is not None
        if deleted:
            logger.info("Deleted rule %s", rule_id)
            self._notify_retired(rule_id)
        return deleted

    def get(self, rule_id: str) -> Rule | None:
        """Get a rule by id."""
        return self._rules.get(rule_id)

    def set_enabled(self, rule_id: str, enabled: bool) -> Rule | None:
        """Enable or disable a rule.

        Disabling an enabled rule notifies retirement listeners.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            return None
        was_enabled = rule.enabled
        rule.enabled = enabled
        if was_enabled and not enabled:
            logger.info("Disabled rule %s", rule_id)
            self._notify_retired(rule_id)
        return rule

    def all(self) -> list[Rule]:
        """All rules, enabled or not."""
        return list(self._rules.values())

    async def list_enabled(self) -> list[Rule]:
        """Return copies of all enabled rules."""
        return [dataclasses.replace(r) for r in self._rules.values() if r.enabled]

    async def record_trigger(self, rule_id: str, triggered_at: datetime) -> None:
        """Update trigger statistics; silently ignores deleted rules."""
        rule = self._rules.get(rule_id)
        if rule is None:
            return
        rule.last_triggered_at = triggered_at
        rule.trigger_count += 1
