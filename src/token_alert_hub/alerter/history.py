"""Alert history tracking.

Every fired alert is written to Redis with a retention TTL and indexed by
time, rule and event identity so recent activity can be queried without a
database round trip.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from token_alert_hub.rules.models import PendingAlert

logger = logging.getLogger(__name__)


@dataclass
class AlertRecord:
    """Record of a fired alert.

    Attributes:
        alert_id: Alert id.
        rule_id: Rule that fired.
        identity: Mint or wallet address of the event.
        alert_type: Alert type value.
        priority: Priority value.
        title: Alert title.
        channels: Channels the alert targeted.
        dedup_key: Key used for deduplication.
        symbol: Token symbol when known.
        created_at: When the alert fired.
    """

    alert_id: str
    rule_id: str
    identity: str
    alert_type: str
    priority: str
    title: str
    channels: list[str]
    dedup_key: str
    symbol: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_alert(cls, alert: PendingAlert) -> AlertRecord:
        return cls(
            alert_id=alert.id,
            rule_id=alert.rule_id,
            identity=alert.identity,
            alert_type=alert.alert_type.value,
            priority=alert.priority.value,
            title=alert.title,
            channels=list(alert.channels),
            dedup_key=alert.dedup_key,
            symbol=alert.symbol,
            created_at=alert.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "identity": self.identity,
            "alert_type": self.alert_type,
            "priority": self.priority,
            "title": self.title,
            "channels": self.channels,
            "dedup_key": self.dedup_key,
            "symbol": self.symbol,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertRecord:
        """Deserialize from dictionary."""
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        elif created_at is None:
            created_at = datetime.now(UTC)

        return cls(
            alert_id=data["alert_id"],
            rule_id=data["rule_id"],
            identity=data["identity"],
            alert_type=data["alert_type"],
            priority=data["priority"],
            title=data.get("title", ""),
            channels=data.get("channels", []),
            dedup_key=data.get("dedup_key", ""),
            symbol=data.get("symbol"),
            created_at=created_at,
        )


class AlertHistory:
    """Stores fired alerts in Redis with secondary indexes."""

    KEY_PREFIX_ALERT = "alert:record:"
    KEY_INDEX_TIME = "alert:index:time"
    KEY_INDEX_RULE = "alert:index:rule:"
    KEY_INDEX_IDENTITY = "alert:index:identity:"

    def __init__(self, redis: Any, *, retention_days: int = 30) -> None:
        """Initialize alert history.

        Args:
            redis: Redis client (async).
            retention_days: Days to retain alert history.
        """
        self.redis = redis
        self.retention_days = retention_days
        self._retention_ttl = retention_days * 86400

    async def record(self, alert: PendingAlert) -> AlertRecord:
        """Record a fired alert.

        Args:
            alert: The alert the rule engine produced.

        Returns:
            The stored record.
        """
        record = AlertRecord.from_alert(alert)
        score = record.created_at.timestamp()

        async with self.redis.pipeline() as pipe:
            pipe.set(
                f"{self.KEY_PREFIX_ALERT}{record.alert_id}",
                json.dumps(record.to_dict()),
                ex=self._retention_ttl,
            )
            pipe.zadd(self.KEY_INDEX_TIME, {record.alert_id: score})

            rule_key = f"{self.KEY_INDEX_RULE}{record.rule_id}"
            pipe.zadd(rule_key, {record.alert_id: score})
            pipe.expire(rule_key, self._retention_ttl)

            identity_key = f"{self.KEY_INDEX_IDENTITY}{record.identity}"
            pipe.zadd(identity_key, {record.alert_id: score})
            pipe.expire(identity_key, self._retention_ttl)

            await pipe.execute()

        logger.debug(f"Recorded alert {record.alert_id} for {record.identity}")
        return record

    async def get_alert(self, alert_id: str) -> AlertRecord | None:
        """Get a specific alert record."""
        data = await self.redis.get(f"{self.KEY_PREFIX_ALERT}{alert_id}")
        if not data:
            return None
        return AlertRecord.from_dict(json.loads(data))

    def _index_key(self, rule_id: str | None, identity: str | None) -> str:
        if rule_id:
            return f"{self.KEY_INDEX_RULE}{rule_id}"
        if identity:
            return f"{self.KEY_INDEX_IDENTITY}{identity}"
        return self.KEY_INDEX_TIME

    async def get_alerts(
        self,
        start: datetime,
        end: datetime,
        rule_id: str | None = None,
        identity: str | None = None,
        limit: int = 100,
    ) -> list[AlertRecord]:
        """Query alert history.

        Args:
            start: Start of time range.
            end: End of time range.
            rule_id: Optional rule filter.
            identity: Optional mint/wallet filter.
            limit: Maximum number of results.

        Returns:
            Matching records, oldest first.
        """
        alert_ids = await self.redis.zrangebyscore(
            self._index_key(rule_id, identity),
            start.timestamp(),
            end.timestamp(),
            start=0,
            num=limit,
        )

        records = []
        for alert_id in alert_ids or []:
            if isinstance(alert_id, bytes):
                alert_id = alert_id.decode()
            record = await self.get_alert(alert_id)
            if record is None:
                continue
            if rule_id and record.rule_id != rule_id:
                continue
            if identity and record.identity != identity:
                continue
            records.append(record)
        return records

    async def get_recent_count(
        self,
        hours: int = 24,
        rule_id: str | None = None,
        identity: str | None = None,
    ) -> int:
        """Count alerts fired in the last ``hours`` hours."""
        end = datetime.now(UTC)
        start = end - timedelta(hours=hours)
        return await self.redis.zcount(
            self._index_key(rule_id, identity), start.timestamp(), end.timestamp()
        )

    async def cleanup_old_alerts(self) -> int:
        """Trim the time index past the retention period.

        Returns:
            Number of index entries removed.
        """
        cutoff = datetime.now(UTC) - timedelta(days=self.retention_days)
        removed = await self.redis.zremrangebyscore(
            self.KEY_INDEX_TIME, "-inf", cutoff.timestamp()
        )
        # Records and per-rule/identity indexes expire via TTL
        if removed:
            logger.info(f"Cleaned up {removed} old alert references")
        return removed
