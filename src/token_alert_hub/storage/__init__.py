"""Storage layer - Rules, delivery log, batches and dedup cache."""

from token_alert_hub.storage.database import DatabaseManager
from token_alert_hub.storage.repos import (
    BatchRepository,
    DedupCacheRepository,
    DeliveryLogRepository,
    RuleRepository,
    SqlDedupStore,
    SqlDeliveryLog,
    SqlRuleStore,
)

__all__ = [
    "BatchRepository",
    "DatabaseManager",
    "DedupCacheRepository",
    "DeliveryLogRepository",
    "RuleRepository",
    "SqlDedupStore",
    "SqlDeliveryLog",
    "SqlRuleStore",
]
