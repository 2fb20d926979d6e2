"""Alert message formatter for multi-channel delivery.

This module turns PendingAlert and Batch objects into human-readable messages
for Discord, Telegram and plain text, plus a structured JSON payload for
webhooks.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from token_alert_hub.alerter.models import Batch, FormattedAlert
from token_alert_hub.rules.models import AlertType, PendingAlert, Priority

SOLSCAN_TOKEN_URL = "https://solscan.io/token/{address}"
SOLSCAN_ACCOUNT_URL = "https://solscan.io/account/{address}"

# Discord embed colors (decimal values)
COLOR_CRITICAL = 15158332  # Red (#E74C3C)
COLOR_HIGH = 15105570  # Orange (#E67E22)
COLOR_NORMAL = 16776960  # Yellow (#FFFF00)
COLOR_LOW = 3066993  # Green (#2ECC71)

MAX_BATCH_LINES = 5

_PRIORITY_COLORS = {
    Priority.CRITICAL: COLOR_CRITICAL,
    Priority.HIGH: COLOR_HIGH,
    Priority.NORMAL: COLOR_NORMAL,
    Priority.LOW: COLOR_LOW,
}

_PRIORITY_TAGS = {
    Priority.CRITICAL: "🔴 CRITICAL",
    Priority.HIGH: "🟠 HIGH",
    Priority.NORMAL: "🟡",
    Priority.LOW: "🟢",
}

_TYPE_EMOJI = {
    AlertType.NEW_TOKEN: "✨",
    AlertType.VOLUME_SPIKE: "📊",
    AlertType.WHALE_MOVEMENT: "🐋",
    AlertType.LIQUIDITY_DRAIN: "💧",
    AlertType.AUTHORITY_CHANGE: "🔐",
    AlertType.PRICE_ALERT: "💰",
    AlertType.SMART_MONEY: "🧠",
    AlertType.WALLET_ACTIVITY: "👛",
    AlertType.TRADING_SIGNAL: "📡",
    AlertType.RUG_DETECTED: "🚨",
    AlertType.SYSTEM: "ℹ️",
}

# (data key, label) pairs rendered as fields when present
_DATA_FIELDS: tuple[tuple[str, str, str], ...] = (
    ("price", "Price", "money"),
    ("priceChange1h", "1h Change", "percent"),
    ("priceChange24h", "24h Change", "percent"),
    ("volume24h", "Volume", "money"),
    ("liquidity", "Liquidity", "money"),
    ("marketCap", "Market Cap", "money"),
    ("holders", "Holders", "number"),
    ("riskScore", "Risk Score", "raw"),
)

_TELEGRAM_SPECIAL = "_*[]()~`>#+-=|{}.!\\"


def truncate_address(address: str, chars: int = 4) -> str:
    """Truncate a base58 address to ABCD...WXYZ format."""
    if len(address) < chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


def format_number(value: float) -> str:
    """Format a number with a K/M/B suffix."""
    if value >= 1e9:
        return f"{value / 1e9:.2f}B"
    if value >= 1e6:
        return f"{value / 1e6:.2f}M"
    if value >= 1e3:
        return f"{value / 1e3:.2f}K"
    return f"{value:.6f}" if value < 1 else f"{value:.2f}"


def format_percent(value: float) -> str:
    """Format a signed percentage."""
    sign = "+" if value >= 0 else ""
    return f"{sign}{value:.2f}%"


def get_priority_color(priority: Priority) -> int:
    """Get Discord embed color for a priority."""
    return _PRIORITY_COLORS[priority]


def get_type_emoji(alert_type: AlertType) -> str:
    """Get the emoji shown in front of an alert of this type."""
    return _TYPE_EMOJI.get(alert_type, "🔔")


def escape_telegram_markdown(text: str) -> str:
    """Escape special Telegram MarkdownV2 characters."""
    return "".join(f"\\{c}" if c in _TELEGRAM_SPECIAL else c for c in text)


def _format_value(value: Any, kind: str) -> str | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return str(value) if kind == "raw" else None
    if kind == "money":
        return f"${format_number(float(value))}"
    if kind == "percent":
        return format_percent(float(value))
    if kind == "number":
        return format_number(float(value))
    return str(value)


def data_fields(data: Mapping[str, Any]) -> list[tuple[str, str]]:
    """Extract labelled display values from an alert's data payload."""
    fields = []
    for key, label, kind in _DATA_FIELDS:
        if key not in data or data[key] is None:
            continue
        rendered = _format_value(data[key], kind)
        if rendered is not None:
            fields.append((label, rendered))
    return fields


class AlertFormatter:
    """Formats alerts and batches into multi-channel messages.

    Supports two verbosity levels:
    - compact: Title, priority and message only
    - detailed: Adds data fields, match reasons and explorer links
    """

    def __init__(
        self,
        verbosity: Literal["compact", "detailed"] = "detailed",
        *,
        footer: str = "Token Alert Hub",
    ) -> None:
        """Initialize the formatter.

        Args:
            verbosity: Level of detail in formatted messages.
            footer: Footer text for Discord embeds.
        """
        self.verbosity = verbosity
        self.footer = footer

    def format(self, alert: PendingAlert) -> FormattedAlert:
        """Format a single alert.

        Args:
            alert: The alert to format.

        Returns:
            FormattedAlert with all channel formats.
        """
        links = self._build_links(alert)
        fields = data_fields(alert.data) if self.verbosity == "detailed" else []
        emoji = get_type_emoji(alert.alert_type)
        title = f"{emoji} {alert.title}"

        body_lines = [alert.message]
        if self.verbosity == "detailed":
            body_lines.extend(f"{label}: {value}" for label, value in fields)
        body = "\n".join(body_lines)

        return FormattedAlert(
            title=title,
            body=body,
            discord_embed=self._alert_embed(alert, title, fields, links),
            telegram_markdown=self._alert_telegram(alert, fields, links),
            plain_text=self._alert_plain_text(alert, fields, links),
            payload={"type": "alert", "alert": alert.to_payload()},
            links=links,
        )

    def format_batch(self, batch: Batch) -> FormattedAlert:
        """Format a batch of alerts into one message."""
        emoji = get_type_emoji(batch.alert_type)
        title = f"{emoji} {batch.summary}"
        shown = batch.alerts[:MAX_BATCH_LINES]
        hidden = len(batch.alerts) - len(shown)

        lines = []
        for alert in shown:
            suffix = f" ({alert.symbol})" if alert.symbol else ""
            lines.append(f"• {alert.title}{suffix}")
        if hidden > 0:
            lines.append(f"... and {hidden} more alerts")
        body = "\n".join(lines)

        tg_lines = [
            f"{emoji} *{escape_telegram_markdown(batch.summary)}* "
            f"{escape_telegram_markdown(_PRIORITY_TAGS[batch.priority])}",
            "",
        ]
        for alert in shown:
            tg_lines.append(f"• {escape_telegram_markdown(alert.title)}")
            if alert.symbol:
                tg_lines.append(f"  Symbol: *{escape_telegram_markdown(alert.symbol)}*")
        if hidden > 0:
            tg_lines.append("")
            tg_lines.append(f"_\\.\\.\\. and {hidden} more alerts_")

        embed: dict[str, object] = {
            "title": title,
            "description": body,
            "color": get_priority_color(batch.priority),
            "footer": {"text": f"{self.footer} | {len(batch.alerts)} alerts"},
            "timestamp": batch.created_at.isoformat(),
        }

        plain = "\n".join([batch.summary.upper(), "=" * 30, "", body])

        return FormattedAlert(
            title=title,
            body=body,
            discord_embed=embed,
            telegram_markdown="\n".join(tg_lines),
            plain_text=plain,
            payload={"type": "batch", "batch": batch.to_payload()},
        )

    def _build_links(self, alert: PendingAlert) -> dict[str, str]:
        if self.verbosity != "detailed" or not alert.identity:
            return {}
        template = SOLSCAN_TOKEN_URL if "wallet" not in alert.data else SOLSCAN_ACCOUNT_URL
        return {"explorer": template.format(address=alert.identity)}

    def _alert_embed(
        self,
        alert: PendingAlert,
        title: str,
        fields: list[tuple[str, str]],
        links: dict[str, str],
    ) -> dict[str, object]:
        embed_fields: list[dict[str, object]] = []
        if alert.symbol:
            embed_fields.append({"name": "Token", "value": alert.symbol, "inline": True})
        embed_fields.append(
            {"name": "Address", "value": f"`{truncate_address(alert.identity)}`", "inline": True}
        )
        for label, value in fields:
            embed_fields.append({"name": label, "value": value, "inline": True})
        if self.verbosity == "detailed" and alert.reasons:
            embed_fields.append(
                {"name": "Matched", "value": "\n".join(alert.reasons), "inline": False}
            )

        embed: dict[str, object] = {
            "title": title,
            "description": alert.message,
            "color": get_priority_color(alert.priority),
            "fields": embed_fields,
            "footer": {"text": f"{self.footer} | {alert.rule_name}"},
            "timestamp": alert.created_at.isoformat(),
        }
        if "explorer" in links:
            embed["url"] = links["explorer"]
        return embed

    def _alert_telegram(
        self,
        alert: PendingAlert,
        fields: list[tuple[str, str]],
        links: dict[str, str],
    ) -> str:
        emoji = get_type_emoji(alert.alert_type)
        tag = escape_telegram_markdown(_PRIORITY_TAGS[alert.priority])
        lines = [
            f"{emoji} *{escape_telegram_markdown(alert.title)}* {tag}",
            "",
            escape_telegram_markdown(alert.message),
        ]
        if fields or alert.symbol:
            lines.append("")
        if alert.symbol:
            lines.append(f"*Symbol:* {escape_telegram_markdown(alert.symbol)}")
        for label, value in fields:
            lines.append(f"*{escape_telegram_markdown(label)}:* {escape_telegram_markdown(value)}")
        if "explorer" in links:
            lines.append("")
            lines.append(f"[View on Solscan]({links['explorer']})")
        return "\n".join(lines)

    def _alert_plain_text(
        self,
        alert: PendingAlert,
        fields: list[tuple[str, str]],
        links: dict[str, str],
    ) -> str:
        lines = [
            f"[{alert.priority.value.upper()}] {alert.title}",
            "=" * 30,
            "",
            alert.message,
        ]
        if alert.symbol:
            lines.append(f"Token: {alert.symbol} ({truncate_address(alert.identity)})")
        for label, value in fields:
            lines.append(f"{label}: {value}")
        if "explorer" in links:
            lines.append("")
            lines.append(f"Explorer: {links['explorer']}")
        return "\n".join(lines)
