"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel.
"""

from __future__ import annotations

from opsroute.core.models import Notification

URGENCY_EMOJI = {
    "URGENT": "🚨",
    "ESCALATION": "📢",
    "COMPLAINT": "⚠️",
    "INSTRUCTION": "📋",
    "CASUAL": "💬",
}

SEVERITY_LABELS = {
    "critical": "CRITICAL",
    "high": "HIGH",
    "medium": "MEDIUM",
    "low": "LOW",
}


def escape_whatsapp(value: str) -> str:
    """Neutralize WhatsApp inline markup characters in user-provided text."""

    for ch in "*_~`":
        value = value.replace(ch, f"\\{ch}")
    return value


def _timestamp(notification: Notification) -> str:
    return notification.received_at.astimezone().strftime("%H:%M %d-%m-%Y").strip()


def _header(notification: Notification) -> str:
    emoji = URGENCY_EMOJI.get(notification.ai_category, "📌")
    if notification.escalation_level:
        return f"{emoji} ESCALATION L{notification.escalation_level} - {notification.category_name}"
    return f"{emoji} {notification.ai_category} - {notification.category_name}"


def _format_whatsapp(notification: Notification) -> str:
    """Create the WhatsApp body; *bold* is the only markup used."""

    esc = escape_whatsapp
    lines = [
        f"*{esc(_header(notification))}*",
        "",
        f"*From:* {esc(notification.sender or 'Unknown')}",
        f"*Time:* {_timestamp(notification)}",
        f"*Category:* {esc(notification.category_name)} ({esc(notification.department)})",
        f"*Urgency:* {SEVERITY_LABELS.get(notification.severity, notification.severity)}",
        "",
        "*Message:*",
        esc(notification.excerpt),
    ]
    if notification.matched_keywords:
        lines.extend(["", f"*Keywords:* {esc(', '.join(notification.matched_keywords))}"])
    lines.extend(["", "_Please respond promptly and acknowledge this message._"])
    return "\n".join(lines)


def _format_plain(notification: Notification) -> str:
    """Create a markup-free body for logs and dry runs."""

    lines = [
        f"[{_timestamp(notification)}] {_header(notification)}",
        f"Rule: {notification.rule_name} -> {notification.channel_name}",
        f"Severity: {notification.severity}",
        notification.excerpt,
    ]
    return "\n".join(lines)


def format_notification(notification: Notification, mode: str = "whatsapp") -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "whatsapp":
        return _format_whatsapp(notification)
    if mode == "plain":
        return _format_plain(notification)
    raise ValueError(f"Unsupported notification format: {mode}")
