"""Human-readable status text and tone classification for monitor views."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from .state import MonitorState

StatusTone = Literal["failure", "warning", "success", "neutral"]

_FAILURE_WORDS = (
    "fail",
    "error",
    "denied",
    "invalid",
    "not found",
    "unreachable",
    "not running",
    "token required",
    "disconnected",
    "missing",
    "already in use",
)
_WARNING_WORDS = (
    "pending",
    "checking",
    "paused",
    "canceled",
    "cancelled",
    "stopped",
    "not configured",
    "not set",
    "waiting",
)
_SUCCESS_WORDS = (
    "running",
    "started",
    "completed",
    "healthy",
    "reachable",
    "complete",
    "connected",
    "copied",
    "loaded",
    "detected",
)
_ICONS: dict[str, str] = {"failure": "!!", "warning": "--", "success": "OK", "neutral": "--"}


def status_tone(status: str | None) -> StatusTone:
    """Classify free-form status text; failure wins over warning over success."""
    normalized = (status or "").lower()
    if any(word in normalized for word in _FAILURE_WORDS):
        return "failure"
    if any(word in normalized for word in _WARNING_WORDS):
        return "warning"
    if any(word in normalized for word in _SUCCESS_WORDS):
        return "success"
    return "neutral"


def status_icon(status: str | None) -> str:
    return _ICONS[status_tone(status)]


def monitor_tone(monitor: MonitorState | None) -> StatusTone:
    if monitor is None:
        return "neutral"
    if monitor.token_required:
        return "failure"
    if not monitor.is_monitoring:
        return "warning"
    if monitor.is_healthy is True:
        return "success"
    if monitor.is_healthy is False:
        return "failure"
    return "neutral"


def monitor_icon(monitor: MonitorState | None) -> str:
    return _ICONS[monitor_tone(monitor)]


def _health_word(monitor: MonitorState) -> str:
    if monitor.is_healthy is True:
        return "reachable"
    if monitor.is_healthy is False:
        return "unreachable"
    return "checking"


def _checked_at(value: datetime | None) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%H:%M:%S")


def build_monitor_status(monitor: MonitorState | None) -> str:
    """One-line status for the status bar."""
    if monitor is None:
        return "Monitor target not set."
    if not monitor.is_monitoring:
        return f"Port {monitor.port}: monitoring paused."
    if monitor.token_required:
        detail = monitor.token_status_message or "open dashboard and paste gateway token."
        return f"Port {monitor.port}: token required - {detail}"
    return f"Port {monitor.port}: {_health_word(monitor)}. Last check: {_checked_at(monitor.last_checked)}."


def build_monitor_summary(monitor: MonitorState | None) -> str:
    """Detailed one-line summary for the monitor panel."""
    if monitor is None:
        return "No monitor port configured."

    monitoring_state = "running" if monitor.is_monitoring else "paused"
    state = "token required" if monitor.token_required else _health_word(monitor)
    if monitor.token_required:
        token_display = "missing (1008)"
    elif monitor.monitor_token:
        token_display = "detected"
    else:
        token_display = "pending"

    detail = monitor.health_status_message
    if not detail and not monitor.token_required:
        detail = {True: "reachable", False: "not responding"}.get(monitor.is_healthy, "checking")
    detailed = f"{state} ({detail})" if detail else state
    checked = _checked_at(monitor.last_checked)

    if monitor.token_required and monitor.token_status_message:
        return (
            f"Port {monitor.port} [{monitoring_state}] | {detailed}: {monitor.token_status_message} "
            f"| token: {token_display} | last: {checked}"
        )
    return f"Port {monitor.port} [{monitoring_state}] | {detailed} | token: {token_display} | last: {checked}"
