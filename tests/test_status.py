from dataclasses import replace
from datetime import datetime, timezone

from gatewaywarden.events import EventFeed
from gatewaywarden.state import MonitorState
from gatewaywarden.status import (
    build_monitor_status,
    build_monitor_summary,
    monitor_icon,
    monitor_tone,
    status_icon,
    status_tone,
)


def test_status_tone_priority() -> None:
    assert status_tone("Gateway start failed.") == "failure"
    assert status_tone("Requested port 1 is already in use. Choose a different port.") == "failure"
    assert status_tone("Gateway start canceled.") == "warning"
    assert status_tone("Gateway running on port 18789.") == "success"
    assert status_tone("Gateway not running, start failed") == "failure"
    assert status_tone("") == "neutral"
    assert status_icon("Gateway start failed.") == "!!"


def test_monitor_status_lines() -> None:
    assert build_monitor_status(None) == "Monitor target not set."
    state = MonitorState.new(18789)
    assert build_monitor_status(state.with_monitoring(False)) == "Port 18789: monitoring paused."
    assert build_monitor_status(state).startswith("Port 18789: checking. Last check: never")
    checked = state.with_health(True, datetime(2026, 1, 1, tzinfo=timezone.utc))
    assert build_monitor_status(checked).startswith("Port 18789: reachable. Last check: ")
    missing = state.with_token_missing("paste the token")
    assert build_monitor_status(missing) == "Port 18789: token required - paste the token"


def test_monitor_tone_and_icon() -> None:
    state = MonitorState.new(1)
    assert monitor_tone(None) == "neutral"
    assert monitor_tone(state) == "neutral"
    assert monitor_tone(replace(state, is_healthy=True)) == "success"
    assert monitor_tone(replace(state, is_healthy=False)) == "failure"
    assert monitor_tone(state.with_monitoring(False)) == "warning"
    assert monitor_tone(state.with_token_missing("x")) == "failure"
    assert monitor_icon(replace(state, is_healthy=True)) == "OK"


def test_monitor_summary_token_display() -> None:
    assert build_monitor_summary(None) == "No monitor port configured."
    state = replace(MonitorState.new(18789), is_healthy=True)
    assert "token: pending" in build_monitor_summary(state)
    assert "token: detected" in build_monitor_summary(state.with_token("abcdefghijkl"))
    summary = build_monitor_summary(state.with_token_missing("paste it"))
    assert "token required" in summary
    assert "missing (1008)" in summary
    assert "[running]" in summary


def test_event_feed_status_changes_only_once() -> None:
    feed = EventFeed(max_entries=3)
    seen: list[str] = []
    feed.subscribe(lambda entry: seen.append(f"{entry.kind}:{entry.text}"))
    feed.set_status("a")
    feed.set_status("a")
    feed.log("one")
    feed.log("two")
    feed.log("three")
    assert feed.status == "a"
    assert seen[0] == "status:a"
    assert len(seen) == 4
    assert feed.lines() == ["one", "two", "three"]
    assert feed.lines(limit=1) == ["three"]
