"""Pattern rules for token discovery and start-failure classification.

Gateway log formats are not stable across releases, so every heuristic lives
in an ordered rule table. Rules are evaluated top to bottom and the first rule
producing a usable value wins; new emission formats are added as new rows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .errors import StartOutcome

TOKEN_CHARS = r"A-Za-z0-9._%/\-+="
TOKEN_RE = re.compile(rf"^[{TOKEN_CHARS}]{{12,}}$")
_CANDIDATE = rf"([{TOKEN_CHARS}]{{12,}})"
_SURROUNDING_PUNCTUATION = "\"'`()[]{}<>,;:!?"

TOKEN_MISSING_MESSAGE = (
    "disconnected (1008): unauthorized: gateway token missing "
    "(open the dashboard URL and paste the token in Control UI settings)"
)


@dataclass(frozen=True)
class PatternRule:
    """One row of a decision table: regex -> outcome."""

    name: str
    pattern: re.Pattern[str]
    outcome: Any = None


TOKEN_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "url_query",
        re.compile(rf"(?i)https?://[^\s\"'<>]*?[?&#](?:access_)?token={_CANDIDATE}"),
    ),
    PatternRule(
        "query_fragment",
        re.compile(rf"(?i)(?:^|[?&#\s])(?:access_)?token={_CANDIDATE}"),
    ),
    PatternRule(
        "json_field",
        re.compile(r"(?i)\"(?:access_)?token\"\s*:\s*\"([^\"\s]*)\""),
    ),
    PatternRule(
        "labeled_token",
        re.compile(
            rf"(?i)\b(?:dashboard|control(?:\s+ui)?|access|auth|gateway)\s*token\b[^A-Za-z0-9]{{0,20}}{_CANDIDATE}"
        ),
    ),
)

TOKEN_MISSING_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "close_1008",
        re.compile(r"(?i)disconnected\s*\(1008\)\s*:\s*unauthorized:\s*gateway\s+token\s+missing"),
        TOKEN_MISSING_MESSAGE,
    ),
    PatternRule(
        "unauthorized_token_missing",
        re.compile(r"(?i)unauthorized:\s*gateway\s+token\s+missing"),
        TOKEN_MISSING_MESSAGE,
    ),
    PatternRule(
        "reason_token_missing",
        re.compile(r"(?i)\breason\s*=\s*[\"']?token_missing\b"),
        TOKEN_MISSING_MESSAGE,
    ),
    PatternRule(
        "code_4008",
        re.compile(r"(?i)\bcode\s*=\s*4008\b"),
        TOKEN_MISSING_MESSAGE,
    ),
)

START_FAILURE_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        "port_in_use",
        re.compile(r"(?i)\b(?:already\s+running|already\s+in\s+use|lock\s+timeout|EADDRINUSE)\b"),
        StartOutcome.PORT_IN_USE,
    ),
)


def is_token(value: str | None) -> bool:
    """Return true when value has the shape of a gateway token."""
    return bool(value) and TOKEN_RE.match(value or "") is not None


def _usable(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip()
    if not value or value.lower() == "null":
        return None
    if not is_token(value):
        return None
    return value


def extract_token(text: str | None) -> str | None:
    """Return the first token found by the ordered structured rules."""
    if not text or not text.strip():
        return None
    for rule in TOKEN_RULES:
        for match in rule.pattern.finditer(text):
            token = _usable(match.group(1))
            if token is not None:
                return token
    return None


def extract_plain_candidate(text: str | None) -> str | None:
    """Return the first bare whitespace-separated word that looks like a token."""
    if not text:
        return None
    for word in text.split():
        candidate = word.strip(_SURROUNDING_PUNCTUATION)
        token = _usable(candidate)
        if token is not None:
            return token
    return None


def extract_token_or_candidate(text: str | None) -> str | None:
    """Structured extraction with bare-candidate fallback (e.g. pasted tokens)."""
    return extract_token(text) or extract_plain_candidate(text)


def detect_token_missing(line: str | None) -> str | None:
    """Return an explanatory message when a line reports a missing-token rejection."""
    if not line or not line.strip():
        return None
    for rule in TOKEN_MISSING_RULES:
        if rule.pattern.search(line):
            return str(rule.outcome)
    return None


def classify_start_output(*texts: str | None) -> StartOutcome | None:
    """Classify captured start output; None when no failure rule matches."""
    for rule in START_FAILURE_RULES:
        for text in texts:
            if text and rule.pattern.search(text):
                return rule.outcome
    return None


def is_port_in_use_text(*texts: str | None) -> bool:
    return classify_start_output(*texts) is StartOutcome.PORT_IN_USE
