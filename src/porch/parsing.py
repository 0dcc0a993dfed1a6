"""Extraction of structured outcomes from free-form worker and reviewer text.

Ambiguity always resolves conservatively: a missing or malformed verdict is
``request_changes`` and a missing signal is ``None``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

MIN_REVIEW_LENGTH = 50

_SIGNAL_TAG = re.compile(r"<signal>([^<]+)</signal>", re.IGNORECASE)
_SUMMARY_LINE = re.compile(r"SUMMARY:\s*(.+)", re.IGNORECASE)
_DECORATION = "*_`-#> \t\r"
_VERDICT_PREFIX = "VERDICT:"


class Verdict(StrEnum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"
    ERROR = "error"


# Prefix match order matters: REQUEST_CHANGES first so "REQUEST_CHANGES" never
# reads as a truncated APPROVE/COMMENT.
_VERDICT_MATCH_ORDER = (
    ("REQUEST_CHANGES", Verdict.REQUEST_CHANGES),
    ("APPROVE", Verdict.APPROVE),
    ("COMMENT", Verdict.COMMENT),
)


class SignalKind(StrEnum):
    PHASE_COMPLETE = "PHASE_COMPLETE"
    GATE_NEEDED = "GATE_NEEDED"
    BLOCKED = "BLOCKED"
    AWAITING_INPUT = "AWAITING_INPUT"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True, frozen=True)
class Signal:
    kind: SignalKind
    name: str
    detail: str | None = None


def parse_verdict(text: str | None) -> Verdict:
    if not text or len(text.strip()) < MIN_REVIEW_LENGTH:
        return Verdict.REQUEST_CHANGES

    for line in reversed(text.splitlines()):
        stripped = line.strip().strip(_DECORATION).upper()
        if not stripped.startswith(_VERDICT_PREFIX) or "[" in stripped:
            continue
        value = stripped[len(_VERDICT_PREFIX) :].strip().strip(_DECORATION)
        value = re.sub(r"[\s-]+", "_", value)
        for prefix, verdict in _VERDICT_MATCH_ORDER:
            if value.startswith(prefix):
                return verdict
    return Verdict.REQUEST_CHANGES


def all_approve(verdicts: Iterable[Verdict | str]) -> bool:
    return all(Verdict(v) in {Verdict.APPROVE, Verdict.COMMENT} for v in verdicts)


def extract_all_signals(text: str) -> list[str]:
    return [match.strip() for match in _SIGNAL_TAG.findall(text or "") if match.strip()]


def extract_completion_signal(text: str) -> str | None:
    signals = extract_all_signals(text)
    return signals[-1] if signals else None


def strip_signals(text: str) -> str:
    return _SIGNAL_TAG.sub("", text or "").strip()


def parse_signal(text: str) -> Signal | None:
    raw = extract_completion_signal(text)
    if raw is None:
        return None
    name, _, detail = raw.partition(":")
    name = name.strip().upper()
    try:
        kind = SignalKind(name)
    except ValueError:
        kind = SignalKind.UNKNOWN
    return Signal(kind=kind, name=name, detail=detail.strip() or None)


def extract_review_summary(text: str) -> str | None:
    match = _SUMMARY_LINE.search(text or "")
    if match is None:
        return None
    summary = match.group(1).strip().strip(_DECORATION)
    return summary or None
