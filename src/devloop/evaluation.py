"""Parsing of the evaluator's COMPLETE / NEEDS_WORK verdict."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Optional


class EvalVerdict(StrEnum):
    COMPLETE = "COMPLETE"
    NEEDS_WORK = "NEEDS_WORK"


_FENCED_VERDICT = re.compile(r"```[\s\S]*?(COMPLETE|NEEDS_WORK)[\s\S]*?```", re.IGNORECASE)
_REASON_LINE = re.compile(r"Reason:\s*(.+?)(?:\n|$)", re.IGNORECASE)


def _has_token(upper_text: str, token: str) -> bool:
    return upper_text.startswith(token) or f"\n{token}" in upper_text


def parse_evaluation(response: str) -> EvalVerdict:
    """Anything that is not clearly ``COMPLETE`` counts as ``NEEDS_WORK``."""
    upper = response.strip().upper()
    if _has_token(upper, EvalVerdict.COMPLETE):
        return EvalVerdict.COMPLETE
    if _has_token(upper, EvalVerdict.NEEDS_WORK):
        return EvalVerdict.NEEDS_WORK
    match = _FENCED_VERDICT.search(response)
    if match and match.group(1).upper() == EvalVerdict.COMPLETE:
        return EvalVerdict.COMPLETE
    return EvalVerdict.NEEDS_WORK


def extract_evaluation_reason(response: str) -> Optional[str]:
    match = _REASON_LINE.search(response)
    if match:
        reason = match.group(1).strip()
        return reason or None
    return None
