"""Request payloads + validation.

Submit body:
  {"name": "A", "score": 12, "mode": "challenge", "date": "2026-10-19"}
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping

from flapboard.board.errors import InvalidScore, ValidationError

# Challenge days roll over at midnight UTC+8.
CHALLENGE_TZ = timezone(timedelta(hours=8))

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_SCORE_RE = re.compile(r"^-?\d+$", re.ASCII)

# Keeps score * 10**10 + time below 2**53: exact as a Redis double and an sqlite INTEGER.
MAX_SCORE = 900_000


class Mode(str, Enum):
    ENDLESS = "endless"
    CHALLENGE = "challenge"

    @classmethod
    def parse(cls, v: Any, *, default: "Mode | None" = None) -> "Mode | None":
        if v is None or v == "":
            return default
        if isinstance(v, str):
            try:
                return cls(v.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"unknown mode: {v!r}")


class SortBy(str, Enum):
    SCORE = "score"
    RECENCY = "recency"


def current_challenge_date(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(CHALLENGE_TZ).strftime("%Y-%m-%d")


def parse_date(v: Any) -> str | None:
    if v is None or v == "":
        return None
    if not isinstance(v, str) or not _DATE_RE.match(v.strip()):
        raise ValidationError("date must be YYYY-MM-DD")
    v = v.strip()
    try:
        datetime.strptime(v, "%Y-%m-%d")
    except ValueError:
        raise ValidationError(f"invalid date: {v}")
    return v


def coerce_score(v: Any) -> int:
    """Non-negative integer score from JSON/query input; InvalidScore otherwise."""
    if isinstance(v, bool):
        raise InvalidScore("score must be a number")
    if isinstance(v, int):
        score = v
    elif isinstance(v, float):
        if not v.is_integer():
            raise InvalidScore("score must be a whole number")
        score = int(v)
    elif isinstance(v, str) and _SCORE_RE.match(v.strip()):
        score = int(v.strip())
    else:
        raise InvalidScore("score must be a number")
    if score < 0:
        raise InvalidScore("score must not be negative")
    if score > MAX_SCORE:
        raise InvalidScore(f"score must not exceed {MAX_SCORE}")
    return score


def _int(v: Any, *, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _resolve_scope(mode: Mode | None, date: str | None) -> tuple[Mode | None, str | None]:
    # A date only scopes challenge boards.
    if date and mode is None:
        mode = Mode.CHALLENGE
    if mode is Mode.ENDLESS:
        date = None
    return mode, date


@dataclass
class SubmitScore:
    name: str
    score: int
    mode: Mode
    date: str | None

    @classmethod
    def parse(cls, data: dict[str, Any], *, max_name_len: int = 24, today: str | None = None) -> "SubmitScore":
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("missing name or score")
        if data.get("score") in (None, ""):
            raise ValidationError("missing name or score")
        score = coerce_score(data.get("score"))
        if score == 0:
            raise ValidationError("missing name or score")
        mode = Mode.parse(data.get("mode"), default=Mode.ENDLESS)
        date = parse_date(data.get("date"))
        if mode is Mode.CHALLENGE:
            date = date or today or current_challenge_date()
        else:
            date = None
        return cls(name=name.strip()[:max_name_len], score=score, mode=mode, date=date)


@dataclass
class Scope:
    mode: Mode | None
    date: str | None

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "Scope":
        mode, date = _resolve_scope(Mode.parse(data.get("mode")), parse_date(data.get("date")))
        return cls(mode=mode, date=date)


@dataclass
class LeaderboardQuery:
    mode: Mode | None
    date: str | None
    sortBy: SortBy
    page: int
    pageSize: int

    @classmethod
    def parse(cls, data: Mapping[str, Any], *, default_page_size: int = 10, max_page_size: int = 100) -> "LeaderboardQuery":
        scope = Scope.parse(data)
        sort_by = data.get("sortBy") or SortBy.RECENCY.value
        try:
            sort_by = SortBy(str(sort_by).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown sortBy: {sort_by!r}")
        page = max(1, _int(data.get("page"), default=1))
        page_size = _int(data.get("pageSize"), default=default_page_size)
        if page_size < 1:
            page_size = default_page_size
        return cls(
            mode=scope.mode,
            date=scope.date,
            sortBy=sort_by,
            page=page,
            pageSize=min(page_size, max_page_size),
        )


@dataclass
class Qualifies:
    score: int
    mode: Mode
    date: str | None

    @classmethod
    def parse(cls, data: Mapping[str, Any], *, today: str | None = None) -> "Qualifies":
        if data.get("score") in (None, ""):
            raise ValidationError("score required")
        score = coerce_score(data.get("score"))
        mode = Mode.parse(data.get("mode"), default=Mode.ENDLESS)
        date = parse_date(data.get("date"))
        if mode is Mode.CHALLENGE:
            date = date or today or current_challenge_date()
        else:
            date = None
        return cls(score=score, mode=mode, date=date)


@dataclass
class DeleteRecord:
    id: str

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "DeleteRecord":
        rid = data.get("id")
        if isinstance(rid, int) and not isinstance(rid, bool):
            rid = str(rid)
        if not isinstance(rid, str) or not rid.strip():
            raise ValidationError("missing record id")
        return cls(id=rid.strip())


VALID_BLOCK_ACTIONS = {"block", "unblock", "check", "list"}


@dataclass
class BlockAction:
    action: str
    ip: str | None
    reason: str

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "BlockAction":
        action = data.get("action")
        if not isinstance(action, str) or not action:
            raise ValidationError("missing action")
        if action not in VALID_BLOCK_ACTIONS:
            raise ValidationError(f"unsupported action: {action}")
        ip = data.get("ip")
        if not isinstance(ip, str) or not ip.strip():
            ip = None
        if action != "list" and ip is None:
            raise ValidationError("missing ip address")
        reason = data.get("reason")
        if not isinstance(reason, str):
            reason = ""
        return cls(action=action, ip=ip.strip() if ip else None, reason=reason.strip()[:200])
