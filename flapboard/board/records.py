"""Stored records and key layout."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from flapboard.board.protocol import Mode

RECORD_PREFIX = "score:"
INDEX_PREFIX = "scores:"
BLOCK_INDEX_KEY = "blocked:index"
BLOCK_PREFIX = "blocked:ip:"
# Flat set written by older deployments; see abuse.migrate_legacy.
LEGACY_BLOCK_KEY = "blocked:ips"

MANUAL = "manual"
AUTOMATIC = "automatic"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_record_id(ts_ms: int) -> str:
    return f"{ts_ms}-{uuid.uuid4().hex[:8]}"


def record_key(record_id: str) -> str:
    return f"{RECORD_PREFIX}{record_id}"


def mode_index_key(mode: Mode) -> str:
    return f"{INDEX_PREFIX}{mode.value}"


def date_index_key(date: str) -> str:
    return f"{INDEX_PREFIX}{Mode.CHALLENGE.value}:{date}"


DATE_INDEX_PATTERN = f"{INDEX_PREFIX}{Mode.CHALLENGE.value}:*"


def player_key(name: str, mode: Mode, date: str | None) -> str:
    if mode is Mode.CHALLENGE and date:
        return f"player:{mode.value}:{date}:{name}"
    return f"player:{mode.value}:{name}"


def block_key(origin: str) -> str:
    return f"{BLOCK_PREFIX}{origin}"


def _opt_int(v: Any) -> int | None:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


@dataclass
class ScoreRecord:
    id: str
    playerName: str
    rawScore: int
    submittedAtMillis: int
    mode: Mode
    challengeDate: str | None = None
    originAddress: str = ""

    def index_keys(self) -> list[str]:
        keys = [mode_index_key(self.mode)]
        if self.mode is Mode.CHALLENGE and self.challengeDate:
            keys.append(date_index_key(self.challengeDate))
        return keys

    def lookup_key(self) -> str:
        return player_key(self.playerName, self.mode, self.challengeDate)

    def to_hash(self) -> dict[str, str]:
        h = {
            "name": self.playerName,
            "score": str(self.rawScore),
            "timestamp": str(self.submittedAtMillis),
            "mode": self.mode.value,
            "ip": self.originAddress,
        }
        if self.challengeDate:
            h["date"] = self.challengeDate
        return h

    @classmethod
    def from_hash(cls, record_id: str, h: dict[str, str]) -> "ScoreRecord":
        try:
            mode = Mode(h.get("mode") or Mode.ENDLESS.value)
        except ValueError:
            mode = Mode.ENDLESS
        return cls(
            id=record_id,
            playerName=h.get("name") or "unknown",
            rawScore=_opt_int(h.get("score")) or 0,
            submittedAtMillis=_opt_int(h.get("timestamp")) or 0,
            mode=mode,
            challengeDate=h.get("date") or None,
            originAddress=h.get("ip") or "",
        )

    def public(self) -> dict[str, Any]:
        out = {
            "id": self.id,
            "name": self.playerName,
            "score": self.rawScore,
            "timestamp": self.submittedAtMillis,
            "mode": self.mode.value,
        }
        if self.challengeDate:
            out["date"] = self.challengeDate
        return out

    def admin(self) -> dict[str, Any]:
        date = self.challengeDate
        if not date and self.submittedAtMillis:
            date = datetime.fromtimestamp(self.submittedAtMillis / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        return {
            "id": self.id,
            "playerName": self.playerName,
            "score": self.rawScore,
            "timestamp": self.submittedAtMillis,
            "date": date,
            "mode": self.mode.value,
            "ip": self.originAddress,
        }


@dataclass
class BlockEntry:
    originAddress: str
    reason: str
    blockedAtMillis: int
    blockType: str = MANUAL
    score: int | None = None
    date: str | None = None
    playerName: str | None = None

    def to_hash(self) -> dict[str, str]:
        h = {
            "ip": self.originAddress,
            "reason": self.reason,
            "blockedAt": str(self.blockedAtMillis),
            "type": self.blockType,
        }
        if self.score is not None:
            h["score"] = str(self.score)
        if self.date:
            h["date"] = self.date
        if self.playerName:
            h["name"] = self.playerName
        return h

    @classmethod
    def from_hash(cls, origin: str, h: dict[str, str]) -> "BlockEntry":
        return cls(
            originAddress=h.get("ip") or origin,
            reason=h.get("reason", ""),
            blockedAtMillis=_opt_int(h.get("blockedAt")) or 0,
            blockType=h.get("type") or MANUAL,
            score=_opt_int(h.get("score")),
            date=h.get("date") or None,
            playerName=h.get("name") or None,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "ip": self.originAddress,
            "reason": self.reason,
            "blockedAt": self.blockedAtMillis,
            "type": self.blockType,
            "score": self.score,
            "date": self.date,
            "playerName": self.playerName,
        }
