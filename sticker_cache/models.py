from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_READY = "ready"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_READY, STATUS_FAILED})


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Fixed-width ISO text so that SQLite string comparison orders correctly."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _parse_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    return json.loads(value)


@dataclass
class CanonicalDocument:
    fingerprint: str
    reference_count: int = 0
    first_seen_at: datetime | None = None
    last_reference_at: datetime | None = None
    total_pages: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CanonicalDocument":
        total_pages = row.get("total_pages")
        return cls(
            fingerprint=str(row["fingerprint"]),
            reference_count=int(row.get("reference_count") or 0),
            first_seen_at=parse_dt(row.get("first_seen_at")),
            last_reference_at=parse_dt(row.get("last_reference_at")),
            total_pages=int(total_pages) if total_pages is not None else None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "reference_count": self.reference_count,
            "first_seen_at": to_iso(self.first_seen_at),
            "last_reference_at": to_iso(self.last_reference_at),
            "total_pages": self.total_pages,
        }


@dataclass
class GenerationJob:
    id: str
    fingerprint: str
    unit_key: str
    prompt_version: str
    status: str = STATUS_PENDING
    attempts: int = 0
    unit_content: str = ""
    locked_at: datetime | None = None
    lock_owner: str | None = None
    run_after: datetime | None = None
    content: dict[str, Any] | None = None
    generation_time_ms: int | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "GenerationJob":
        generation_time_ms = row.get("generation_time_ms")
        return cls(
            id=str(row["id"]),
            fingerprint=str(row["fingerprint"]),
            unit_key=str(row["unit_key"]),
            prompt_version=str(row["prompt_version"]),
            status=str(row["status"]),
            attempts=int(row.get("attempts") or 0),
            unit_content=str(row.get("unit_content") or ""),
            locked_at=parse_dt(row.get("locked_at")),
            lock_owner=row.get("lock_owner"),
            run_after=parse_dt(row.get("run_after")),
            content=_parse_json(row.get("content")),
            generation_time_ms=int(generation_time_ms) if generation_time_ms is not None else None,
            completed_at=parse_dt(row.get("completed_at")),
            last_error=row.get("last_error"),
            created_at=parse_dt(row.get("created_at")),
            updated_at=parse_dt(row.get("updated_at")),
        )

    def copy(self, **changes: Any) -> "GenerationJob":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "unit_key": self.unit_key,
            "prompt_version": self.prompt_version,
            "status": self.status,
            "attempts": self.attempts,
            "locked_at": to_iso(self.locked_at),
            "lock_owner": self.lock_owner,
            "run_after": to_iso(self.run_after),
            "content": self.content,
            "generation_time_ms": self.generation_time_ms,
            "completed_at": to_iso(self.completed_at),
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class LatencySample:
    latency_ms: int
    cache_hit: bool
    sampled_at: datetime
    fingerprint: str | None = None
    unit_key: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LatencySample":
        return cls(
            latency_ms=int(row["latency_ms"]),
            cache_hit=bool(row["cache_hit"]),
            sampled_at=parse_dt(row["sampled_at"]) or utcnow(),
            fingerprint=row.get("fingerprint"),
            unit_key=row.get("unit_key"),
        )


@dataclass
class FailureLog:
    id: str
    job_id: str
    fingerprint: str
    unit_key: str
    attempt: int
    error_class: str
    error_message: str
    occurred_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FailureLog":
        return cls(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            fingerprint=str(row["fingerprint"]),
            unit_key=str(row["unit_key"]),
            attempt=int(row["attempt"]),
            error_class=str(row["error_class"]),
            error_message=str(row["error_message"]),
            occurred_at=parse_dt(row["occurred_at"]) or utcnow(),
        )

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = to_iso(self.occurred_at)
        return data


@dataclass
class StickerVersion:
    version_number: int
    content: str
    created_at: datetime


@dataclass
class StickerVersionSet:
    sticker_id: str
    current_version: int
    versions: list[StickerVersion] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StickerVersionSet":
        versions: list[StickerVersion] = []
        for number in (1, 2):
            content = row.get(f"v{number}_content")
            if content is None:
                continue
            versions.append(
                StickerVersion(
                    version_number=number,
                    content=str(content),
                    created_at=parse_dt(row.get(f"v{number}_created_at")) or utcnow(),
                )
            )
        return cls(
            sticker_id=str(row["sticker_id"]),
            current_version=int(row["current_version"]),
            versions=versions,
        )

    @property
    def current_content(self) -> str:
        for version in self.versions:
            if version.version_number == self.current_version:
                return version.content
        return ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "sticker_id": self.sticker_id,
            "current_version": self.current_version,
            "content": self.current_content,
            "versions": [
                {
                    "version_number": v.version_number,
                    "content": v.content,
                    "created_at": to_iso(v.created_at),
                }
                for v in self.versions
            ],
        }
