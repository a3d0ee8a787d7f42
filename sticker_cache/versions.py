from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sticker_cache.models import StickerVersion, StickerVersionSet, utcnow

logger = logging.getLogger(__name__)

MAX_VERSIONS = 2


class StickerNotFoundError(LookupError):
    pass


class StickerVersionManager:
    """Keeps at most two explanations per sticker and a pointer to the one shown.

    Refreshing with only v1 present adds v2. Once both exist the oldest is
    dropped: v2 moves to v1 and the new content becomes v2. The pointer always
    lands on the newest version after a refresh.
    """

    def __init__(self, *, store: Any) -> None:
        self._versions = store.versions

    def get(self, sticker_id: str) -> StickerVersionSet | None:
        return self._versions.get(sticker_id=sticker_id)

    def register(self, sticker_id: str, content: str, *, now: datetime | None = None) -> StickerVersionSet:
        existing = self._versions.get(sticker_id=sticker_id)
        if existing is not None:
            return existing
        version_set = StickerVersionSet(
            sticker_id=sticker_id,
            current_version=1,
            versions=[StickerVersion(version_number=1, content=content, created_at=now or utcnow())],
        )
        return self._versions.upsert(version_set=version_set)

    def create_version(self, sticker_id: str, new_content: str, *, now: datetime | None = None) -> StickerVersionSet:
        existing = self._versions.get(sticker_id=sticker_id)
        if existing is None:
            raise StickerNotFoundError(sticker_id)
        created_at = now or utcnow()
        ordered = sorted(existing.versions, key=lambda v: v.version_number)
        if len(ordered) >= MAX_VERSIONS:
            newest = ordered[-1]
            kept = [StickerVersion(version_number=1, content=newest.content, created_at=newest.created_at)]
        else:
            kept = [StickerVersion(version_number=1, content=ordered[0].content, created_at=ordered[0].created_at)]
        kept.append(StickerVersion(version_number=2, content=new_content, created_at=created_at))
        updated = StickerVersionSet(sticker_id=sticker_id, current_version=2, versions=kept)
        logger.info("sticker_version_created sticker_id=%s", sticker_id)
        return self._versions.upsert(version_set=updated)

    def switch(self, sticker_id: str, target_version: int) -> StickerVersionSet:
        """Moves only the current pointer; version contents are never rewritten."""
        if target_version not in (1, 2):
            raise ValueError("target_version must be 1 or 2")
        updated = self._versions.set_current_version(sticker_id=sticker_id, target_version=target_version)
        if updated is not None:
            return updated
        if self._versions.get(sticker_id=sticker_id) is None:
            raise StickerNotFoundError(sticker_id)
        raise ValueError(f"sticker {sticker_id} has no version {target_version}")
