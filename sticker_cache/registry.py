from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime

from sticker_cache.errors import DuplicateRecordError
from sticker_cache.models import CanonicalDocument, utcnow

logger = logging.getLogger(__name__)

_FINGERPRINT_RE = re.compile(r"[0-9a-f]{64}")
_MAX_INSERT_ATTEMPTS = 3


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def validate_fingerprint(fingerprint: str) -> str:
    if not isinstance(fingerprint, str) or not _FINGERPRINT_RE.fullmatch(fingerprint):
        raise ValueError("fingerprint must be 64 lowercase hex characters")
    return fingerprint


class CanonicalDocumentRegistry:
    """One row per distinct document content, shared by every user who uploads it.

    Reference counting goes through (ref_type, ref_id) edges, so attaching the
    same upload twice counts once.
    """

    def __init__(self, documents) -> None:
        self._documents = documents

    def resolve(
        self,
        fingerprint: str,
        *,
        ref_id: str | None = None,
        ref_type: str = "file",
        total_pages: int | None = None,
        now: datetime | None = None,
    ) -> CanonicalDocument:
        validate_fingerprint(fingerprint)
        current = now or utcnow()
        for attempt in range(1, _MAX_INSERT_ATTEMPTS + 1):
            try:
                doc, created = self._documents.insert_if_absent(
                    fingerprint=fingerprint,
                    now=current,
                    total_pages=total_pages,
                )
                break
            except DuplicateRecordError:
                if attempt == _MAX_INSERT_ATTEMPTS:
                    raise
                logger.info("canonical_document_insert_conflict fingerprint=%s attempt=%s", fingerprint, attempt)
        if created:
            logger.info("canonical_document_created fingerprint=%s", fingerprint)
        if ref_id is None:
            return doc
        self._documents.add_reference(fingerprint=fingerprint, ref_type=ref_type, ref_id=ref_id, now=current)
        refreshed = self._documents.get(fingerprint=fingerprint)
        return refreshed if refreshed is not None else doc

    def release(self, fingerprint: str, *, ref_id: str, ref_type: str = "file") -> CanonicalDocument | None:
        validate_fingerprint(fingerprint)
        removed = self._documents.remove_reference(fingerprint=fingerprint, ref_type=ref_type, ref_id=ref_id)
        if not removed:
            logger.info("canonical_document_release_noop fingerprint=%s ref_id=%s", fingerprint, ref_id)
        return self._documents.get(fingerprint=fingerprint)

    def get(self, fingerprint: str) -> CanonicalDocument | None:
        validate_fingerprint(fingerprint)
        return self._documents.get(fingerprint=fingerprint)
