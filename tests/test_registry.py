from __future__ import annotations

import pytest

from conftest import T0
from sticker_cache.errors import DuplicateRecordError
from sticker_cache.registry import CanonicalDocumentRegistry, fingerprint_bytes, validate_fingerprint

F1 = fingerprint_bytes(b"calculus lecture 1")


def test_fingerprint_is_sha256_hex():
    assert F1 == fingerprint_bytes(b"calculus lecture 1")
    assert len(F1) == 64
    assert validate_fingerprint(F1) == F1


@pytest.mark.parametrize("bad", ["", "ABC", "g" * 64, F1.upper(), F1[:-1]])
def test_validate_fingerprint_rejects_malformed_values(bad):
    with pytest.raises(ValueError):
        validate_fingerprint(bad)


def test_resolve_creates_one_document_per_content(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    first = registry.resolve(F1, ref_id="file_user_a", now=T0)
    second = registry.resolve(F1, ref_id="file_user_b", now=T0)
    assert first.fingerprint == second.fingerprint == F1
    assert second.reference_count == 2
    assert any_store.documents.count() == 1


def test_same_reference_counts_once(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    registry.resolve(F1, ref_id="file_user_a", now=T0)
    again = registry.resolve(F1, ref_id="file_user_a", now=T0)
    assert again.reference_count == 1


def test_resolve_without_reference_leaves_count_alone(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    doc = registry.resolve(F1, total_pages=12, now=T0)
    assert doc.reference_count == 0
    assert doc.total_pages == 12
    assert doc.first_seen_at == T0


def test_release_decrements_and_never_goes_negative(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    registry.resolve(F1, ref_id="file_user_a", now=T0)
    registry.resolve(F1, ref_id="file_user_b", now=T0)
    assert registry.release(F1, ref_id="file_user_a").reference_count == 1
    assert registry.release(F1, ref_id="file_user_a").reference_count == 1
    assert registry.release(F1, ref_id="file_user_b").reference_count == 0
    assert registry.release(F1, ref_id="file_user_b").reference_count == 0
    assert registry.get(F1) is not None


def test_reresolving_a_file_to_new_content_moves_its_reference(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    f2 = fingerprint_bytes(b"calculus lecture 1, revised")
    registry.resolve(F1, ref_id="file_user_a", now=T0)
    registry.resolve(F1, ref_id="file_user_b", now=T0)

    moved = registry.resolve(f2, ref_id="file_user_a", now=T0)
    assert moved.reference_count == 1
    assert registry.get(F1).reference_count == 1

    assert registry.release(F1, ref_id="file_user_a").reference_count == 1
    assert registry.release(f2, ref_id="file_user_a").reference_count == 0


class _ConflictingDocuments:
    """Raises a unique violation a fixed number of times before delegating."""

    def __init__(self, inner, *, conflicts: int):
        self._inner = inner
        self._conflicts = conflicts
        self.insert_calls = 0

    def insert_if_absent(self, **kwargs):
        self.insert_calls += 1
        if self._conflicts > 0:
            self._conflicts -= 1
            raise DuplicateRecordError("duplicate key value violates unique constraint")
        return self._inner.insert_if_absent(**kwargs)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_resolve_retries_insert_conflicts(memory_store):
    documents = _ConflictingDocuments(memory_store.documents, conflicts=2)
    doc = CanonicalDocumentRegistry(documents).resolve(F1, ref_id="file_1", now=T0)
    assert doc.reference_count == 1
    assert documents.insert_calls == 3


def test_resolve_gives_up_after_repeated_conflicts(memory_store):
    documents = _ConflictingDocuments(memory_store.documents, conflicts=5)
    with pytest.raises(DuplicateRecordError):
        CanonicalDocumentRegistry(documents).resolve(F1, now=T0)
    assert documents.insert_calls == 3
