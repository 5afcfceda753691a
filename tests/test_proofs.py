# tests/test_proofs.py
"""Proof custody: reference parsing, view-once grants, expiry cleanup."""
import pytest

from badbingo.contests import submit_proof
from badbingo.db import atomic
from badbingo.errors import InvalidStateTransition, Unavailable, ValidationError
from badbingo.proofs import (
    LegacyDirectUrl,
    SignedUrlStore,
    StoragePath,
    cleanup_expired_proofs,
    destroy,
    get_proof,
    grant_view,
    parse_artifact_ref,
)
from badbingo.util import to_ms

from conftest import at, matched_contest


@pytest.fixture
def contest_id(db, make_account):
    make_account("alice")
    make_account("bob")
    return matched_contest(db)


def _proof(db, contest_id, ref="proofs/c/onion.mp4", **kwargs):
    with atomic(db):
        return submit_proof(db, contest_id, "alice", ref, now=at(hours=1), **kwargs)


# ────────────────────────────────────────────────────────────
# Reference parsing
# ────────────────────────────────────────────────────────────

class TestParseArtifactRef:
    def test_storage_path(self):
        ref = parse_artifact_ref("  proofs/c1/clip.mp4 ")
        assert ref == StoragePath("proofs/c1/clip.mp4")
        assert ref.kind == "storage"

    def test_long_storage_path_is_not_inline_data(self):
        path = "proofs/" + "a1b2" * 70
        assert parse_artifact_ref(path) == StoragePath(path)

    @pytest.mark.parametrize(
        "raw",
        [
            b"\x89PNG",
            "",
            None,
            "data:image/jpeg;base64,/9j/4AAQ",
            "A" * 300,
            "uploads/c1/clip.mp4",
            "proofs/../secrets",
            "proofs//double",
            "proofs\\c1\\clip.mp4",
            "https://cdn.example.com/clip.mp4",
        ],
    )
    def test_rejects(self, raw):
        with pytest.raises(ValidationError):
            parse_artifact_ref(raw)

    def test_legacy_url_only_when_allowed(self):
        ref = parse_artifact_ref("https://cdn.example.com/clip.mp4", allow_legacy=True)
        assert isinstance(ref, LegacyDirectUrl)
        assert ref.kind == "legacy_url"


# ────────────────────────────────────────────────────────────
# Grants
# ────────────────────────────────────────────────────────────

class TestGrantView:
    def test_view_once_destroys_after_first_grant(self, db, contest_id, store):
        proof_id = _proof(db, contest_id, view_once=True)
        with atomic(db):
            grant = grant_view(db, proof_id, store=store, now=at(hours=2))
        assert grant.destroyed
        assert grant.views_remaining == 0
        assert grant.grant_expires_at == to_ms(at(hours=2)) + 60_000

        with pytest.raises(Unavailable) as exc:
            grant_view(db, proof_id, store=store, now=at(hours=2, seconds=1))
        assert "destroyed" in exc.value.message
        assert get_proof(db, proof_id)["view_count"] == 1
        assert len(store.grants) == 1

    def test_unlimited_views_until_expiry(self, db, contest_id, store):
        proof_id = _proof(db, contest_id, view_duration_hours=2)
        for minutes in (10, 20, 30):
            with atomic(db):
                grant = grant_view(db, proof_id, store=store, now=at(hours=1, minutes=minutes))
            assert not grant.destroyed
        assert grant.view_count == 3
        assert grant.max_views == 999

        with pytest.raises(Unavailable) as exc:
            grant_view(db, proof_id, store=store, now=at(hours=3))
        assert "expired" in exc.value.message

    def test_each_grant_is_fresh(self, db, contest_id, store):
        proof_id = _proof(db, contest_id)
        with atomic(db):
            first = grant_view(db, proof_id, store=store, now=at(hours=2))
        with atomic(db):
            second = grant_view(db, proof_id, store=store, now=at(hours=3))
        assert first.url != second.url

    def test_failed_signing_does_not_count_a_view(self, db, contest_id, store):
        proof_id = _proof(db, contest_id, view_once=True)
        store.fail_grants = True
        with pytest.raises(RuntimeError):
            with atomic(db):
                grant_view(db, proof_id, store=store, now=at(hours=2))
        proof = get_proof(db, proof_id)
        assert proof["view_count"] == 0
        assert not proof["destroyed"]

    @pytest.mark.parametrize("hours", [0, 73])
    def test_view_duration_bounds(self, db, contest_id, hours):
        with pytest.raises(ValidationError):
            _proof(db, contest_id, view_duration_hours=hours)

    def test_unknown_media_kind(self, db, contest_id):
        with pytest.raises(ValidationError):
            _proof(db, contest_id, media_kind="hologram")


# ────────────────────────────────────────────────────────────
# Destruction and cleanup
# ────────────────────────────────────────────────────────────

class TestCleanup:
    def test_expired_proof_is_destroyed_and_deleted(self, db, contest_id, store):
        proof_id = _proof(db, contest_id, view_duration_hours=1)
        assert cleanup_expired_proofs(db, store=store, now=at(hours=1, minutes=59)).processed == 0

        result = cleanup_expired_proofs(db, store=store, now=at(hours=2))
        assert result.processed == 1
        proof = get_proof(db, proof_id)
        assert proof["destroyed"] and proof["artifact_deleted"]
        assert store.deleted == ["proofs/c/onion.mp4"]

        assert cleanup_expired_proofs(db, store=store, now=at(hours=3)).processed == 0
        assert store.deleted == ["proofs/c/onion.mp4"]

    def test_view_once_artifact_deleted_after_grant_lapses(self, db, contest_id, store):
        proof_id = _proof(db, contest_id, view_once=True)
        with atomic(db):
            grant_view(db, proof_id, store=store, now=at(hours=2))
        assert cleanup_expired_proofs(db, store=store, now=at(hours=2, seconds=30)).processed == 0
        assert cleanup_expired_proofs(db, store=store, now=at(hours=2, seconds=60)).processed == 1
        assert store.deleted == ["proofs/c/onion.mp4"]

    def test_destroy_is_terminal(self, db, contest_id, store):
        proof_id = _proof(db, contest_id)
        with atomic(db):
            destroy(db, proof_id, store=store, now=at(hours=2))
        with pytest.raises(InvalidStateTransition):
            destroy(db, proof_id, store=store, now=at(hours=3))
        with pytest.raises(Unavailable):
            grant_view(db, proof_id, store=store, now=at(hours=3))


# ────────────────────────────────────────────────────────────
# Signed URL store
# ────────────────────────────────────────────────────────────

class TestSignedUrlStore:
    def test_signature_covers_path_and_expiry(self):
        s = SignedUrlStore(base_url="https://files.test/", secret="k")
        url = s.grant_url(StoragePath("proofs/a b.jpg"), 60, now_ms=1_000_000)
        assert url.startswith("https://files.test/proofs/a%20b.jpg?expires=1060&sig=")
        assert url.endswith(s.sign("proofs/a b.jpg", 1060))
        assert s.sign("proofs/a b.jpg", 1061) != s.sign("proofs/a b.jpg", 1060)

    def test_legacy_url_passes_through(self):
        s = SignedUrlStore(base_url="https://files.test", secret="k")
        assert s.grant_url(LegacyDirectUrl("https://old.test/x.jpg"), 60, now_ms=0) == "https://old.test/x.jpg"

    def test_delete_tolerates_missing_object(self):
        calls = []

        class FakeResponse:
            status_code = 404

            def raise_for_status(self):
                raise AssertionError("404 should not raise")

        class FakeHttp:
            def delete(self, url, headers=None, timeout=None):
                calls.append((url, headers))
                return FakeResponse()

        s = SignedUrlStore(base_url="https://files.test", secret="k", api_token="tok", session=FakeHttp())
        s.delete(StoragePath("proofs/gone.jpg"))
        assert calls == [("https://files.test/proofs/gone.jpg", {"Authorization": "Bearer tok"})]
