# badbingo/proofs.py
"""
Proof custody.

A proof row holds a *reference* to an artifact already in storage, never
the bytes. Viewing goes through ``grant_view``, which bumps the view count
and flips ``destroyed`` in one conditional UPDATE, then asks the artifact
store for a fresh short-lived signed URL.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Union
from urllib.parse import quote, urlencode

import requests
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import (
    ARTIFACT_API_TOKEN,
    ARTIFACT_BASE_URL,
    ARTIFACT_SIGNING_SECRET,
    PROOF_GRANT_TTL_SECONDS,
    PROOF_MAX_VIEW_HOURS,
    PROOF_PATH_PREFIX,
    PROOF_VIEW_HOURS,
    UNLIMITED_VIEWS,
)
from .errors import InvalidStateTransition, NotFound, Unavailable, ValidationError
from .sweeps import SweepResult, run_each
from .util import HOUR_MS, now_ms

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("photo", "video")
HTTP_TIMEOUT = 6.0

_BASE64_BLOB = re.compile(r"^[A-Za-z0-9+/=\s]{256,}$")


# ────────────────────────────────────────────────────────────
# Artifact references
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StoragePath:
    path: str
    kind = "storage"

    @property
    def value(self) -> str:
        return self.path


@dataclass(frozen=True)
class LegacyDirectUrl:
    url: str
    kind = "legacy_url"

    @property
    def value(self) -> str:
        return self.url


ProofRef = Union[StoragePath, LegacyDirectUrl]


def parse_artifact_ref(raw, *, allow_legacy: bool = False) -> ProofRef:
    """
    Resolve a client-supplied artifact reference once, at the boundary.
    Anything that looks like embedded data is refused.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raise ValidationError("artifact must be a storage reference, not raw bytes")
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("artifact reference is required")
    ref = raw.strip()
    if ref.lower().startswith("data:"):
        raise ValidationError("inline data URIs are not accepted; upload first")
    if not ref.startswith(PROOF_PATH_PREFIX) and _BASE64_BLOB.match(ref):
        raise ValidationError("artifact reference looks like inline encoded data")

    if ref.lower().startswith(("http://", "https://")):
        if not allow_legacy:
            raise ValidationError("direct URLs are not accepted; use a storage path")
        return LegacyDirectUrl(ref)

    if not ref.startswith(PROOF_PATH_PREFIX):
        raise ValidationError(f"storage path must start with {PROOF_PATH_PREFIX!r}")
    segments = ref.split("/")
    if "\\" in ref or any(s in ("", ".", "..") for s in segments[1:]):
        raise ValidationError("malformed storage path")
    return StoragePath(ref)


def ref_from_row(kind: str, value: str) -> ProofRef:
    if kind == LegacyDirectUrl.kind:
        return LegacyDirectUrl(value)
    return StoragePath(value)


# ────────────────────────────────────────────────────────────
# Artifact store
# ────────────────────────────────────────────────────────────

class ArtifactStore(Protocol):
    def grant_url(self, ref: ProofRef, ttl_seconds: int, *, now_ms: int) -> str: ...

    def delete(self, ref: ProofRef) -> None: ...


class SignedUrlStore:
    """HMAC-signed expiring URLs; deletes through the storage HTTP API."""

    def __init__(
        self,
        base_url: str = ARTIFACT_BASE_URL,
        secret: str = ARTIFACT_SIGNING_SECRET,
        api_token: str = ARTIFACT_API_TOKEN,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret = secret.encode()
        self.api_token = api_token
        self.http = session or requests.Session()

    def sign(self, path: str, expires: int) -> str:
        msg = f"{path}:{expires}".encode()
        return hmac.new(self.secret, msg, hashlib.sha256).hexdigest()

    def grant_url(self, ref: ProofRef, ttl_seconds: int, *, now_ms: int) -> str:
        if isinstance(ref, LegacyDirectUrl):
            # pre-storage uploads; nothing to sign
            return ref.url
        expires = now_ms // 1000 + ttl_seconds
        qs = urlencode({"expires": expires, "sig": self.sign(ref.path, expires)})
        return f"{self.base_url}/{quote(ref.path)}?{qs}"

    def delete(self, ref: ProofRef) -> None:
        if isinstance(ref, LegacyDirectUrl):
            logger.warning("Cannot delete legacy artifact %s; skipping", ref.url)
            return
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else {}
        r = self.http.delete(f"{self.base_url}/{quote(ref.path)}", headers=headers, timeout=HTTP_TIMEOUT)
        if r.status_code == 404:
            return
        r.raise_for_status()


_default_store: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _default_store
    if _default_store is None:
        _default_store = SignedUrlStore()
    return _default_store


# ────────────────────────────────────────────────────────────
# Custody operations
# ────────────────────────────────────────────────────────────

@dataclass
class CaptureMetadata:
    captured_at: Optional[int] = None
    device_info: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None


@dataclass
class ViewGrant:
    proof_id: int
    url: str
    grant_expires_at: int
    view_count: int
    max_views: int
    destroyed: bool

    @property
    def views_remaining(self) -> int:
        return max(0, self.max_views - self.view_count)


def create_proof(
    db: Session,
    contest_id: int,
    uploader_id: str,
    ref: ProofRef,
    *,
    media_kind: str = "photo",
    view_duration_hours: int = PROOF_VIEW_HOURS,
    view_once: bool = False,
    metadata: Optional[CaptureMetadata] = None,
    now=None,
) -> int:
    if not isinstance(ref, (StoragePath, LegacyDirectUrl)):
        raise ValidationError("proof reference must be parsed with parse_artifact_ref")
    if media_kind not in MEDIA_KINDS:
        raise ValidationError(f"media kind must be one of {MEDIA_KINDS}")
    if not 1 <= view_duration_hours <= PROOF_MAX_VIEW_HOURS:
        raise ValidationError(f"view duration must be 1-{PROOF_MAX_VIEW_HOURS} hours")
    meta = metadata or CaptureMetadata()
    ts = now_ms(now)
    row = db.execute(
        text(
            "INSERT INTO proof (contest_id, uploader_id, ref_kind, ref_value, media_kind, "
            "captured_at, device_info, location_lat, location_lng, view_duration_hours, "
            "max_views, expires_at, created_at) "
            "VALUES (:cid, :up, :rk, :rv, :mk, :cap, :dev, :lat, :lng, :vdh, :mv, :exp, :ts) "
            "RETURNING id"
        ),
        {
            "cid": contest_id,
            "up": uploader_id,
            "rk": ref.kind,
            "rv": ref.value,
            "mk": media_kind,
            "cap": meta.captured_at,
            "dev": meta.device_info,
            "lat": meta.location_lat,
            "lng": meta.location_lng,
            "vdh": view_duration_hours,
            "mv": 1 if view_once else UNLIMITED_VIEWS,
            "exp": ts + view_duration_hours * HOUR_MS,
            "ts": ts,
        },
    ).first()
    return int(row[0])


def get_proof(db: Session, proof_id: int) -> dict:
    row = db.execute(
        text("SELECT * FROM proof WHERE id = :id"), {"id": proof_id}
    ).mappings().first()
    if not row:
        raise NotFound(f"proof {proof_id} not found")
    return dict(row)


def grant_view(
    db: Session,
    proof_id: int,
    *,
    store: Optional[ArtifactStore] = None,
    ttl_seconds: int = PROOF_GRANT_TTL_SECONDS,
    now=None,
) -> ViewGrant:
    """
    Count one view and hand back a fresh signed grant. Destroyed, exhausted
    or expired proofs raise Unavailable and nothing is written.
    """
    store = store or get_artifact_store()
    ts = now_ms(now)
    row = db.execute(
        text(
            "UPDATE proof SET view_count = view_count + 1, "
            "destroyed = CASE WHEN view_count + 1 >= max_views THEN TRUE ELSE FALSE END, "
            "destroyed_at = CASE WHEN view_count + 1 >= max_views THEN :ts ELSE destroyed_at END, "
            "first_viewed_at = COALESCE(first_viewed_at, :ts), "
            "last_granted_at = :ts "
            "WHERE id = :id AND NOT destroyed AND view_count < max_views AND expires_at > :ts "
            "RETURNING view_count, max_views, destroyed, ref_kind, ref_value"
        ),
        {"id": proof_id, "ts": ts},
    ).first()
    if not row:
        proof = get_proof(db, proof_id)
        reason = "destroyed" if proof["destroyed"] else "expired"
        raise Unavailable(f"proof {proof_id} is {reason}", proof_id=proof_id)

    view_count, max_views, destroyed, kind, value = row
    url = store.grant_url(ref_from_row(kind, value), ttl_seconds, now_ms=ts)
    if destroyed:
        logger.info("Proof %d reached %d views and is destroyed", proof_id, max_views)
    return ViewGrant(
        proof_id=proof_id,
        url=url,
        grant_expires_at=ts + ttl_seconds * 1000,
        view_count=int(view_count),
        max_views=int(max_views),
        destroyed=bool(destroyed),
    )


def _purge_artifact(db: Session, proof_id: int, store: ArtifactStore) -> None:
    proof = get_proof(db, proof_id)
    if proof["artifact_deleted"]:
        return
    store.delete(ref_from_row(proof["ref_kind"], proof["ref_value"]))
    db.execute(
        text("UPDATE proof SET artifact_deleted = TRUE WHERE id = :id"), {"id": proof_id}
    )


def destroy(db: Session, proof_id: int, *, store: Optional[ArtifactStore] = None, now=None) -> None:
    """Terminal: mark destroyed and delete the artifact."""
    store = store or get_artifact_store()
    res = db.execute(
        text(
            "UPDATE proof SET destroyed = TRUE, destroyed_at = :ts "
            "WHERE id = :id AND NOT destroyed"
        ),
        {"id": proof_id, "ts": now_ms(now)},
    )
    if res.rowcount == 0:
        get_proof(db, proof_id)
        raise InvalidStateTransition(f"proof {proof_id} already destroyed")
    _purge_artifact(db, proof_id, store)
    logger.info("Proof %d destroyed", proof_id)


def cleanup_expired_proofs(
    db: Session,
    *,
    store: Optional[ArtifactStore] = None,
    grant_ttl_seconds: int = PROOF_GRANT_TTL_SECONDS,
    now=None,
) -> SweepResult:
    """
    Destroy proofs past their expiry and delete their artifacts, viewed or
    not. Artifacts of proofs destroyed by view count are deleted once the
    last grant issued for them has lapsed.
    """
    store = store or get_artifact_store()
    ts = now_ms(now)
    lapsed = ts - grant_ttl_seconds * 1000
    ids = [
        r[0]
        for r in db.execute(
            text(
                "SELECT id FROM proof WHERE NOT artifact_deleted AND ("
                "(NOT destroyed AND expires_at <= :ts) OR "
                "(destroyed AND (last_granted_at IS NULL OR last_granted_at <= :lapsed))"
                ") ORDER BY id"
            ),
            {"ts": ts, "lapsed": lapsed},
        ).fetchall()
    ]

    def _cleanup(proof_id):
        db.execute(
            text(
                "UPDATE proof SET destroyed = TRUE, destroyed_at = :ts "
                "WHERE id = :id AND NOT destroyed AND expires_at <= :ts"
            ),
            {"id": proof_id, "ts": ts},
        )
        _purge_artifact(db, proof_id, store)

    return run_each(db, SweepResult(name="proofs"), ids, _cleanup)
