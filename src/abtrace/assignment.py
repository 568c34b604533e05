"""Deterministic sticky assignment of subjects to weighted variants.

Two protocol details are shared with the server and with every other client:

``md5-u32be-v1``
    The bucket of a subject is the MD5 digest of its UTF-8 encoding, with
    the first four bytes read as an unsigned big-endian integer, modulo
    :data:`BUCKET_RESOLUTION`.

``cumulative-to-resolution-v1``
    Variants are walked in snapshot order. Variant *i* wins for the first
    *i* where ``bucket * total_weight < cumulative_weight_i * resolution``.
    With weights summing to 100 this is the familiar ``weight * 10_000``
    threshold table.

Changing either one reassigns every live session.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .errors import AssignmentFailure, AssignmentFailureKind
from .resilience import bounded
from .snapshots import ConfigSnapshot, SnapshotCache, SnapshotSource, Variant

_LOGGER = logging.getLogger(__name__)

HASH_VERSION = "md5-u32be-v1"
NORMALIZATION_VERSION = "cumulative-to-resolution-v1"
BUCKET_RESOLUTION = 1_000_000


def bucket_for(subject_id: str, resolution: int = BUCKET_RESOLUTION) -> int:
    """Return the bucket in ``[0, resolution)`` for ``subject_id``."""

    digest = hashlib.md5(subject_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % resolution


def pick_variant(bucket: int, snapshot: ConfigSnapshot, resolution: int = BUCKET_RESOLUTION) -> Variant:
    if len(snapshot.variants) == 1:
        return snapshot.variants[0]
    cumulative = 0
    for variant in snapshot.variants:
        cumulative += variant.weight
        if bucket * snapshot.total_weight < cumulative * resolution:
            return variant
    # unreachable for bucket < resolution; keeps the walk total
    return snapshot.variants[-1]


def assign(subject_id: str, snapshot: ConfigSnapshot) -> Variant:
    """Pure assignment of ``subject_id`` against a validated snapshot."""

    return pick_variant(bucket_for(subject_id), snapshot)


@dataclass(frozen=True, slots=True)
class AssignmentResult:
    """Outcome of a variant lookup."""

    config_key: str
    payload: Any
    variant_index: Optional[int]
    version: Optional[int]
    is_fallback: bool = False

    @classmethod
    def fallback(cls, config_key: str, payload: Any) -> "AssignmentResult":
        return cls(config_key=config_key, payload=payload, variant_index=None, version=None, is_fallback=True)


class AssignmentEngine:
    """Maps sessions onto variants served by a :class:`SnapshotSource`."""

    def __init__(self, source: SnapshotSource, *, timeout: float = 1.5) -> None:
        self._source = source
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def resolve(self, config_key: str, subject_id: str, *, version: Optional[int] = None) -> AssignmentResult:
        """Strict lookup: raise :class:`AssignmentFailure` instead of falling back."""

        try:
            snapshot = await bounded(self._source.get_snapshot(config_key, version), self._timeout)
        except asyncio.TimeoutError as exc:
            raise AssignmentFailure(AssignmentFailureKind.TIMEOUT, config_key, f"after {self._timeout}s") from exc
        except AssignmentFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - any source error is an assignment failure
            raise AssignmentFailure(AssignmentFailureKind.SOURCE_ERROR, config_key, str(exc)) from exc
        return self._select(config_key, subject_id, version, snapshot)

    async def get(
        self,
        config_key: str,
        subject_id: str,
        *,
        fallback: Any,
        version: Optional[int] = None,
    ) -> AssignmentResult:
        """Resilient lookup that never raises; failures resolve to ``fallback``."""

        try:
            return await self.resolve(config_key, subject_id, version=version)
        except AssignmentFailure as exc:
            _LOGGER.warning(
                "Using fallback for %s", config_key, extra={"config_key": config_key, "reason": exc.kind.value}
            )
            return AssignmentResult.fallback(config_key, fallback)

    def get_sync(
        self,
        config_key: str,
        subject_id: str,
        *,
        fallback: Any,
        version: Optional[int] = None,
    ) -> AssignmentResult:
        """Lookup for callers without an event loop; needs a local cache source."""

        if not isinstance(self._source, SnapshotCache):
            _LOGGER.warning("Synchronous lookup needs a SnapshotCache source; using fallback for %s", config_key)
            return AssignmentResult.fallback(config_key, fallback)
        try:
            return self._select(config_key, subject_id, version, self._source.lookup(config_key, version))
        except AssignmentFailure as exc:
            _LOGGER.warning(
                "Using fallback for %s", config_key, extra={"config_key": config_key, "reason": exc.kind.value}
            )
            return AssignmentResult.fallback(config_key, fallback)

    def _select(
        self,
        config_key: str,
        subject_id: str,
        version: Optional[int],
        snapshot: Optional[ConfigSnapshot],
    ) -> AssignmentResult:
        if snapshot is None:
            kind = AssignmentFailureKind.SNAPSHOT_MISSING
            if isinstance(self._source, SnapshotCache):
                if not self._source.knows(config_key):
                    kind = AssignmentFailureKind.UNKNOWN_KEY
                elif version is not None:
                    kind = AssignmentFailureKind.VERSION_MISSING
            raise AssignmentFailure(kind, config_key)
        if not snapshot.variants:
            raise AssignmentFailure(AssignmentFailureKind.EMPTY_SNAPSHOT, config_key)
        variant = assign(subject_id, snapshot)
        return AssignmentResult(
            config_key=config_key,
            payload=variant.payload,
            variant_index=variant.variant_index,
            version=snapshot.version,
        )


__all__ = [
    "AssignmentEngine",
    "AssignmentResult",
    "BUCKET_RESOLUTION",
    "HASH_VERSION",
    "NORMALIZATION_VERSION",
    "assign",
    "bucket_for",
    "pick_variant",
]
