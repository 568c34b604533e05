"""Immutable configuration snapshots and the in-memory cache that serves them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import InvalidSnapshotError

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Variant:
    """One weighted option of an experiment."""

    variant_index: int
    weight: int
    payload: Any


@dataclass(frozen=True, slots=True)
class ConfigSnapshot:
    """Ordered, validated variant list for one configuration version.

    Instances should be created through :meth:`build`, which is the only
    place invalid weight sets are rejected; assignment assumes a valid
    snapshot.
    """

    config_key: str
    version: Optional[int]
    variants: Tuple[Variant, ...]
    total_weight: int

    @classmethod
    def build(
        cls,
        config_key: str,
        variants: Iterable[Variant | Tuple[Any, int] | Mapping[str, Any]],
        *,
        version: Optional[int] = None,
        payload_field: str = "payload",
    ) -> "ConfigSnapshot":
        """Validate ``variants`` and return a snapshot.

        Each item may be a :class:`Variant`, a ``(payload, weight)`` pair or a
        mapping with ``weight`` and ``payload_field`` keys. Variants without
        an explicit index are numbered by position.
        """

        if not config_key or not isinstance(config_key, str):
            raise InvalidSnapshotError("config_key must be a non-empty string")
        if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
            raise InvalidSnapshotError(f"version of {config_key!r} must be an integer, got {version!r}")
        built = []
        for position, item in enumerate(variants):
            if isinstance(item, Variant):
                variant = item
            elif isinstance(item, Mapping):
                variant = Variant(
                    variant_index=int(item.get("variant_index", position)),
                    weight=item.get("weight", 0),
                    payload=item.get(payload_field),
                )
            elif isinstance(item, tuple) and len(item) == 2:
                payload, weight = item
                variant = Variant(variant_index=position, weight=weight, payload=payload)
            else:
                raise InvalidSnapshotError(f"variant {position} of {config_key!r} is not a mapping")
            if isinstance(variant.weight, bool) or not isinstance(variant.weight, int):
                raise InvalidSnapshotError(
                    f"variant {variant.variant_index} of {config_key!r} has non-integer weight {variant.weight!r}"
                )
            if variant.weight < 0:
                raise InvalidSnapshotError(f"variant {variant.variant_index} of {config_key!r} has a negative weight")
            built.append(variant)
        if not built:
            raise InvalidSnapshotError(f"snapshot for {config_key!r} has no variants")
        total = sum(variant.weight for variant in built)
        if total <= 0:
            raise InvalidSnapshotError(f"snapshot for {config_key!r} has a zero weight sum")
        return cls(config_key=config_key, version=version, variants=tuple(built), total_weight=total)


class SnapshotSource(Protocol):
    """Anything that can hand out cached snapshots by key and version."""

    async def get_snapshot(self, config_key: str, version: Optional[int] = None) -> Optional[ConfigSnapshot]:
        """Return the requested snapshot or ``None`` when it is not known."""


@dataclass(frozen=True)
class _Generation:
    snapshots: Mapping[str, Mapping[int | None, ConfigSnapshot]]
    latest: Mapping[str, int | None]


class SnapshotCache:
    """In-memory :class:`SnapshotSource` refreshed by whole-map swaps.

    A background fetcher calls :meth:`replace` (or one of the payload
    loaders) with a complete set of snapshots. The new generation is built
    off to the side and published with a single attribute assignment, so
    readers see either the old or the new generation, never a mixture.
    """

    def __init__(self, snapshots: Iterable[ConfigSnapshot] = ()) -> None:
        self._generation = _Generation(snapshots=MappingProxyType({}), latest=MappingProxyType({}))
        snapshots = list(snapshots)
        if snapshots:
            self.replace(snapshots)

    def replace(self, snapshots: Iterable[ConfigSnapshot]) -> None:
        by_key: Dict[str, Dict[int | None, ConfigSnapshot]] = {}
        latest: Dict[str, int | None] = {}
        for snapshot in snapshots:
            by_key.setdefault(snapshot.config_key, {})[snapshot.version] = snapshot
            current = latest.get(snapshot.config_key)
            if snapshot.config_key not in latest or (
                snapshot.version is not None and (current is None or snapshot.version > current)
            ):
                latest[snapshot.config_key] = snapshot.version
        self._generation = _Generation(
            snapshots=MappingProxyType({key: MappingProxyType(versions) for key, versions in by_key.items()}),
            latest=MappingProxyType(latest),
        )
        _LOGGER.debug("Snapshot cache refreshed", extra={"config_keys": sorted(by_key)})

    def lookup(self, config_key: str, version: Optional[int] = None) -> Optional[ConfigSnapshot]:
        """Synchronous read of the current generation."""

        generation = self._generation
        versions = generation.snapshots.get(config_key)
        if versions is None:
            return None
        if version is None:
            return versions.get(generation.latest.get(config_key))
        return versions.get(version)

    def knows(self, config_key: str) -> bool:
        return config_key in self._generation.snapshots

    def keys(self) -> Sequence[str]:
        return tuple(self._generation.snapshots)

    async def get_snapshot(self, config_key: str, version: Optional[int] = None) -> Optional[ConfigSnapshot]:
        return self.lookup(config_key, version)


def _build_entries(
    entries: Iterable[Mapping[str, Any]],
    payload_of,
    kind: str,
) -> list[ConfigSnapshot]:
    snapshots = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            _LOGGER.warning("Skipping malformed %s entry", kind, extra={"entry_type": type(entry).__name__})
            continue
        key = entry.get("key")
        try:
            raw_variants = entry.get("variants") or []
            if not isinstance(raw_variants, (list, tuple)):
                raise InvalidSnapshotError(f"variants of {key!r} must be a list")
            variants = []
            for position, variant in enumerate(raw_variants):
                if not isinstance(variant, Mapping):
                    raise InvalidSnapshotError(f"variant {position} of {key!r} is not a mapping")
                variants.append(
                    Variant(variant_index=position, weight=variant.get("weight", 0), payload=payload_of(variant))
                )
            snapshots.append(ConfigSnapshot.build(key, variants, version=entry.get("version")))
        except InvalidSnapshotError as exc:
            _LOGGER.warning("Skipping invalid %s snapshot", kind, extra={"config_key": key, "reason": str(exc)})
    return snapshots


def load_model_configs(payload: Mapping[str, Any]) -> list[ConfigSnapshot]:
    """Parse a ``{"configs": [...]}`` response into model snapshots."""

    return _build_entries(payload.get("configs") or [], lambda variant: variant.get("model"), "model")


def load_prompt_ab_tests(payload: Mapping[str, Any]) -> list[ConfigSnapshot]:
    """Parse the ``prompt_ab_tests`` section of a prompts response."""

    return _build_entries(
        payload.get("prompt_ab_tests") or [],
        lambda variant: (variant.get("prompt_key"), variant.get("prompt_version")),
        "prompt A/B",
    )


__all__ = [
    "ConfigSnapshot",
    "SnapshotCache",
    "SnapshotSource",
    "Variant",
    "load_model_configs",
    "load_prompt_ab_tests",
]
