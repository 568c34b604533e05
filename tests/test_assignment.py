import asyncio
import time
from typing import Optional

import pytest

from abtrace.assignment import BUCKET_RESOLUTION, AssignmentEngine, assign, bucket_for
from abtrace.errors import AssignmentFailure, AssignmentFailureKind, InvalidSnapshotError
from abtrace.snapshots import ConfigSnapshot, SnapshotCache, Variant, load_model_configs


def _snapshot(*weights: int, key: str = "chat", version: int = 1) -> ConfigSnapshot:
    return ConfigSnapshot.build(
        key,
        [Variant(variant_index=i, weight=w, payload=f"model-{i}") for i, w in enumerate(weights)],
        version=version,
    )


class NeverRespondingSource:
    async def get_snapshot(self, config_key: str, version: Optional[int] = None) -> Optional[ConfigSnapshot]:
        await asyncio.Event().wait()
        return None


class BrokenSource:
    async def get_snapshot(self, config_key: str, version: Optional[int] = None) -> Optional[ConfigSnapshot]:
        raise ConnectionError("config service down")


@pytest.mark.parametrize(
    ("subject", "bucket"),
    [
        ("user-123-convo-456", 910222),
        ("session-1", 146357),
        ("session-2", 553343),
        ("a", 5177),
    ],
)
def test_bucket_matches_md5_u32be_contract(subject: str, bucket: int) -> None:
    assert bucket_for(subject) == bucket


def test_bucket_range() -> None:
    for subject in ["", "a", "test", "very-long-session-id-here" * 10, "ünïcødé"]:
        assert 0 <= bucket_for(subject) < BUCKET_RESOLUTION


def test_assignment_is_deterministic() -> None:
    snapshot = _snapshot(50, 30, 20)
    for i in range(200):
        subject = f"user-{i}"
        first = assign(subject, snapshot)
        second = assign(subject, snapshot)
        assert (first.variant_index, first.payload) == (second.variant_index, second.payload)


def test_known_subjects_land_on_expected_variants() -> None:
    snapshot = _snapshot(70, 30)
    # buckets below 700000 fall in the first 70% of the range
    assert assign("session-1", snapshot).variant_index == 0
    assert assign("session-2", snapshot).variant_index == 0
    assert assign("user-123-convo-456", snapshot).variant_index == 1


def test_weights_are_normalised_against_their_sum() -> None:
    # 7:3 must behave exactly like 70:30
    small = _snapshot(7, 3)
    large = _snapshot(70, 30)
    for i in range(500):
        subject = f"subject-{i}"
        assert assign(subject, small).variant_index == assign(subject, large).variant_index


def test_distribution_matches_weights() -> None:
    snapshot = _snapshot(70, 30)
    total = 100_000
    counts = [0, 0]
    for i in range(total):
        counts[assign(f"subject-{i}", snapshot).variant_index] += 1
    expected = [total * 0.7, total * 0.3]
    chi_square = sum((observed - exp) ** 2 / exp for observed, exp in zip(counts, expected))
    # one degree of freedom, p = 0.001
    assert chi_square < 10.83


def test_single_variant_always_wins() -> None:
    snapshot = ConfigSnapshot.build("solo", [("A", 100)])
    for i in range(100):
        assert assign(f"anyone-{i}", snapshot).payload == "A"


def test_zero_weight_variant_is_never_selected() -> None:
    snapshot = _snapshot(0, 100)
    for i in range(200):
        assert assign(f"user-{i}", snapshot).variant_index == 1


@pytest.mark.parametrize("weights", [(), (0, 0), (-1, 5)])
def test_invalid_snapshots_rejected_at_build(weights) -> None:
    with pytest.raises(InvalidSnapshotError):
        _snapshot(*weights)


def test_engine_get_returns_real_assignment() -> None:
    async def _run() -> None:
        engine = AssignmentEngine(SnapshotCache([_snapshot(70, 30)]))
        result = await engine.get("chat", "session-1", fallback="gpt-fallback")
        assert result.payload == "model-0"
        assert result.variant_index == 0
        assert result.version == 1
        assert not result.is_fallback

    asyncio.run(_run())


def test_engine_pinned_version_restricts_lookup() -> None:
    async def _run() -> None:
        cache = SnapshotCache(
            [
                ConfigSnapshot.build("chat", [("old-model", 100)], version=1),
                ConfigSnapshot.build("chat", [("new-model", 100)], version=2),
            ]
        )
        engine = AssignmentEngine(cache)
        assert (await engine.get("chat", "s", fallback="fb")).payload == "new-model"
        pinned = await engine.get("chat", "s", fallback="fb", version=1)
        assert pinned.payload == "old-model"
        assert pinned.version == 1

    asyncio.run(_run())


def test_engine_falls_back_for_unknown_key() -> None:
    async def _run() -> None:
        engine = AssignmentEngine(SnapshotCache())
        result = await engine.get("missing", "s", fallback="gpt-fallback")
        assert result.is_fallback
        assert result.payload == "gpt-fallback"
        assert result.variant_index is None

    asyncio.run(_run())


@pytest.mark.parametrize(
    ("source", "version", "kind"),
    [
        (SnapshotCache(), None, AssignmentFailureKind.UNKNOWN_KEY),
        (SnapshotCache([_snapshot(100)]), 7, AssignmentFailureKind.VERSION_MISSING),
        (BrokenSource(), None, AssignmentFailureKind.SOURCE_ERROR),
    ],
)
def test_strict_resolve_surfaces_failure_kind(source, version, kind) -> None:
    async def _run() -> None:
        engine = AssignmentEngine(source)
        with pytest.raises(AssignmentFailure) as excinfo:
            await engine.resolve("chat", "s", version=version)
        assert excinfo.value.kind is kind

    asyncio.run(_run())


def test_never_responding_source_falls_back_within_bound() -> None:
    async def _run() -> None:
        engine = AssignmentEngine(NeverRespondingSource(), timeout=0.2)
        start = time.perf_counter()
        result = await engine.get("chat", "s", fallback="gpt-fallback")
        elapsed = time.perf_counter() - start
        assert result.is_fallback
        assert result.payload == "gpt-fallback"
        assert elapsed < 2.0

        with pytest.raises(AssignmentFailure) as excinfo:
            await engine.resolve("chat", "s")
        assert excinfo.value.kind is AssignmentFailureKind.TIMEOUT

    asyncio.run(_run())


def test_get_sync_reads_local_cache() -> None:
    engine = AssignmentEngine(SnapshotCache([_snapshot(70, 30)]))
    assert engine.get_sync("chat", "session-1", fallback="fb").payload == "model-0"
    assert engine.get_sync("other", "session-1", fallback="fb").is_fallback


def test_cache_swap_and_payload_loader() -> None:
    cache = SnapshotCache()
    cache.replace(
        load_model_configs(
            {
                "configs": [
                    {"key": "chat", "version": 3, "variants": [{"model": "gpt-4o", "weight": 100}]},
                    {"key": "broken", "version": 1, "variants": [{"model": "x", "weight": 0}]},
                    {"key": "empty", "version": 1, "variants": []},
                ]
            }
        )
    )
    assert cache.keys() == ("chat",)
    assert cache.lookup("chat").variants[0].payload == "gpt-4o"

    cache.replace([])
    assert cache.lookup("chat") is None


def test_loader_skips_malformed_entries_and_keeps_valid_siblings() -> None:
    snapshots = load_model_configs(
        {
            "configs": [
                "not-an-entry",
                {"key": "bad-variant", "version": 1, "variants": ["gpt-4o"]},
                {"key": "bad-variants", "version": 1, "variants": 7},
                {"key": "bad-version", "version": "2", "variants": [{"model": "x", "weight": 1}]},
                {"key": "chat", "version": 1, "variants": [{"model": "gpt-4o", "weight": 100}]},
            ]
        }
    )
    assert [snapshot.config_key for snapshot in snapshots] == ["chat"]


def test_mixed_version_types_do_not_break_cache_refresh() -> None:
    cache = SnapshotCache()
    cache.replace(
        load_model_configs(
            {
                "configs": [
                    {"key": "chat", "version": 1, "variants": [{"model": "old", "weight": 1}]},
                    {"key": "chat", "version": "2", "variants": [{"model": "new", "weight": 1}]},
                ]
            }
        )
    )
    assert cache.lookup("chat").variants[0].payload == "old"


@pytest.mark.parametrize("version", ["3", 1.5, True])
def test_build_rejects_non_integer_versions(version) -> None:
    with pytest.raises(InvalidSnapshotError):
        ConfigSnapshot.build("chat", [("gpt-4o", 100)], version=version)
