"""Alias index lookup, collision handling and fuzzy matching."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from packages.domain.codification.alias_index import AliasIndex
from packages.domain.codification.normalization import normalize_alias
from packages.domain.codification.schemas import AliasSource, MatchType
from packages.domain.codification.similarity import STRATEGIES, best_match, similarity

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

_ids = iter(range(1, 10_000))


def row(alias_raw, code, confidence=1.0, source="user_confirmed", created_at=T0, code_id=None, alias_id=None):
    return SimpleNamespace(
        id=alias_id if alias_id is not None else next(_ids),
        alias_normalized=normalize_alias(alias_raw),
        canonical_code=code,
        canonical_code_id=code_id or uuid4(),
        confidence=confidence,
        source=source,
        created_at=created_at,
    )


def index_of(*rows, active=True, **options):
    return AliasIndex.build([(r, active) for r in rows], **options)


def test_exact_hit_uses_stored_confidence():
    index = index_of(row("Site Purchase Price", "costs.siteAcquisition", confidence=0.9))

    match = index.lookup("site purchase prices")

    assert match.match_type == MatchType.EXACT
    assert match.canonical_code == "costs.siteAcquisition"
    assert match.similarity == 1.0
    assert match.confidence == 0.9


def test_fuzzy_hit_scales_confidence_by_similarity():
    index = index_of(row("Site Acquisition Costs", "costs.siteAcquisition"))

    match = index.lookup("Site Acquisiton Costs")

    assert match.match_type == MatchType.FUZZY
    assert 0.85 <= match.similarity < 1.0
    assert match.confidence == pytest.approx(match.similarity, abs=1e-4)


def test_below_threshold_is_a_miss():
    index = index_of(row("Site Acquisition Costs", "costs.siteAcquisition"))

    assert index.lookup("Marketing") is None
    assert index.lookup("") is None
    assert index.lookup("(notes)") is None


def test_exact_beats_better_scoring_fuzzy():
    index = index_of(
        row("agent fee", "costs.agentFees", confidence=1.0),
        row("agents fee", "costs.agentsOther", confidence=0.6),
    )

    match = index.lookup("Agents Fee")

    assert match.match_type == MatchType.EXACT
    assert match.canonical_code == "costs.agentsOther"
    assert match.confidence == 0.6


@pytest.mark.parametrize("threshold", [0.7, 0.85, 0.95])
def test_fuzzy_matches_never_fall_below_threshold(threshold):
    index = index_of(
        row("stamp duty land tax", "costs.sdlt"),
        row("professional fees", "costs.professionalFees"),
        row("build costs", "costs.build"),
        fuzzy_threshold=threshold,
    )

    queries = ["stamp duty", "profesional fee", "build cost total", "builds cost", "legal", "sdlt"]
    for query in queries:
        match = index.lookup(query)
        if match is not None and match.match_type == MatchType.FUZZY:
            assert match.similarity >= threshold


def test_collision_keeps_most_recent_alias():
    older = row("Land Cost", "costs.land", created_at=T0)
    newer = row("land costs", "costs.siteAcquisition", created_at=T0 + timedelta(minutes=5))

    index = index_of(newer, older)

    assert len(index) == 1
    assert index.lookup("Land Cost").canonical_code == "costs.siteAcquisition"


def test_collision_prefers_higher_confidence_over_recency():
    confident = row("Land Cost", "costs.land", confidence=1.0, created_at=T0)
    later = row("Land Cost", "costs.other", confidence=0.7, created_at=T0 + timedelta(days=1))

    assert index_of(confident, later).lookup("land cost").canonical_code == "costs.land"


def test_collision_tie_breaks_on_source_then_id():
    manual = row("Land Cost", "costs.manual", source="manual", alias_id=10)
    confirmed = row("Land Cost", "costs.confirmed", source="user_confirmed", alias_id=5)
    assert index_of(manual, confirmed).lookup("land cost").canonical_code == "costs.confirmed"

    first = row("Land Cost", "costs.first", alias_id=20)
    second = row("Land Cost", "costs.second", alias_id=21)
    assert index_of(second, first).lookup("land cost").canonical_code == "costs.second"


def test_naive_and_aware_timestamps_compare():
    naive_newer = row("Land Cost", "costs.naive", created_at=(T0 + timedelta(hours=1)).replace(tzinfo=None))
    aware_older = row("Land Cost", "costs.aware", created_at=T0)

    assert index_of(aware_older, naive_newer).lookup("land cost").canonical_code == "costs.naive"


def test_stale_code_is_penalized():
    index = index_of(row("Land Cost", "costs.land", confidence=1.0), active=False, stale_alias_penalty=0.5)

    match = index.lookup("Land Cost")

    assert match.code_active is False
    assert match.confidence == 0.5
    assert match.alias_source == AliasSource.USER_CONFIRMED


def test_container_protocol():
    index = index_of(row("Land Cost", "costs.land"))

    assert "land cost" in index
    assert index.get("land cost").canonical_code == "costs.land"
    assert index.get("missing") is None


@pytest.mark.parametrize("strategy", sorted(STRATEGIES))
def test_strategies_report_unit_interval(strategy):
    assert similarity("stamp duty", "stamp duty", strategy) == 1.0
    score = similarity("stamp duty", "stamp dutty", strategy)
    assert 0.0 <= score < 1.0


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError):
        similarity("a", "b", "soundex")


def test_best_match_is_order_independent():
    choices = ["abcx", "abcy"]
    assert best_match("abcz", choices, 0.5) == best_match("abcz", list(reversed(choices)), 0.5)
    assert best_match("abcz", choices, 0.5)[0] == "abcx"


@pytest.mark.asyncio
async def test_load_reflects_deactivated_codes(db, settings, make_code, make_alias):
    from packages.domain.codification.taxonomy_repository import taxonomy_repository

    land = await make_code("costs.land", "Land")
    build = await make_code("costs.build", "Build")
    await make_alias("Land Cost", land)
    await make_alias("Build Costs", build)

    await taxonomy_repository.deactivate_code(build.id, db)
    await db.commit()

    index = await AliasIndex.load(db, settings)

    assert len(index) == 2
    assert index.lookup("land cost").code_active is True
    stale = index.lookup("build cost")
    assert stale.code_active is False
    assert stale.confidence == 0.5
