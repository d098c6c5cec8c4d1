"""Fast pass: alias lookups, persistence and re-run merging."""

from decimal import Decimal

import pytest

from packages.common import events
from packages.domain.codification.schemas import (
    AliasSource,
    DataType,
    ExtractedItemInput,
    MappingStatus,
    MatchType,
)


@pytest.mark.asyncio
async def test_hits_are_suggested_and_misses_pending(service, db, make_code, make_alias, gbp):
    site = await make_code("costs.siteAcquisition", "Site Acquisition")
    fees = await make_code("costs.professionalFees", "Professional Fees")
    await make_alias("Site Purchase Price", site)
    await make_alias("Professional Fees", fees, source=AliasSource.MANUAL, confidence=0.9)

    result = await service.fast_pass(
        "doc-a",
        [
            ExtractedItemInput(**gbp("Site Purchase Price", "£1,250,000")),
            ExtractedItemInput(**gbp("Profesional Fees")),
            ExtractedItemInput(**gbp("Marketing Budget")),
        ],
        db,
        project_id="proj-1",
    )

    exact, fuzzy, miss = result.items
    assert exact.mapping_status == MappingStatus.SUGGESTED
    assert exact.match_type == MatchType.EXACT
    assert exact.suggested_code_id == site.id
    assert exact.confidence == 1.0
    assert exact.value == Decimal("1250000")
    assert exact.data_type == DataType.CURRENCY

    assert fuzzy.match_type == MatchType.FUZZY
    assert fuzzy.suggested_code == "costs.professionalFees"
    assert 0 < fuzzy.confidence < 0.9

    assert miss.mapping_status == MappingStatus.PENDING_REVIEW
    assert miss.confidence == 0.0
    assert miss.suggested_code is None

    assert all(item.item_code is None for item in result.items)
    assert result.stats.exact_hits == 1
    assert result.stats.fuzzy_hits == 1
    assert result.stats.pending_review == 1
    assert result.stats.suggested == 2
    assert result.stats.total == 3

    view = await service.get_extraction_by_document("doc-a", db)
    assert view.id == result.extraction_id
    assert view.project_id == "proj-1"
    assert view.fast_pass_completed is True
    assert view.smart_pass_completed is False
    assert view.is_fully_confirmed is False


@pytest.mark.asyncio
async def test_original_names_are_never_rewritten(service, db, gbp):
    result = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("  Café Fit-Out x4 (est.) "))], db)

    assert result.items[0].original_name == "  Café Fit-Out x4 (est.) "
    assert result.items[0].category == "Site Costs"


@pytest.mark.asyncio
async def test_missing_category_defaults(service, db, gbp):
    result = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Sundries", category=None))], db)

    assert result.items[0].category == "Uncategorized"


@pytest.mark.asyncio
async def test_deactivated_code_is_suggested_as_stale(service, db, make_code, make_alias, gbp):
    legacy = await make_code("costs.legacy")
    await make_alias("Legacy Fees", legacy)
    await service.deactivate_item_code(legacy.id, db)

    result = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Legacy Fees"))], db)

    item = result.items[0]
    assert item.mapping_status == MappingStatus.SUGGESTED
    assert item.stale_code is True
    assert item.suggested_code == "costs.legacy"
    assert item.suggested_code_id is None
    assert item.confidence == 0.5


@pytest.mark.asyncio
async def test_empty_document(service, db):
    result = await service.fast_pass("doc-empty", [], db)

    assert result.items == []
    assert result.stats.total == 0
    view = await service.get_extraction(result.extraction_id, db)
    assert view.is_fully_confirmed is True


@pytest.mark.asyncio
async def test_rerun_keeps_ids_confirmed_and_manual_items(service, db, make_code, gbp):
    site = await make_code("costs.siteAcquisition")
    await make_code("costs.build")
    first = await service.fast_pass(
        "doc-a",
        [
            ExtractedItemInput(**gbp("Site Purchase Price")),
            ExtractedItemInput(**gbp("Build Costs")),
            ExtractedItemInput(**gbp("Build Costs", "2000")),
        ],
        db,
    )
    site_item, build_1, build_2 = first.items
    await service.confirm(first.extraction_id, site_item.id, "costs.siteAcquisition", db, canonical_code_id=site.id)
    manual = await service.add_item(ExtractedItemInput(**gbp("Abnormal Costs")), db, document_id="doc-a")

    second = await service.fast_pass(
        "doc-a",
        [
            ExtractedItemInput(**gbp("Site Purchase Price", "999")),
            ExtractedItemInput(**gbp("build cost")),
            ExtractedItemInput(**gbp("Build Costs", "2500")),
            ExtractedItemInput(**gbp("Contingency")),
        ],
        db,
    )

    assert second.extraction_id == first.extraction_id
    by_id = {item.id: item for item in second.items}

    kept = by_id[site_item.id]
    assert kept.mapping_status == MappingStatus.CONFIRMED
    assert kept.item_code == "costs.siteAcquisition"
    assert kept.value == Decimal("1000")

    assert by_id[build_1.id].value == Decimal("1000")
    assert by_id[build_2.id].value == Decimal("2500")
    assert by_id[manual.item_id].is_manual is True
    assert len(second.items) == 5


@pytest.mark.asyncio
async def test_rerun_keeps_confirmed_items_no_longer_extracted(service, db, make_code, gbp):
    site = await make_code("costs.siteAcquisition")
    first = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    item_id = first.items[0].id
    await service.confirm(first.extraction_id, item_id, "costs.siteAcquisition", db, canonical_code_id=site.id)

    second = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Other Line"))], db)

    assert [item.id for item in second.items][-1] == item_id
    assert second.items[-1].mapping_status == MappingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_rerun_with_new_pending_items_reopens_smart_pass(service, resolver, db, make_code, gbp):
    await make_code("costs.siteAcquisition")
    await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    resolver.answer("Site Purchase Price", "costs.siteAcquisition", 0.9)
    await service.smart_pass(db, document_id="doc-a")

    await service.fast_pass(
        "doc-a",
        [ExtractedItemInput(**gbp("Site Purchase Price")), ExtractedItemInput(**gbp("Contingency"))],
        db,
    )

    view = await service.get_extraction_by_document("doc-a", db)
    assert view.smart_pass_completed is False
    assert view.stats.pending_review == 1
    assert view.stats.suggested == 1


@pytest.mark.asyncio
async def test_fast_pass_uses_aliases_learned_since_last_run(service, db, make_code, make_alias, gbp):
    site = await make_code("costs.siteAcquisition")
    first = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Land Cost"))], db)
    assert first.stats.pending_review == 1

    await make_alias("Land Cost", site)
    second = await service.fast_pass("doc-b", [ExtractedItemInput(**gbp("Land Cost"))], db)

    assert second.items[0].match_type == MatchType.EXACT


@pytest.mark.asyncio
async def test_fast_pass_publishes_update_event(service, publisher, db, gbp):
    result = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Contingency"))], db)

    assert publisher.types() == [events.EXTRACTION_UPDATED]
    payload = publisher.events[0][1]
    assert payload["extraction_id"] == str(result.extraction_id)
    assert payload["operation"] == "fast_pass"
    assert payload["stats"]["pending_review"] == 1


@pytest.mark.asyncio
async def test_project_listing(service, db, gbp):
    await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Contingency"))], db, project_id="proj-1")
    await service.fast_pass("doc-b", [ExtractedItemInput(**gbp("Contingency"))], db, project_id="proj-1")
    await service.fast_pass("doc-c", [ExtractedItemInput(**gbp("Contingency"))], db, project_id="proj-2")

    views = await service.list_project_extractions("proj-1", db)

    assert sorted(view.document_id for view in views) == ["doc-a", "doc-b"]


@pytest.mark.asyncio
async def test_rerun_keeps_model_suggestions_the_index_cannot_reproduce(service, resolver, db, make_code, gbp):
    site = await make_code("costs.siteAcquisition")
    await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    resolver.answer("Site Purchase Price", "costs.siteAcquisition", 0.82)
    await service.smart_pass(db, document_id="doc-a")

    rerun = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price", "1200"))], db)

    item = rerun.items[0]
    assert item.mapping_status == MappingStatus.SUGGESTED
    assert item.match_type == MatchType.MODEL
    assert item.suggested_code_id == site.id
    assert item.confidence == 0.82
    assert item.value == Decimal("1200")

    view = await service.get_extraction_by_document("doc-a", db)
    assert view.smart_pass_completed is True
    again = await service.smart_pass(db, document_id="doc-a")
    assert again.skipped is True
    assert len(resolver.calls) == 1
