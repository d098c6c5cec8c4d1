"""Optimistic locking on extraction records."""

import pytest

from packages.common.exceptions import ConcurrentModificationError
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.extraction_repository import extraction_repository
from packages.domain.codification.models import CodifiedExtraction
from packages.domain.codification.schemas import ExtractedItemInput, MappingStatus


@pytest.mark.asyncio
async def test_stale_writer_is_rejected(service, db, session_factory, make_code, gbp):
    site = await make_code("costs.siteAcquisition")
    build = await make_code("costs.build")
    fast = await service.fast_pass(
        "doc-a",
        [ExtractedItemInput(**gbp("Site Purchase Price")), ExtractedItemInput(**gbp("Build Costs"))],
        db,
    )
    site_item, build_item = fast.items

    async with session_factory() as other:
        # Load version 1 into the second session before the first writer commits
        stale = await other.get(CodifiedExtraction, fast.extraction_id)
        assert stale.version == 1

        await service.confirm(fast.extraction_id, site_item.id, "costs.siteAcquisition", db, canonical_code_id=site.id)

        with pytest.raises(ConcurrentModificationError):
            await service.confirm(fast.extraction_id, build_item.id, "costs.build", other, canonical_code_id=build.id)

    view = await service.get_extraction(fast.extraction_id, db)
    statuses = {item.id: item.mapping_status for item in view.items}
    assert statuses[site_item.id] == MappingStatus.CONFIRMED
    assert statuses[build_item.id] == MappingStatus.PENDING_REVIEW
    assert view.version == 2
    # The rejected confirmation's alias was rolled back with it
    assert await alias_repository.list_for_normalized("build cost", db) == []


@pytest.mark.asyncio
async def test_every_write_bumps_the_version(service, db, make_code, gbp):
    site = await make_code("costs.siteAcquisition")
    fast = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    assert (await service.get_extraction(fast.extraction_id, db)).version == 1

    await service.add_item(ExtractedItemInput(**gbp("Late Item")), db, extraction_id=fast.extraction_id)
    await service.confirm(fast.extraction_id, fast.items[0].id, "costs.siteAcquisition", db, canonical_code_id=site.id)

    assert (await service.get_extraction(fast.extraction_id, db)).version == 3


@pytest.mark.asyncio
async def test_fast_pass_rerun_during_smart_pass_model_call(service, resolver, publisher, db, session_factory, gbp):
    fast = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    resolver.answer("Site Purchase Price", "costs.siteAcquisition", 0.82)
    answer = resolver.resolve

    async def resolve_while_document_is_reextracted(items, context):
        async with session_factory() as other:
            await service.fast_pass(
                "doc-a",
                [ExtractedItemInput(**gbp("Site Purchase Price")), ExtractedItemInput(**gbp("Stamp Duty"))],
                other,
            )
        return await answer(items, context)

    resolver.resolve = resolve_while_document_is_reextracted
    published = len(publisher.events)

    with pytest.raises(ConcurrentModificationError):
        await service.smart_pass(db, extraction_id=fast.extraction_id)

    view = await service.get_extraction(fast.extraction_id, db)
    assert view.version == 2
    assert view.stats.pending_review == 2
    assert view.smart_pass_completed is False
    # Only the concurrent fast pass published anything
    assert len(publisher.events) == published + 1

    resolver.resolve = answer
    retry = await service.smart_pass(db, extraction_id=fast.extraction_id)
    assert retry.stats.suggested == 1
    assert retry.stats.pending_review == 1


@pytest.mark.asyncio
async def test_smart_pass_holds_no_transaction_during_model_call(service, resolver, db, gbp):
    fast = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)
    resolver.answer("Site Purchase Price", "costs.siteAcquisition", 0.82)
    answer = resolver.resolve
    seen = []

    async def resolve_and_check(items, context):
        seen.append(db.in_transaction())
        return await answer(items, context)

    resolver.resolve = resolve_and_check

    await service.smart_pass(db, extraction_id=fast.extraction_id)

    assert seen == [False]


@pytest.mark.asyncio
async def test_stale_save_reports_the_version_it_read(service, db, session_factory, gbp):
    fast = await service.fast_pass("doc-a", [ExtractedItemInput(**gbp("Site Purchase Price"))], db)

    async with session_factory() as other:
        stale = await other.get(CodifiedExtraction, fast.extraction_id)
        await service.add_item(ExtractedItemInput(**gbp("Late Item")), db, extraction_id=fast.extraction_id)

        with pytest.raises(ConcurrentModificationError) as excinfo:
            await extraction_repository.save_items(stale, [], other)

    assert excinfo.value.detail == f"Extraction {fast.extraction_id} changed since version 1"
