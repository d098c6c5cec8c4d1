"""
Smart Pass Resolver - model-assisted resolution of items the Fast Pass missed

Runs on demand for one extraction. Pending items (and, with force, suggested
ones) are sent to the ModelResolver together with the active taxonomy,
category descriptions and known aliases. Answers only ever produce
suggestions: nothing is confirmed and no code is created here. A resolver
code that does not exist yet is a new-code proposal, grouped with the items
it was proposed for.

A run has three steps so no database connection is held during the model
call: prepare() reads, request() calls the model, apply() writes the answers
if the extraction is still at the version prepare() read.

suggest_single() answers the same question for one free-standing name and
degrades to a deterministic name-derived code when the model is unavailable.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import Settings, get_settings
from packages.common.exceptions import (
    ConcurrentModificationError,
    ExtractionNotFoundError,
    ResolverUnavailableError,
)
from packages.common.metrics import SMART_PASS_CALLS
from packages.domain.codification.alias_index import AliasIndex
from packages.domain.codification.alias_repository import alias_repository
from packages.domain.codification.extraction_repository import (
    extraction_repository,
    load_items,
)
from packages.domain.codification.model_resolver import ModelResolver
from packages.domain.codification.models import CodifiedExtraction, ItemCode, utcnow
from packages.domain.codification.normalization import (
    code_from_name,
    infer_data_type_from_name,
)
from packages.domain.codification.schemas import (
    CategoryEntry,
    CodifiedItem,
    DataType,
    MappingStats,
    MappingStatus,
    MatchType,
    NewCodeSuggestion,
    PendingItemContext,
    ResolutionContext,
    ResolverDecision,
    ResolverResponse,
    ResolverUsage,
    SingleSuggestion,
    SmartPassResult,
    SmartPassSuggestion,
    TaxonomyEntry,
)
from packages.domain.codification.taxonomy_repository import taxonomy_repository

logger = structlog.get_logger()


@dataclass
class SmartPassPlan:
    """What prepare() read; skipped is set when there is nothing to resolve"""
    extraction_id: UUID
    document_id: str
    version: int
    eligible: List[CodifiedItem]
    pending: List[PendingItemContext] = field(default_factory=list)
    context: ResolutionContext = field(default_factory=ResolutionContext)
    skipped: Optional[SmartPassResult] = None


class SmartPassResolver:

    def __init__(self, resolver: ModelResolver, settings: Optional[Settings] = None):
        self.resolver = resolver
        self.settings = settings or get_settings()

    async def build_context(self, db: AsyncSession) -> ResolutionContext:
        """Active taxonomy by category, category descriptions and every alias"""
        codes_by_category = {
            category: [
                TaxonomyEntry(
                    code=code.code,
                    display_name=code.display_name,
                    category=code.category,
                    data_type=DataType(code.data_type),
                )
                for code in codes
            ]
            for category, codes in (await taxonomy_repository.codes_by_category(db)).items()
        }
        categories = [
            CategoryEntry(name=cat.name, description=cat.description, examples=list(cat.examples or []))
            for cat in await taxonomy_repository.list_categories(db)
        ]
        aliases_by_code = {
            code: [alias.alias_raw for alias in aliases]
            for code, aliases in (await alias_repository.aliases_by_code(db)).items()
        }
        return ResolutionContext(
            codes_by_category=codes_by_category,
            categories=categories,
            aliases_by_code=aliases_by_code,
        )

    async def prepare(
        self,
        db: AsyncSession,
        extraction_id=None,
        document_id: Optional[str] = None,
        force: bool = False,
    ) -> SmartPassPlan:
        """
        Read everything the model call needs.

        Only reads; the caller ends the transaction before request() so no
        connection is held while the model answers. A plan with a result
        set means there is nothing to do.
        """
        extraction = await extraction_repository.resolve(db, extraction_id=extraction_id, document_id=document_id)
        items = load_items(extraction)

        skip_reason = None
        eligible_statuses = {MappingStatus.PENDING_REVIEW}
        if force:
            eligible_statuses.add(MappingStatus.SUGGESTED)
        eligible = [item for item in items if item.mapping_status in eligible_statuses]

        if extraction.smart_pass_completed and not force:
            skip_reason = "smart pass already completed"
        elif not eligible:
            skip_reason = "no items need resolution"

        plan = SmartPassPlan(
            extraction_id=extraction.id,
            document_id=extraction.document_id,
            version=extraction.version,
            eligible=eligible,
        )

        if skip_reason:
            SMART_PASS_CALLS.labels(result="skipped").inc()
            logger.info("smart_pass_skipped",
                       extraction_id=str(extraction.id),
                       reason=skip_reason)
            plan.skipped = SmartPassResult(
                extraction_id=extraction.id,
                skipped=True,
                reason=skip_reason,
                items=items,
                stats=MappingStats.from_items(items),
            )
            return plan

        logger.info("smart_pass_started",
                   extraction_id=str(extraction.id),
                   eligible=len(eligible),
                   force=force)

        plan.context = await self.build_context(db)
        plan.pending = [
            PendingItemContext(index=n, name=item.original_name, value=item.value, category_hint=item.category)
            for n, item in enumerate(eligible, start=1)
        ]
        return plan

    async def request(self, plan: SmartPassPlan) -> ResolverResponse:
        """The model call; raises ResolverUnavailableError"""
        try:
            response = await self.resolver.resolve(plan.pending, plan.context)
        except ResolverUnavailableError:
            SMART_PASS_CALLS.labels(result="failure").inc()
            logger.error("smart_pass_failed", extraction_id=str(plan.extraction_id))
            raise
        SMART_PASS_CALLS.labels(result="success").inc()
        return response

    async def apply(
        self,
        db: AsyncSession,
        plan: SmartPassPlan,
        response: ResolverResponse,
    ) -> Tuple[CodifiedExtraction, SmartPassResult]:
        """
        Write the answers onto the extraction read by prepare().

        Raises:
            ConcurrentModificationError: the extraction changed during the model call
        """
        extraction = await extraction_repository.get(plan.extraction_id, db, fresh=True)
        if extraction is None:
            raise ExtractionNotFoundError(detail=f"extraction_id={plan.extraction_id}")
        if extraction.version != plan.version:
            logger.warning("smart_pass_version_conflict",
                          extraction_id=str(plan.extraction_id),
                          read_version=plan.version,
                          current_version=extraction.version)
            raise ConcurrentModificationError(
                detail=f"Extraction {plan.extraction_id} changed since version {plan.version}",
            )

        items = load_items(extraction)
        eligible = plan.eligible
        codes = await self._codes_by_string(db, response.decisions)
        updated: Dict[str, CodifiedItem] = {}
        suggestions: List[SmartPassSuggestion] = []
        new_codes: "OrderedDict[str, NewCodeSuggestion]" = OrderedDict()

        for decision in response.decisions:
            if not 1 <= decision.item_index <= len(eligible):
                logger.warning("smart_pass_decision_unknown_item", item_index=decision.item_index)
                continue
            target = eligible[decision.item_index - 1]
            if target.id in updated:
                continue  # first answer per item wins

            item_code = codes.get(decision.suggested_code)
            is_new_code = item_code is None
            stale = item_code is not None and not item_code.is_active

            updated[target.id] = target.evolve(
                mapping_status=MappingStatus.SUGGESTED,
                suggested_code=decision.suggested_code,
                suggested_code_id=item_code.id if item_code is not None and item_code.is_active else None,
                confidence=decision.confidence,
                match_type=MatchType.MODEL,
                stale_code=stale,
            )
            suggestions.append(SmartPassSuggestion(
                item_id=target.id,
                original_name=target.original_name,
                suggested_code=decision.suggested_code,
                suggested_code_id=updated[target.id].suggested_code_id,
                suggested_display_name=decision.display_name,
                suggested_category=decision.category,
                suggested_data_type=decision.data_type,
                confidence=decision.confidence,
                is_new_code=is_new_code,
                reasoning=decision.reasoning,
            ))

            if is_new_code:
                proposal = new_codes.get(decision.suggested_code)
                if proposal is None:
                    proposal = NewCodeSuggestion(
                        code=decision.suggested_code,
                        display_name=decision.display_name,
                        category=decision.category,
                        data_type=decision.data_type,
                    )
                    new_codes[decision.suggested_code] = proposal
                proposal.for_items.append(target.id)

        new_items = [updated.get(item.id, item) for item in items]
        extraction.smart_pass_completed = True
        extraction.smart_pass_at = utcnow()
        stats = await extraction_repository.save_items(extraction, new_items, db)

        logger.info("smart_pass_complete",
                   extraction_id=str(extraction.id),
                   suggestions=len(suggestions),
                   new_codes=len(new_codes),
                   unanswered=len(eligible) - len(updated),
                   input_tokens=response.usage.input_tokens,
                   output_tokens=response.usage.output_tokens,
                   cost_usd=float(response.usage.cost_usd))

        return extraction, SmartPassResult(
            extraction_id=extraction.id,
            suggestions=suggestions,
            new_code_suggestions=list(new_codes.values()),
            items=new_items,
            stats=stats,
            usage=response.usage,
        )

    async def suggest_single(
        self,
        item_name: str,
        db: AsyncSession,
        value=None,
        category_hint: Optional[str] = None,
    ) -> SingleSuggestion:
        """One-item suggestion; exact alias hits never reach the model"""
        index = await AliasIndex.load(db, self.settings)
        match = index.lookup(item_name)
        if match is not None and match.match_type == MatchType.EXACT and match.code_active:
            item_code = await taxonomy_repository.get_code_by_id(match.canonical_code_id, db)
            if item_code is not None:
                logger.info("suggest_single_alias_hit", item_name=item_name, code=item_code.code)
                return SingleSuggestion(
                    item_name=item_name,
                    suggested_code=item_code.code,
                    suggested_code_id=item_code.id,
                    display_name=item_code.display_name,
                    category=item_code.category,
                    data_type=DataType(item_code.data_type),
                    confidence=match.confidence,
                    is_new_code=False,
                    match_type=MatchType.EXACT,
                )

        context = await self.build_context(db)
        pending = [PendingItemContext(index=1, name=item_name, value=value, category_hint=category_hint)]
        try:
            response = await self.resolver.resolve(pending, context)
        except ResolverUnavailableError as e:
            SMART_PASS_CALLS.labels(result="failure").inc()
            logger.warning("suggest_single_fallback", item_name=item_name, error=str(e))
            return self.fallback_suggestion(item_name, category_hint)
        SMART_PASS_CALLS.labels(result="success").inc()

        if not response.decisions:
            logger.warning("suggest_single_no_decision", item_name=item_name)
            return self.fallback_suggestion(item_name, category_hint, usage=response.usage)

        decision = response.decisions[0]
        codes = await self._codes_by_string(db, [decision])
        item_code = codes.get(decision.suggested_code)
        return SingleSuggestion(
            item_name=item_name,
            suggested_code=decision.suggested_code,
            suggested_code_id=item_code.id if item_code is not None and item_code.is_active else None,
            display_name=decision.display_name,
            category=decision.category,
            data_type=decision.data_type,
            confidence=decision.confidence,
            is_new_code=item_code is None,
            match_type=MatchType.MODEL,
            reasoning=decision.reasoning,
            usage=response.usage,
        )

    def fallback_suggestion(
        self,
        item_name: str,
        category_hint: Optional[str] = None,
        usage: Optional[ResolverUsage] = None,
    ) -> SingleSuggestion:
        """Deterministic proposal derived from the name alone"""
        return SingleSuggestion(
            item_name=item_name,
            suggested_code=code_from_name(item_name),
            display_name=item_name,
            category=category_hint or "Uncategorized",
            data_type=DataType(infer_data_type_from_name(item_name)),
            confidence=self.settings.fallback_confidence,
            is_new_code=True,
            match_type=MatchType.FALLBACK,
            reasoning="Model unavailable; code derived from the item name",
            usage=usage,
        )

    async def _codes_by_string(
        self,
        db: AsyncSession,
        decisions: List[ResolverDecision],
    ) -> Dict[str, ItemCode]:
        wanted = {decision.suggested_code for decision in decisions}
        codes = {}
        for code in wanted:
            item_code = await taxonomy_repository.get_code_by_code(code, db)
            if item_code is not None:
                codes[code] = item_code
        return codes
