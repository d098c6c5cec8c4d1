"""
Model-assisted resolver - Claude API behind a narrow contract

The Smart Pass depends only on ModelResolver.resolve(items, context), which
returns one decision per item it could place (an existing code or a new-code
proposal) plus token usage. AnthropicModelResolver is the production
implementation; tests script their own.

Failure policy: API errors, timeouts and unparsable answers are retried with
exponential backoff; once retries are exhausted ResolverUnavailableError is
raised and the caller leaves its data untouched.
"""
import asyncio
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import anthropic
import structlog

from packages.common.config import Settings, get_settings
from packages.common.exceptions import ResolverUnavailableError
from packages.common.metrics import SMART_PASS_TOKENS
from packages.domain.codification.schemas import (
    PendingItemContext,
    ResolutionContext,
    ResolverDecision,
    ResolverResponse,
    ResolverUsage,
)

logger = structlog.get_logger()

# Cost per token (Claude Sonnet 4.5 pricing as of 2025)
INPUT_COST_PER_1K = Decimal("0.003")   # $3 per 1M input tokens
OUTPUT_COST_PER_1K = Decimal("0.015")  # $15 per 1M output tokens

MAX_ALIASES_PER_CODE = 5


class ModelResolver(Protocol):
    async def resolve(
        self,
        items: List[PendingItemContext],
        context: ResolutionContext,
    ) -> ResolverResponse:
        ...


def calculate_cost(input_tokens: int, output_tokens: int) -> Decimal:
    input_cost = (Decimal(input_tokens) / 1000) * INPUT_COST_PER_1K
    output_cost = (Decimal(output_tokens) / 1000) * OUTPUT_COST_PER_1K
    return input_cost + output_cost


def build_codification_prompt(items: List[PendingItemContext], context: ResolutionContext) -> str:
    """Prompt listing the taxonomy, known aliases and the numbered items to place"""
    if context.codes_by_category:
        sections = []
        for category, codes in context.codes_by_category.items():
            lines = "\n".join(
                f"  - {c.code} ({c.display_name}) [{c.data_type.value}]" for c in codes
            )
            sections.append(f"{category}:\n{lines}")
        codes_text = "EXISTING CODES IN THE SYSTEM:\n" + "\n\n".join(sections)
    else:
        codes_text = (
            "NO EXISTING CODES IN THE SYSTEM YET.\n"
            "This is a cold start - propose a new code for every item."
        )

    categories_text = ""
    if context.categories:
        lines = []
        for cat in context.categories:
            line = f"  - {cat.name}"
            if cat.description:
                line += f": {cat.description}"
            if cat.examples:
                line += f" (e.g. {', '.join(cat.examples[:5])})"
            lines.append(line)
        categories_text = "CATEGORIES:\n" + "\n".join(lines)

    aliases_text = ""
    if context.aliases_by_code:
        lines = []
        for code, aliases in context.aliases_by_code.items():
            shown = ", ".join(aliases[:MAX_ALIASES_PER_CODE])
            more = "..." if len(aliases) > MAX_ALIASES_PER_CODE else ""
            lines.append(f"  {code}: {shown}{more}")
        aliases_text = "KNOWN ALIASES (terms already mapped to codes):\n" + "\n".join(lines)

    items_text = "\n".join(
        f'{item.index}. "{item.name}" (value: {item.value}, category: {item.category_hint or "Uncategorized"})'
        for item in items
    )

    return f"""You are a financial data codification specialist. Map extracted financial line items to standardized item codes for a real estate financial model.

{codes_text}

{categories_text}

{aliases_text}

ITEMS TO CODIFY:
{items_text}

TASK:
For each item, either map it to an existing code that is semantically equivalent, or propose a new code when none fits.

CODE FORMAT:
- Lowercase dotted paths, e.g. costs.siteAcquisition, stamp.duty, interest.rate
- Keep codes short and descriptive

DATA TYPES: currency (money), number (counts), percentage (rates), string (text)

RESPONSE FORMAT (return ONLY this JSON array, no other text):
[
  {{
    "item_index": 1,
    "suggested_code": "stamp.duty",
    "display_name": "Stamp Duty",
    "category": "Purchase Costs",
    "data_type": "currency",
    "is_new_code": false,
    "confidence": 0.95,
    "reasoning": "SDLT is Stamp Duty Land Tax"
  }}
]

Use 0.9+ confidence for clear matches and 0.7-0.8 for ambiguous ones. Propose new codes only when no existing code is equivalent.
"""


def _extract_json(response_text: str) -> str:
    text = response_text.strip()
    if "```json" in text:
        return text.split("```json")[1].split("```")[0].strip()
    if "```" in text:
        return text.split("```")[1].split("```")[0].strip()
    return text


def parse_resolver_response(response_text: str, item_count: int) -> List[ResolverDecision]:
    """
    Parse the model's JSON array into decisions.

    Entries that reference an unknown item or fail validation are dropped.

    Raises:
        ValueError: the answer is not a JSON array, or nothing usable was returned
    """
    data = json.loads(_extract_json(response_text))
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        data = data["items"]
    if not isinstance(data, list):
        raise ValueError("resolver answer is not a JSON array")

    decisions: List[ResolverDecision] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        entry: Dict[str, Any] = dict(raw)
        entry["suggested_code"] = str(entry.get("suggested_code", "")).strip().strip("<>").strip()
        if not entry["suggested_code"]:
            continue
        try:
            entry["confidence"] = min(1.0, max(0.0, float(entry.get("confidence", 0.5))))
            decision = ResolverDecision.model_validate(entry)
        except (TypeError, ValueError) as e:
            logger.warning("resolver_entry_invalid", entry=raw, error=str(e))
            continue
        if not 1 <= decision.item_index <= item_count:
            logger.warning("resolver_entry_unknown_item", item_index=decision.item_index)
            continue
        decisions.append(decision)

    if item_count and not decisions:
        raise ValueError("resolver answer contained no usable decisions")
    return decisions


class AnthropicModelResolver:
    """
    Claude-backed resolver.

    Timeouts and retries are owned here, not by the SDK, so the backoff
    schedule is the configured one.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        client: Optional[Any] = None,
    ):
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.anthropic_api_key

        if client is not None:
            self.client = client
        elif self.api_key:
            self.client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.settings.smart_pass_timeout_seconds,
                max_retries=0,
            )
        else:
            logger.warning("anthropic_api_key_missing",
                          message="ANTHROPIC_API_KEY not set, smart pass will be unavailable")
            self.client = None

    async def resolve(
        self,
        items: List[PendingItemContext],
        context: ResolutionContext,
    ) -> ResolverResponse:
        if not items:
            return ResolverResponse(decisions=[])

        if self.client is None:
            raise ResolverUnavailableError(detail="ANTHROPIC_API_KEY is not configured")

        prompt = build_codification_prompt(items, context)
        max_retries = self.settings.smart_pass_max_retries
        usage = ResolverUsage()
        last_error: Optional[Exception] = None

        for attempt in range(max_retries + 1):
            try:
                response = await self.client.messages.create(
                    model=self.settings.smart_pass_model,
                    max_tokens=self.settings.smart_pass_max_tokens,
                    temperature=0.0,
                    messages=[{"role": "user", "content": prompt}],
                )

                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                # Failed parses still cost tokens
                usage = ResolverUsage(
                    input_tokens=usage.input_tokens + input_tokens,
                    output_tokens=usage.output_tokens + output_tokens,
                    cost_usd=usage.cost_usd + calculate_cost(input_tokens, output_tokens),
                )
                SMART_PASS_TOKENS.labels(direction="input").inc(input_tokens)
                SMART_PASS_TOKENS.labels(direction="output").inc(output_tokens)

                decisions = parse_resolver_response(response.content[0].text, len(items))

                logger.info("model_resolution_complete",
                           items=len(items),
                           decisions=len(decisions),
                           attempt=attempt + 1,
                           input_tokens=usage.input_tokens,
                           output_tokens=usage.output_tokens,
                           cost_usd=float(usage.cost_usd))
                return ResolverResponse(decisions=decisions, usage=usage)

            except (anthropic.APIError, ValueError, IndexError, AttributeError) as e:
                last_error = e
                logger.warning("model_resolution_attempt_failed",
                              attempt=attempt + 1,
                              max_attempts=max_retries + 1,
                              error_type=type(e).__name__,
                              error=str(e))
                if attempt < max_retries:
                    wait_time = self.settings.smart_pass_retry_delay_seconds * (2 ** attempt)
                    await asyncio.sleep(wait_time)

        logger.error("model_resolution_failed",
                    items=len(items),
                    error=str(last_error))
        raise ResolverUnavailableError(
            detail=f"{type(last_error).__name__}: {last_error}"
        ) from last_error
