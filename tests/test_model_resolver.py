"""Claude-backed resolver: prompt, response parsing, retries and cost."""

import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from packages.common.exceptions import ResolverUnavailableError
from packages.domain.codification.model_resolver import (
    AnthropicModelResolver,
    build_codification_prompt,
    calculate_cost,
    parse_resolver_response,
)
from packages.domain.codification.schemas import (
    CategoryEntry,
    DataType,
    PendingItemContext,
    ResolutionContext,
    TaxonomyEntry,
)

ANSWER = [
    {
        "item_index": 1,
        "suggested_code": "costs.siteAcquisition",
        "display_name": "Site Acquisition",
        "category": "Site Costs",
        "data_type": "currency",
        "is_new_code": False,
        "confidence": 0.82,
        "reasoning": "Purchase price of the land",
    }
]


def message(text, input_tokens=1000, output_tokens=200):
    return SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def client_returning(*outcomes):
    return SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(side_effect=list(outcomes))))


@pytest.fixture
def pending():
    return [PendingItemContext(index=1, name="Site Purchase Price", value="1250000", category_hint="Site Costs")]


@pytest.fixture
def context():
    return ResolutionContext(
        codes_by_category={
            "Site Costs": [
                TaxonomyEntry(
                    code="costs.siteAcquisition",
                    display_name="Site Acquisition",
                    category="Site Costs",
                    data_type=DataType.CURRENCY,
                )
            ]
        },
        categories=[CategoryEntry(name="Site Costs", description="Land", examples=["Stamp Duty"])],
        aliases_by_code={"costs.siteAcquisition": [f"alias {n}" for n in range(7)]},
    )


def test_calculate_cost():
    assert calculate_cost(1000, 200) == Decimal("0.006")
    assert calculate_cost(0, 0) == Decimal("0")


def test_prompt_lists_taxonomy_aliases_and_items(pending, context):
    prompt = build_codification_prompt(pending, context)

    assert "costs.siteAcquisition (Site Acquisition) [currency]" in prompt
    assert "Site Costs: Land (e.g. Stamp Duty)" in prompt
    assert "alias 4..." in prompt
    assert "alias 5" not in prompt
    assert '1. "Site Purchase Price" (value: 1250000, category: Site Costs)' in prompt


def test_prompt_cold_start(pending):
    prompt = build_codification_prompt(pending, ResolutionContext())

    assert "NO EXISTING CODES" in prompt


def test_parse_plain_and_fenced_json():
    plain = parse_resolver_response(json.dumps(ANSWER), item_count=1)
    fenced = parse_resolver_response("Here you go:\n```json\n" + json.dumps(ANSWER) + "\n```", item_count=1)

    assert plain == fenced
    assert plain[0].suggested_code == "costs.siteAcquisition"
    assert plain[0].confidence == 0.82


def test_parse_cleans_and_filters_entries():
    raw = [
        dict(ANSWER[0], suggested_code="<costs.siteAcquisition>", confidence=1.7),
        dict(ANSWER[0], item_index=9),
        dict(ANSWER[0], item_index=2, data_type="colour"),
        "not an object",
        dict(ANSWER[0], item_index=2, suggested_code=""),
    ]

    decisions = parse_resolver_response(json.dumps(raw), item_count=2)

    assert len(decisions) == 1
    assert decisions[0].suggested_code == "costs.siteAcquisition"
    assert decisions[0].confidence == 1.0


def test_parse_accepts_items_envelope():
    decisions = parse_resolver_response(json.dumps({"items": ANSWER}), item_count=1)

    assert decisions[0].item_index == 1


@pytest.mark.parametrize("text", ["no json here", '{"answer": 1}', "[]"])
def test_parse_rejects_unusable_answers(text):
    with pytest.raises(ValueError):
        parse_resolver_response(text, item_count=1)


@pytest.mark.asyncio
async def test_resolve_returns_decisions_and_usage(settings, pending, context):
    client = client_returning(message(json.dumps(ANSWER)))
    resolver = AnthropicModelResolver(settings=settings, client=client)

    response = await resolver.resolve(pending, context)

    assert response.decisions[0].confidence == 0.82
    assert response.usage.input_tokens == 1000
    assert response.usage.cost_usd == Decimal("0.006")
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == settings.smart_pass_model
    assert kwargs["temperature"] == 0.0


@pytest.mark.asyncio
async def test_resolve_retries_then_succeeds(settings, pending, context):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    client = client_returning(
        anthropic.APIConnectionError(request=request),
        message("I could not decide"),
        message(json.dumps(ANSWER)),
    )
    resolver = AnthropicModelResolver(settings=settings, client=client)

    response = await resolver.resolve(pending, context)

    assert client.messages.create.await_count == 3
    # Usage of the unparsable attempt is still counted
    assert response.usage.input_tokens == 2000
    assert response.usage.cost_usd == Decimal("0.012")


@pytest.mark.asyncio
async def test_resolve_gives_up_after_bounded_retries(settings, pending, context):
    client = client_returning(*[message("garbage") for _ in range(5)])
    resolver = AnthropicModelResolver(settings=settings, client=client)

    with pytest.raises(ResolverUnavailableError):
        await resolver.resolve(pending, context)

    assert client.messages.create.await_count == settings.smart_pass_max_retries + 1


@pytest.mark.asyncio
async def test_backoff_doubles(settings, pending, context, monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr("packages.domain.codification.model_resolver.asyncio.sleep", fake_sleep)
    slow = settings.model_copy(update={"smart_pass_retry_delay_seconds": 1.5})
    client = client_returning(*[message("garbage") for _ in range(3)])

    with pytest.raises(ResolverUnavailableError):
        await AnthropicModelResolver(settings=slow, client=client).resolve(pending, context)

    assert waits == [1.5, 3.0]


@pytest.mark.asyncio
async def test_missing_api_key_is_unavailable(settings, pending, context):
    resolver = AnthropicModelResolver(settings=settings)

    with pytest.raises(ResolverUnavailableError):
        await resolver.resolve(pending, context)


@pytest.mark.asyncio
async def test_no_items_skips_the_call(settings, context):
    client = client_returning()
    response = await AnthropicModelResolver(settings=settings, client=client).resolve([], context)

    assert response.decisions == []
    client.messages.create.assert_not_awaited()
