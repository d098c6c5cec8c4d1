"""
Prometheus counters exposed on the API's /metrics endpoint
"""
from prometheus_client import Counter

FAST_PASS_ITEMS = Counter(
    "codification_fast_pass_items_total",
    "Items resolved by the fast pass, by outcome",
    ["outcome"],  # exact | fuzzy | miss
)

SMART_PASS_CALLS = Counter(
    "codification_smart_pass_calls_total",
    "Model-assisted resolver calls, by result",
    ["result"],  # success | failure | skipped
)

SMART_PASS_TOKENS = Counter(
    "codification_smart_pass_tokens_total",
    "Tokens spent by the model-assisted resolver",
    ["direction"],  # input | output
)

ALIASES_CREATED = Counter(
    "codification_aliases_created_total",
    "Aliases written by the confirmation learner",
    ["source"],
)

ITEM_CODES_CREATED = Counter(
    "codification_item_codes_created_total",
    "Canonical item codes created",
)
