"""
Alias normalization and value coercion

normalize_alias() is the single key function of the alias index: every alias
is stored under it and every extracted name is looked up through it. It is a
pure, total function and idempotent (normalize(normalize(x)) == normalize(x)),
which is enforced by applying the rules until the output stops changing.

The original item name is never rewritten; normalization is for matching only.
"""
import re
import unicodedata
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

# Noise removed before matching. Order matters: bed counts before generic
# parentheses, percentages before punctuation becomes whitespace.
STRIP_PATTERNS = [
    re.compile(r"\d+(?:\.\d+)?\s?%"),                              # 7.5%, 10 %
    re.compile(r"\(\s*\d+\s*bed(?:room)?s?\s*\)"),                # (5 bed), (3 bedrooms)
    re.compile(r"-\s*\d+\s*bed(?:room)?s?(?:\s+\w+)?"),           # - 5 bed detached
    re.compile(r"\b\d+\s*bed(?:room)?s?(?:\s+\w+)?"),             # 3 bedroom semi
    re.compile(r"\([^)]*\)"),                                     # (notes), (x2)
    re.compile(r"\b(?:semi-detached|detached|semi|terraced|apartment|flat|house)\b"),
]

QUANTITY_PATTERN = re.compile(r"\bx ?\d+\b")         # x4, x 12
NON_WORD_PATTERN = re.compile(r"[^\w\s]|_")          # punctuation and separators
WHITESPACE_PATTERN = re.compile(r"\s+")

# Financial plurals seen in appraisals ("interest rates" == "interest rate")
PLURAL_TO_SINGULAR = {
    "costs": "cost",
    "rates": "rate",
    "fees": "fee",
    "works": "work",
    "duties": "duty",
    "charges": "charge",
    "expenses": "expense",
    "payments": "payment",
    "amounts": "amount",
    "values": "value",
    "prices": "price",
    "totals": "total",
    "sales": "sale",
    "profits": "profit",
    "loans": "loan",
    "units": "unit",
    "plots": "plot",
    "sites": "site",
    "buildings": "building",
    "services": "service",
    "externals": "external",
    "utilities": "utility",
    "preliminaries": "preliminary",
    "prelims": "prelim",
}

MAX_PASSES = 8

CURRENCY_SYMBOLS = "£$€"


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _collapse(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _normalize_once(text: str) -> str:
    result = _strip_diacritics(text.casefold())

    for pattern in STRIP_PATTERNS:
        result = pattern.sub(" ", result)

    result = _collapse(NON_WORD_PATTERN.sub(" ", result))
    result = _collapse(QUANTITY_PATTERN.sub(" ", result))

    if not result:
        return ""
    return " ".join(PLURAL_TO_SINGULAR.get(word, word) for word in result.split(" "))


def normalize_alias(text: Optional[str]) -> str:
    """
    Normalize an item name for alias matching.

    Examples:
        "Site Acquisition Costs (incl. VAT)" -> "site acquisition cost"
        "Contingency 5%"                      -> "contingency"
        "Café Fit-Out x4"                     -> "cafe fit out"
    """
    if not text:
        return ""

    current = text
    for _ in range(MAX_PASSES):
        nxt = _normalize_once(current)
        if nxt == current:
            return nxt
        current = nxt
    return current


def normalize_category(name: str) -> str:
    """Category key: lowercase, spaces to dots, only [a-z0-9.] kept"""
    lowered = name.strip().lower()
    lowered = WHITESPACE_PATTERN.sub(".", lowered)
    return re.sub(r"[^a-z0-9.]", "", lowered)


def code_from_name(name: str) -> str:
    """Deterministic dotted code path derived from an item name"""
    normalized = normalize_alias(name)
    if not normalized:
        return "uncategorized.item"
    return ".".join(normalized.split(" "))


def infer_data_type_from_name(name: str) -> str:
    """Guess a data type from wording alone (used when no value is available)"""
    lowered = name.lower()
    if "rate" in lowered or "percentage" in lowered or "%" in lowered:
        return "percentage"
    if "count" in lowered or "number" in lowered or "units" in lowered:
        return "number"
    return "currency"


def detect_data_type(value: Any, currency: Optional[str] = None) -> str:
    """Infer the data type of an extracted value"""
    if currency:
        return "currency"
    if isinstance(value, bool):
        return "string"
    if isinstance(value, (int, float, Decimal)):
        # 0-1 fractions are percentages; whole numbers are counts
        if 0 <= value <= 1 and value != int(value):
            return "percentage"
        return "number"
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.endswith("%"):
            return "percentage"
        if stripped[:1] in CURRENCY_SYMBOLS:
            return "currency"
    return "string"


def coerce_value(value: Any, data_type: str) -> Any:
    """
    Coerce a raw value to the representation its data type requires.

    Numeric types become Decimal ("£1,250,000" -> Decimal("1250000"),
    "7.5%" -> Decimal("0.075")); string becomes str. Raises ValueError for
    values that cannot represent the declared type.
    """
    if value is None:
        return None

    if data_type == "string":
        return value if isinstance(value, str) else str(value)

    if isinstance(value, bool):
        raise ValueError(f"boolean is not a valid {data_type} value")

    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        for symbol in CURRENCY_SYMBOLS:
            text = text.replace(symbol, "")
        text = text.strip()
        if not text:
            return None
        is_percent = text.endswith("%")
        if is_percent:
            text = text[:-1].strip()
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"{value!r} is not a valid {data_type} value")
        if is_percent:
            number = number / Decimal(100)
    else:
        raise ValueError(f"{type(value).__name__} is not a valid {data_type} value")

    if not number.is_finite():
        raise ValueError(f"{value!r} is not a finite {data_type} value")
    return number
