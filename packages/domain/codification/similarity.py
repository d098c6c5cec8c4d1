"""
Pluggable string similarity for fuzzy alias matching (rapidfuzz-backed)

Every strategy reports similarity in [0, 1]; 1.0 means identical strings.
"""
from typing import Callable, Dict, Iterable, Optional, Tuple

from rapidfuzz import fuzz, process
from rapidfuzz.distance import JaroWinkler, Levenshtein

# strategy name -> (scorer, scale of the scorer's output)
STRATEGIES: Dict[str, Tuple[Callable[..., float], float]] = {
    "ratio": (fuzz.ratio, 100.0),
    "token_sort_ratio": (fuzz.token_sort_ratio, 100.0),
    "levenshtein": (Levenshtein.normalized_similarity, 1.0),
    "jaro_winkler": (JaroWinkler.normalized_similarity, 1.0),
}

DEFAULT_STRATEGY = "ratio"


def _resolve(strategy: str) -> Tuple[Callable[..., float], float]:
    try:
        return STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown similarity strategy '{strategy}', expected one of {sorted(STRATEGIES)}")


def similarity(a: str, b: str, strategy: str = DEFAULT_STRATEGY) -> float:
    scorer, scale = _resolve(strategy)
    return min(1.0, max(0.0, scorer(a, b) / scale))


def best_match(
    query: str,
    choices: Iterable[str],
    threshold: float,
    strategy: str = DEFAULT_STRATEGY,
) -> Optional[Tuple[str, float]]:
    """
    Best-scoring choice with similarity >= threshold, or None.

    Equal scores resolve to the lexicographically smallest choice so the
    result does not depend on index insertion order.
    """
    scorer, scale = _resolve(strategy)
    ordered = sorted(choices)
    if not query or not ordered:
        return None

    found = process.extractOne(
        query,
        ordered,
        scorer=scorer,
        processor=None,
        score_cutoff=threshold * scale,
    )
    if found is None:
        return None

    choice, score, _ = found
    return choice, min(1.0, max(0.0, score / scale))
