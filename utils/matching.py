"""Cross-provider market matching.

Matching is a heuristic. ``MarketMatcher`` is the seam for swapping the
lexical default for something smarter without touching arbitrage math.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import FrozenSet

from db.models import CanonicalMarket

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@lru_cache(maxsize=16384)
def tokenize(text: str) -> FrozenSet[str]:
    return frozenset(_TOKEN_RE.findall((text or "").lower()))


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class MarketMatcher(ABC):
    threshold: float = 0.7

    @abstractmethod
    def similarity(self, a: CanonicalMarket, b: CanonicalMarket) -> float:
        """Score in [0, 1] that two markets describe the same event."""

    def is_match(self, score: float) -> bool:
        return score >= self.threshold


class JaccardMatcher(MarketMatcher):
    """Token-set Jaccard similarity over question text."""

    def __init__(self, threshold: float = 0.7) -> None:
        self.threshold = threshold

    def similarity(self, a: CanonicalMarket, b: CanonicalMarket) -> float:
        return jaccard(tokenize(a.question), tokenize(b.question))
