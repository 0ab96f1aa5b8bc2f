"""Cross-Provider Arbitrage Agent.

Compares every active market on one provider with every active market on
each other provider. Pairs whose questions match (JaccardMatcher by
default) and whose YES prices differ by at least the minimum spread are
priced as two hedged strategies:

  buy YES on A + NO on B     cost = yesA + noB
  buy YES on B + NO on A     cost = yesB + noA

A combined cost under 10000 bps pays 10000 whichever way the event
resolves. The cheaper pairing is reported. Opportunities live in memory
only and carry a short expiry; stale ones must be re-detected.

Operator-rejected pairs (rejected_matches) are never reported again.

Schedule: every 5 minutes, after a sync.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .base import AgentResult, AgentStatus, BaseAgent
from db.market_math import BPS_SCALE, complementary_costs, profit_percent, spread_bps
from db.models import ArbitrageLeg, ArbitrageOpportunity, CanonicalMarket
from db.queries import MarketQueries
from utils.matching import JaccardMatcher, MarketMatcher

logger = logging.getLogger(__name__)

_DEFAULT_MIN_SPREAD_BPS = 500
_DEFAULT_TTL = timedelta(minutes=5)


def _leg(market: CanonicalMarket) -> ArbitrageLeg:
    return ArbitrageLeg(
        provider=market.provider,
        market_id=market.id,
        native_id=market.native_id,
        question=market.question,
        yes_price_bps=market.yes_price_bps,
        no_price_bps=market.no_price_bps,
    )


def price_pair(a: CanonicalMarket, b: CanonicalMarket, confidence: float,
               min_spread_bps: int, now: datetime,
               ttl: timedelta = _DEFAULT_TTL) -> Optional[ArbitrageOpportunity]:
    """Evaluate one matched pair. None if there is no guaranteed profit."""
    spread = spread_bps(a.yes_price_bps, b.yes_price_bps)
    if spread < min_spread_bps:
        return None
    cost_ab, cost_ba = complementary_costs(
        a.yes_price_bps, a.no_price_bps, b.yes_price_bps, b.no_price_bps,
    )
    if cost_ab <= cost_ba:
        cost, strategy = cost_ab, "yes_a_no_b"
    else:
        cost, strategy = cost_ba, "yes_b_no_a"
    if cost >= BPS_SCALE:
        return None
    return ArbitrageOpportunity(
        market_a=_leg(a),
        market_b=_leg(b),
        spread_bps=spread,
        cost_bps=cost,
        profit_bps=BPS_SCALE - cost,
        potential_profit=profit_percent(cost),
        strategy=strategy,
        confidence=round(confidence, 4),
        detected_at=now,
        expires_at=now + ttl,
    )


class ArbitrageAgent(BaseAgent):
    def __init__(self, config: Any = None,
                 matcher: Optional[MarketMatcher] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        super().__init__(name="arbitrage", config=config)
        arb = getattr(config, "arbitrage", None)
        self.min_spread_bps = arb.min_spread_bps if arb else _DEFAULT_MIN_SPREAD_BPS
        self.ttl = timedelta(minutes=arb.ttl_minutes) if arb else _DEFAULT_TTL
        self.matcher = matcher or JaccardMatcher(arb.similarity_threshold if arb else 0.7)
        self._clock = clock
        self._latest: List[ArbitrageOpportunity] = []

    def current_opportunities(self, now: Optional[datetime] = None) -> List[ArbitrageOpportunity]:
        """Opportunities from the last scan that have not expired yet."""
        now = now or self._clock()
        return [o for o in self._latest if not o.is_expired(now)]

    def find_opportunities(self, queries: MarketQueries,
                           min_spread_bps: Optional[int] = None) -> List[ArbitrageOpportunity]:
        """All current cross-provider opportunities, best profit first."""
        if min_spread_bps is None:
            min_spread_bps = self.min_spread_bps
        by_provider = queries.get_active_markets_by_provider()
        rejected = queries.get_rejected_pairs()
        now = self._clock()

        opportunities: List[ArbitrageOpportunity] = []
        for provider_a, provider_b in combinations(sorted(by_provider), 2):
            for a in by_provider[provider_a]:
                for b in by_provider[provider_b]:
                    if _pair_key(a, b) in rejected:
                        continue
                    score = self.matcher.similarity(a, b)
                    if not self.matcher.is_match(score):
                        continue
                    opp = price_pair(a, b, score, min_spread_bps, now, self.ttl)
                    if opp:
                        opportunities.append(opp)

        opportunities.sort(key=lambda o: o.potential_profit, reverse=True)
        return opportunities

    def reject_match(self, queries: MarketQueries, market_a_id: int,
                     market_b_id: int, reason: str = "") -> None:
        """Record an operator-confirmed false match so it is skipped from now on."""
        queries.insert_rejected_match(market_a_id, market_b_id, reason)
        logger.info("Rejected match %d <-> %d: %s", market_a_id, market_b_id, reason)

    def execute(self, context: Dict[str, Any]) -> AgentResult:
        queries = context["queries"]
        opportunities = self.find_opportunities(queries)
        self._latest = opportunities

        best = opportunities[0].potential_profit if opportunities else 0.0
        if opportunities:
            logger.info(
                "Found %d arbitrage opportunities, best %.2f%%", len(opportunities), best,
            )
        return AgentResult(
            agent_name=self.name,
            status=AgentStatus.SUCCESS,
            items_processed=len(opportunities),
            summary=f"Found {len(opportunities)} arbitrage opportunities.",
            data={
                "opportunities": len(opportunities),
                "best_profit": best,
                "top": [
                    {
                        "a": f"{o.market_a.provider}:{o.market_a.native_id}",
                        "b": f"{o.market_b.provider}:{o.market_b.native_id}",
                        "profit": o.potential_profit,
                        "strategy": o.strategy,
                    }
                    for o in opportunities[:5]
                ],
            },
        )


def _pair_key(a: CanonicalMarket, b: CanonicalMarket) -> Tuple[int, int]:
    low, high = sorted((a.id or 0, b.id or 0))
    return low, high
