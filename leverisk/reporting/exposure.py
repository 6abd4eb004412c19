"""
Portfolio exposure aggregation.

This module folds the open positions into portfolio-level totals:
capital deployed, notional exposure, capital-weighted leverage, asset
concentration, long/short balance and correlation findings.  It is a
pure function of the position set (plus, optionally, live prices and
leverage brackets) and is recomputed whenever either changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..execution.models import LONG, SHORT, LeverageBracket, Position
from ..risk.liquidation import DEFAULT_MAINT_MARGIN_RATIO, LiveRiskMetric, live_risk_metrics

# Instruments that historically move together.  A symbol belongs to at
# most one cluster.
CORRELATED_CLUSTERS: Tuple[Tuple[str, ...], ...] = (
    ('BTCUSDT', 'ETHUSDT', 'BNBUSDT'),
    ('SOLUSDT', 'AVAXUSDT', 'ADAUSDT', 'DOTUSDT', 'NEARUSDT'),
    ('DOGEUSDT', '1000SHIBUSDT', '1000PEPEUSDT'),
    ('USDCUSDT', 'BUSDUSDT', 'TUSDUSDT', 'FDUSDUSDT'),
)

OVER_LEVERAGE_MULTIPLE = 5.0
IMBALANCE_SHARE = 0.7


@dataclass
class AssetExposure:
    symbol: str
    capital_deployed: float
    percentage: float


@dataclass
class LongShortBalance:
    long_count: int = 0
    short_count: int = 0
    long_capital: float = 0.0
    short_capital: float = 0.0


@dataclass
class CorrelationRisk:
    """Two or more open positions inside one correlated cluster."""
    symbols: List[str]
    combined_exposure: float
    risk_level: str  # 'low', 'medium' or 'high'
    description: str


@dataclass
class WarningFlags:
    over_leverage: bool = False
    high_correlation: bool = False
    imbalanced: bool = False

    @property
    def any(self) -> bool:
        return self.over_leverage or self.high_correlation or self.imbalanced


@dataclass
class PortfolioExposure:
    """Portfolio-level view derived from the open positions."""
    total_capital_deployed: float = 0.0
    total_exposure: float = 0.0
    weighted_average_leverage: float = 0.0
    potential_profit: float = 0.0
    potential_loss: float = 0.0
    by_asset: List[AssetExposure] = field(default_factory=list)
    long_short: LongShortBalance = field(default_factory=LongShortBalance)
    correlation_risks: List[CorrelationRisk] = field(default_factory=list)
    warnings: WarningFlags = field(default_factory=WarningFlags)
    capital_utilization_pct: Optional[float] = None
    live_exposure: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    live_risk: List[LiveRiskMetric] = field(default_factory=list)


def detect_correlation_risks(positions: Sequence[Position]) -> List[CorrelationRisk]:
    """Classify every correlated cluster holding at least two positions.

    Three or more same-direction positions are high risk, two are medium,
    and mixed directions are low risk.
    """
    risks: List[CorrelationRisk] = []
    for cluster in CORRELATED_CLUSTERS:
        matching = [p for p in positions if p.symbol in cluster]
        if len(matching) < 2:
            continue
        combined = sum(p.total_exposure for p in matching)
        same_direction = all(p.direction == matching[0].direction for p in matching)
        if same_direction and len(matching) >= 3:
            level = 'high'
        elif same_direction:
            level = 'medium'
        else:
            level = 'low'
        if same_direction:
            description = (
                f"{len(matching)} correlated {matching[0].direction} positions "
                f"with ${combined:,.0f} exposure"
            )
        else:
            description = f"{len(matching)} correlated positions with mixed directions"
        risks.append(CorrelationRisk(
            symbols=[p.symbol for p in matching],
            combined_exposure=combined,
            risk_level=level,
            description=description,
        ))
    return risks


def calculate_exposure(
    positions: Sequence[Position],
    prices: Optional[Mapping[str, float]] = None,
    brackets: Optional[Mapping[str, List[LeverageBracket]]] = None,
    total_capital: Optional[float] = None,
    default_mmr: float = DEFAULT_MAINT_MARGIN_RATIO,
) -> PortfolioExposure:
    """Aggregate a position set into a `PortfolioExposure`.

    Parameters
    ----------
    positions : sequence of Position
        Open positions.  An empty set yields all-zero totals and no flags.
    prices : mapping, optional
        Live prices by symbol.  When given, live exposure, unrealized P&L
        and per-position liquidation metrics are filled in.
    brackets : mapping, optional
        Leverage brackets by symbol for the maintenance margin lookup.
    total_capital : float, optional
        Account capital; enables `capital_utilization_pct`.
    """
    if not positions:
        return PortfolioExposure(capital_utilization_pct=0.0 if total_capital else None)

    deployed = sum(p.investment_amount for p in positions)
    notional = sum(p.total_exposure for p in positions)
    weighted_leverage = sum(p.leverage * p.investment_amount for p in positions) / deployed

    potential_profit = sum(p.take_profits[0].profit_usd for p in positions if p.take_profits)
    potential_loss = sum(abs(p.stop_loss.loss_usd) for p in positions)

    by_symbol: Dict[str, float] = {}
    for p in positions:
        by_symbol[p.symbol] = by_symbol.get(p.symbol, 0.0) + p.investment_amount
    by_asset = sorted(
        (AssetExposure(symbol=s, capital_deployed=c, percentage=c / deployed * 100) for s, c in by_symbol.items()),
        key=lambda a: a.percentage,
        reverse=True,
    )

    longs = [p for p in positions if p.direction == LONG]
    shorts = [p for p in positions if p.direction == SHORT]
    balance = LongShortBalance(
        long_count=len(longs),
        short_count=len(shorts),
        long_capital=sum(p.investment_amount for p in longs),
        short_capital=sum(p.investment_amount for p in shorts),
    )

    risks = detect_correlation_risks(positions)
    warnings = WarningFlags(
        over_leverage=notional > deployed * OVER_LEVERAGE_MULTIPLE,
        high_correlation=any(r.risk_level == 'high' for r in risks),
        imbalanced=abs(balance.long_capital - balance.short_capital) > deployed * IMBALANCE_SHARE,
    )

    exposure = PortfolioExposure(
        total_capital_deployed=deployed,
        total_exposure=notional,
        weighted_average_leverage=weighted_leverage,
        potential_profit=potential_profit,
        potential_loss=potential_loss,
        by_asset=by_asset,
        long_short=balance,
        correlation_risks=risks,
        warnings=warnings,
    )
    if total_capital:
        exposure.capital_utilization_pct = deployed / total_capital * 100
    if prices is not None:
        exposure.live_risk = live_risk_metrics(positions, prices, brackets, default_mmr)
        priced = [m for m in exposure.live_risk if m.live_price is not None]
        exposure.live_exposure = sum(m.live_exposure for m in priced)
        exposure.unrealized_pnl = sum(m.unrealized_pnl for m in priced)
    return exposure
