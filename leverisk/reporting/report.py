"""
Report generation utilities.

This module turns exposure and scenario results into files: CSV tables
of per-asset and per-position figures, a JSON summary and a PNG chart
of capital deployed by asset.  The CLI writes them to the results
directory on request.
"""

from __future__ import annotations

from dataclasses import asdict
import os
import json
from typing import Any, Dict
import pandas as pd
import matplotlib

# Use non-interactive backend for environments without display
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from ..risk.liquidation import bracket_summary
from .exposure import PortfolioExposure
from .scenario import ScenarioResult


def exposure_summary(exposure: PortfolioExposure) -> Dict[str, Any]:
    """Portfolio totals and warning flags as a JSON-ready dictionary."""
    return {
        'total_capital_deployed': exposure.total_capital_deployed,
        'total_exposure': exposure.total_exposure,
        'weighted_average_leverage': exposure.weighted_average_leverage,
        'potential_profit': exposure.potential_profit,
        'potential_loss': exposure.potential_loss,
        'capital_utilization_pct': exposure.capital_utilization_pct,
        'live_exposure': exposure.live_exposure,
        'unrealized_pnl': exposure.unrealized_pnl,
        'long_short': asdict(exposure.long_short),
        'warnings': asdict(exposure.warnings),
        'correlation_risks': [asdict(r) for r in exposure.correlation_risks],
        'risk_bands': bracket_summary(exposure.live_risk),
    }


def generate_exposure_report(exposure: PortfolioExposure, out_dir: str = "results") -> None:
    """Write exposure artefacts to `out_dir`.

    - `exposure_by_asset.csv` – capital deployed per symbol
    - `live_risk.csv` – liquidation figures per position
    - `exposure_summary.json` – totals, flags and correlation findings
    - `exposure_by_asset.png` – bar chart of capital per symbol
    """
    os.makedirs(out_dir, exist_ok=True)

    df_assets = pd.DataFrame([asdict(a) for a in exposure.by_asset],
                             columns=['symbol', 'capital_deployed', 'percentage'])
    df_assets.to_csv(os.path.join(out_dir, 'exposure_by_asset.csv'), index=False)

    risk_rows = [dict(asdict(m), band=m.band) for m in exposure.live_risk]
    pd.DataFrame(risk_rows).to_csv(os.path.join(out_dir, 'live_risk.csv'), index=False)

    with open(os.path.join(out_dir, 'exposure_summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(exposure_summary(exposure), fh, indent=2, ensure_ascii=False)

    fig, ax = plt.subplots(figsize=(8, 4))
    if not df_assets.empty:
        ax.bar(df_assets['symbol'], df_assets['capital_deployed'])
        ax.set_title('Capital Deployed by Asset')
        ax.set_xlabel('Symbol')
        ax.set_ylabel('USD')
        fig.autofmt_xdate()
    fig.tight_layout()
    fig.savefig(os.path.join(out_dir, 'exposure_by_asset.png'))
    plt.close(fig)


def generate_scenario_report(result: ScenarioResult, out_dir: str = "results") -> None:
    """Write `scenario_outcomes.csv` and `scenario_summary.json` to `out_dir`."""
    os.makedirs(out_dir, exist_ok=True)
    pd.DataFrame([asdict(o) for o in result.outcomes]).to_csv(
        os.path.join(out_dir, 'scenario_outcomes.csv'), index=False,
    )
    summary = {
        'shock_pct': result.shock_pct,
        'total_impact_usd': result.total_impact_usd,
        'total_impact_pct': result.total_impact_pct,
        'positions': len(result.outcomes),
        'liquidations': [o.symbol for o in result.liquidations],
    }
    with open(os.path.join(out_dir, 'scenario_summary.json'), 'w', encoding='utf-8') as fh:
        json.dump(summary, fh, indent=2, ensure_ascii=False)
