"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with defaults for any missing fields.

Exchange credentials are deliberately absent from this schema: they
live in the persisted settings store (see `utils.persistence`) so that
they can be changed at runtime without editing the YAML file.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, asdict
from typing import List, Dict, Any, Optional
import os
import yaml

from ..execution.errors import InputValidationError


@dataclass
class RiskConfig:
    """Parameters for stop-loss, take-profit and sizing calculations.

    Attributes
    ----------
    atr_period : int
        Lookback (in samples) of the Average True Range.
    sr_lookback : int
        Number of trailing samples used for the support/resistance pair.
    default_atr_pct : float
        Fallback ATR, as a fraction of the last price, when the series is
        too short for a real ATR.
    min_capital_risk_pct, max_capital_risk_pct : float
        Band that the stop-loss capital risk (percent of margin) is clamped
        into.
    tp_atr_multiples : list of float
        ATR multiples of the three take-profit levels at 1x leverage.
    default_maint_margin_ratio : float
        Maintenance margin ratio used when the leverage bracket schedule is
        unavailable.
    reward_to_risk : float
        Reward distance assumed by the position sizer when no target is given.
    max_leverage : int
        Highest leverage accepted for a position.
    """

    atr_period: int = 14
    sr_lookback: int = 50
    default_atr_pct: float = 0.005
    min_capital_risk_pct: float = 0.5
    max_capital_risk_pct: float = 2.0
    tp_atr_multiples: List[float] = field(default_factory=lambda: [1.5, 3.0, 5.0])
    default_maint_margin_ratio: float = 0.004
    reward_to_risk: float = 2.0
    max_leverage: int = 125


@dataclass
class AdvisorConfig:
    """Thresholds of the adjustment advisor rules (percent values)."""

    volatility_threshold_pct: float = 3.0
    widen_factor: float = 1.3
    min_change_pct: float = 5.0
    proximity_pct: float = 2.0
    tp_proximity_pct: float = 5.0
    tp_bank_pct: float = 2.0
    momentum_lookback: int = 24
    momentum_pct: float = 5.0
    min_pnl_pct: float = 10.0
    trail_atr_multiple: float = 2.0
    kline_interval: str = "1h"
    kline_limit: int = 100


@dataclass
class ExchangeConfig:
    """Connection settings for the exchange REST API.

    Attributes
    ----------
    base_url : str
        Root URL of the USD-M futures API.
    order_timeout : float
        Deadline in seconds for order placement calls.
    query_timeout : float
        Deadline in seconds for read and cancel calls.
    recv_window : int
        Milliseconds the exchange accepts a signed request after its
        timestamp.
    """

    base_url: str = "https://fapi.binance.com"
    order_timeout: float = 15.0
    query_timeout: float = 10.0
    recv_window: int = 5000


@dataclass
class ServiceConfig:
    """Intervals (seconds) of the background monitoring service."""

    price_refresh_interval: float = 5.0
    price_max_age: float = 30.0
    advisor_interval: float = 30.0
    reconcile_interval: float = 60.0
    results_dir: str = "results"


@dataclass
class StorageConfig:
    """Location of the persisted JSON state."""

    state_dir: str = "state"


@dataclass
class Config:
    """Root configuration for the risk engine."""

    risk: RiskConfig = field(default_factory=RiskConfig)
    advisor: AdvisorConfig = field(default_factory=AdvisorConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _build(cls, values: Dict[str, Any]):
    """Instantiate a section dataclass, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in known})


def load_config(path: Optional[str] = None) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str, optional
        Path to the YAML file.  When omitted, or when the file does not
        exist, the defaults are returned.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        the defaults defined in the dataclasses.

    Raises
    ------
    InputValidationError
        If the capital-risk band is empty or inverted.
    """
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}

    merged = _merge_dict(asdict(Config()), raw)

    risk_cfg = _build(RiskConfig, merged['risk'])
    risk_cfg.tp_atr_multiples = [float(m) for m in risk_cfg.tp_atr_multiples]
    if not risk_cfg.min_capital_risk_pct < risk_cfg.max_capital_risk_pct:
        raise InputValidationError("risk.min_capital_risk_pct must be below risk.max_capital_risk_pct")

    return Config(
        risk=risk_cfg,
        advisor=_build(AdvisorConfig, merged['advisor']),
        exchange=_build(ExchangeConfig, merged['exchange']),
        service=_build(ServiceConfig, merged['service']),
        storage=_build(StorageConfig, merged['storage']),
    )
