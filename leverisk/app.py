"""
Application entry point.

This module defines the command-line interface of the risk engine.  It
loads the configuration, opens the JSON state stores and dispatches to
the sizing, exposure, scenario, advisor, recovery, trade-history and
live-trading operations.  `run` starts the background monitoring
service until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
from typing import List, Optional

from .config.schema import Config, load_config
from .data.market_data import MarketDataClient
from .execution.engine import MonitoringEngine
from .execution.errors import ExchangeError, ExchangeRejectedError, LeveriskError
from .execution.gateway import OrderGateway
from .execution.models import DIRECTIONS, TRADE_OUTCOMES
from .reporting.performance import calculate_performance
from .reporting.report import generate_exposure_report, generate_scenario_report
from .reporting.scenario import SCENARIO_PRESETS, get_preset
from .risk.levels import plan_position
from .risk.sizing import size_position
from .strategy.sentiment import analyze_sentiment
from .strategy.trend import predict_trend
from .utils.notifications import Notifier
from .utils.persistence import StateRepository

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _engine(config: Config) -> MonitoringEngine:
    repo = StateRepository.at(config.storage.state_dir)
    return MonitoringEngine(config, repo, Notifier())


def _cmd_size(config: Config, args: argparse.Namespace) -> None:
    result = size_position(
        args.capital, args.risk, args.entry, args.stop, args.leverage,
        target_price=args.target, reward_to_risk=config.risk.reward_to_risk,
    )
    print(f"Position size:   {result.position_size:,.2f}")
    print(f"Contracts:       {result.contracts:,.6f}")
    print(f"Margin required: {result.margin_required:,.2f}")
    print(f"Risk amount:     {result.risk_amount:,.2f}")
    print(f"Reward amount:   {result.reward_amount:,.2f}")
    print(f"Risk/reward:     1:{result.risk_reward_ratio:.2f}")


async def _cmd_open(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        try:
            candles = await engine.market.fetch_klines(
                args.symbol.upper(), config.advisor.kline_interval, config.advisor.kline_limit,
            )
        except ExchangeError as exc:
            logger.warning("Price history unavailable, using the default volatility estimate: %s", exc)
            candles = []
        position = plan_position(args.symbol, args.direction, args.entry, args.investment,
                                 args.leverage, candles, config.risk)
        for tp in position.take_profits:
            print(f"TP{tp.level}: {tp.price:.6g} (+{tp.profit_usd:,.2f} USD, {tp.profit_percent:.1f}%)")
        print(f"SL:  {position.stop_loss.price:.6g} ({position.stop_loss.rationale})")
        engine.create_position(position)
        await engine.wait_pending()
        print(f"Saved position {position.id}")
    finally:
        await engine.market.close()


async def _cmd_exposure(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        await engine.refresh_prices()
        await engine.refresh_brackets()
    finally:
        await engine.market.close()
    exposure = engine.exposure()
    print(f"Capital deployed: {exposure.total_capital_deployed:,.2f}")
    print(f"Total exposure:   {exposure.total_exposure:,.2f}")
    print(f"Avg leverage:     {exposure.weighted_average_leverage:.2f}x")
    if exposure.unrealized_pnl is not None:
        print(f"Unrealized P&L:   {exposure.unrealized_pnl:,.2f}")
    for asset in exposure.by_asset:
        print(f"  {asset.symbol:<14} {asset.capital_deployed:>12,.2f} {asset.percentage:6.1f}%")
    for metric in exposure.live_risk:
        print(f"  {metric.symbol:<14} liq {metric.liquidation_price:.6g} [{metric.band}]")
    for risk in exposure.correlation_risks:
        print(f"  correlation ({risk.risk_level}): {risk.description}")
    if exposure.warnings.any:
        logger.warning("Portfolio warnings: %s", exposure.warnings)
    if args.report:
        generate_exposure_report(exposure, config.service.results_dir)
        logger.info("Exposure report written to %s", config.service.results_dir)


async def _cmd_scenario(config: Config, args: argparse.Namespace) -> None:
    shock = get_preset(args.preset).shock_pct if args.preset else args.shock
    if shock is None:
        raise LeveriskError("Give a shock percentage or --preset (%s)" % ", ".join(p.name for p in SCENARIO_PRESETS))
    engine = _engine(config)
    try:
        await engine.refresh_prices()
    finally:
        await engine.market.close()
    result = engine.scenario(shock)
    for o in result.outcomes:
        flags = [name for name, on in (('TP', o.tp_hit), ('SL', o.sl_hit), ('LIQ', o.liquidation_risk)) if on]
        print(f"{o.symbol:<14} {o.simulated_price:>14.6g} {o.projected_pnl:>12,.2f} {' '.join(flags)}")
    print(f"Total impact: {result.total_impact_usd:,.2f} USD ({result.total_impact_pct:.2f}%)")
    if args.report:
        generate_scenario_report(result, config.service.results_dir)


async def _cmd_advise(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        await engine.refresh_prices()
        await engine.run_advisor()
    finally:
        await engine.market.close()
    if not engine.suggestions:
        print("No adjustments suggested")
    for s in engine.suggestions.values():
        print(f"{s.id}  {s.kind}: {s.current_level:.6g} -> {s.proposed_level:.6g} "
              f"({s.confidence}%)\n    {s.rationale}")


async def _cmd_resolve(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        await engine.refresh_prices()
        await engine.run_advisor()
        suggestion = engine.find_suggestion(args.suggestion_id)
        if args.command == 'accept':
            position, _ = engine.accept_suggestion(suggestion)
            await engine.wait_pending()
            print(f"Updated position {position.id}")
        else:
            engine.dismiss_suggestion(suggestion)
            print(f"Dismissed {suggestion.id}")
    finally:
        await engine.market.close()


async def _cmd_sync(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    context = engine.repo.settings.load().live_context()
    if context.credentials is None:
        raise LeveriskError("No API credentials configured")
    try:
        await engine.refresh_prices()
        result = await engine.reconciler.tick(context)
    finally:
        await engine.market.close()
    if result is None:
        print("Reconciliation failed, see log")
        return
    print(f"Imported {len(result.imported)}, removed {len(result.removed)}")


async def _validate_credentials(config: Config, engine: MonitoringEngine) -> bool:
    """Check the stored credentials with a signed balance query.

    Returns ``False`` only when the exchange rejects them as unauthorised.
    """
    credentials = engine.repo.settings.load().credentials
    try:
        async with OrderGateway(credentials, config.exchange) as gateway:
            balance = await gateway.account_balance()
    except ExchangeRejectedError as exc:
        if exc.is_auth_failure:
            engine.notifier.error(f"API credentials rejected by the exchange: {exc.message}")
            return False
        engine.notifier.warning(f"Could not verify API credentials ({exc.message}); enabling anyway")
        return True
    except ExchangeError as exc:
        engine.notifier.warning(f"Could not verify API credentials ({exc}); enabling anyway")
        return True
    engine.notifier.success(f"API credentials verified, available balance {balance:,.2f} USDT")
    return True


async def _cmd_live(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    settings = engine.repo.settings
    if args.state == 'off':
        settings.set_live_trading(False)
        print("Live trading disabled")
        return
    engine.repo.settings.seed_from_env()
    if settings.load().credentials is None:
        raise LeveriskError("Set API credentials before enabling live trading")
    if await _validate_credentials(config, engine):
        settings.set_live_trading(True)
        print("Live trading enabled")


def _cmd_credentials(config: Config, args: argparse.Namespace) -> None:
    settings = StateRepository.at(config.storage.state_dir).settings
    if args.action == 'clear':
        settings.clear_credentials()
        settings.set_live_trading(False)
        print("Credentials removed, live trading disabled")
        return
    api_key = args.key or getpass.getpass("API key: ")
    api_secret = getpass.getpass("API secret: ")
    if not api_key.strip() or not api_secret.strip():
        raise LeveriskError("API key and secret must not be empty")
    settings.set_credentials(api_key, api_secret)
    print("Credentials saved")


def _cmd_capital(config: Config, args: argparse.Namespace) -> None:
    if args.amount < 0:
        raise LeveriskError("Total capital must not be negative")
    StateRepository.at(config.storage.state_dir).settings.set_total_capital(args.amount)
    print(f"Total capital set to {args.amount:,.2f}")


async def _cmd_trend(config: Config, args: argparse.Namespace) -> None:
    async with MarketDataClient(config.exchange) as market:
        hourly = await market.fetch_klines(args.symbol.upper(), '1h', 100)
        daily = await market.fetch_klines(args.symbol.upper(), '1d', 30)
    for prediction in predict_trend(hourly, daily):
        print(f"{prediction.horizon:<12} {prediction.direction:<9} {prediction.confidence}% ({prediction.label})")


async def _cmd_remove(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        if args.exit_price is None:
            await engine.refresh_prices()
    finally:
        await engine.market.close()
    record = engine.close_position(args.position_id, args.exit_price, args.outcome)
    if record is None:
        print(f"Removed {args.position_id} (no exit price, trade not recorded)")
    else:
        print(f"Removed {record.symbol}: {record.outcome}, {record.pnl_usd:+,.2f} USD ({record.pnl_percent:+.1f}%)")


def _cmd_performance(config: Config, args: argparse.Namespace) -> None:
    trades = StateRepository.at(config.storage.state_dir).trades.load()
    for t in trades[-args.last:]:
        print(f"{t.timestamp:%Y-%m-%d %H:%M} {t.symbol:<14} {t.direction:<5} "
              f"{t.entry_price:>12.6g} -> {t.exit_price:<12.6g} {t.pnl_usd:>+12,.2f}  {t.outcome}")
    stats = calculate_performance(trades)
    print(f"Trades: {stats.total_trades}  wins: {stats.wins}  win rate: {stats.win_rate:.1f}%  "
          f"P&L: {stats.total_pnl_usd:+,.2f} USD")


async def _cmd_sentiment(config: Config, args: argparse.Namespace) -> None:
    async with MarketDataClient(config.exchange) as market:
        candles = await market.fetch_klines(args.symbol.upper(), config.advisor.kline_interval,
                                            config.advisor.kline_limit)
    reading = analyze_sentiment(candles)
    print(f"{args.symbol.upper()}: {reading.sentiment} ({reading.strength}%)")
    for factor in reading.factors:
        print(f"  {factor.indicator:<13} {factor.value:<24} {factor.impact}")


async def _cmd_recover(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    try:
        await engine.refresh_prices()
        options = await engine.recovery_plan(args.position_id)
    finally:
        await engine.market.close()
    if not options:
        print("Position is not at a loss")
    for option in options:
        print(f"[{option.risk}] {option.kind}: {option.description} (~{option.recovery_pct:.0f}% recovery)")
        for key, value in option.details.items():
            print(f"    {key}: {value:,.6g}" if isinstance(value, float) else f"    {key}: {value}")


async def _cmd_run(config: Config, args: argparse.Namespace) -> None:
    engine = _engine(config)
    await engine.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await engine.stop()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Leveraged futures risk engine")
    parser.add_argument('--config', default='config.yaml', help="Path to configuration YAML file")
    parser.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('size', help="Risk-based position size")
    p.add_argument('--capital', type=float, required=True)
    p.add_argument('--risk', type=float, required=True, help="Percent of capital risked")
    p.add_argument('--entry', type=float, required=True)
    p.add_argument('--stop', type=float, required=True)
    p.add_argument('--leverage', type=int, default=1)
    p.add_argument('--target', type=float)

    p = sub.add_parser('open', help="Plan and save a new position")
    p.add_argument('symbol')
    p.add_argument('direction', choices=DIRECTIONS)
    p.add_argument('entry', type=float)
    p.add_argument('investment', type=float)
    p.add_argument('leverage', type=int)

    p = sub.add_parser('exposure', help="Portfolio exposure")
    p.add_argument('--report', action='store_true', help="Write CSV/JSON/PNG artefacts")

    p = sub.add_parser('scenario', help="Uniform price shock simulation")
    p.add_argument('shock', type=float, nargs='?', help="Shock in percent, -50..50")
    p.add_argument('--preset', choices=[pr.name for pr in SCENARIO_PRESETS])
    p.add_argument('--report', action='store_true')

    sub.add_parser('advise', help="Current adjustment suggestions")
    for name in ('accept', 'dismiss'):
        p = sub.add_parser(name, help=f"{name.capitalize()} a suggestion")
        p.add_argument('suggestion_id')

    sub.add_parser('sync', help="Reconcile with exchange positions once")

    p = sub.add_parser('live', help="Toggle live trading")
    p.add_argument('state', choices=['on', 'off'])

    p = sub.add_parser('credentials', help="Manage API credentials")
    p.add_argument('action', choices=['set', 'clear'])
    p.add_argument('--key', help="API key (prompted when omitted); the secret is always prompted")

    p = sub.add_parser('capital', help="Set total account capital")
    p.add_argument('amount', type=float)

    p = sub.add_parser('trend', help="Short and medium-term trend score")
    p.add_argument('symbol')

    p = sub.add_parser('remove', help="Stop tracking a position and record the trade")
    p.add_argument('position_id')
    p.add_argument('--exit-price', type=float, help="Defaults to the current ticker price")
    p.add_argument('--outcome', choices=TRADE_OUTCOMES, help="Inferred from the exit price when omitted")

    p = sub.add_parser('performance', help="Closed trades and win rate")
    p.add_argument('--last', type=int, default=20, help="Number of trades to list")

    p = sub.add_parser('sentiment', help="Indicator-based market sentiment")
    p.add_argument('symbol')

    p = sub.add_parser('recover', help="Recovery options for a losing position")
    p.add_argument('position_id')

    sub.add_parser('run', help="Start background monitoring")
    return parser


_SYNC_COMMANDS = {
    'size': _cmd_size,
    'credentials': _cmd_credentials,
    'capital': _cmd_capital,
    'performance': _cmd_performance,
}

_ASYNC_COMMANDS = {
    'open': _cmd_open,
    'exposure': _cmd_exposure,
    'scenario': _cmd_scenario,
    'advise': _cmd_advise,
    'accept': _cmd_resolve,
    'dismiss': _cmd_resolve,
    'sync': _cmd_sync,
    'live': _cmd_live,
    'trend': _cmd_trend,
    'remove': _cmd_remove,
    'sentiment': _cmd_sentiment,
    'recover': _cmd_recover,
    'run': _cmd_run,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse command-line arguments and dispatch to the requested command."""
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        if args.command in _SYNC_COMMANDS:
            _SYNC_COMMANDS[args.command](config, args)
        else:
            asyncio.run(_ASYNC_COMMANDS[args.command](config, args))
    except LeveriskError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
