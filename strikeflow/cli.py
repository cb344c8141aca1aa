"""
Strikeflow CLI

Command-line interface for offline runs against a strikeflow store.

Usage:
    python -m strikeflow.cli process signals.json --context context.json --db trades.db
    python -m strikeflow.cli monitor --db trades.db --price SPY=3.10
    python -m strikeflow.cli analytics --db trades.db
    python -m strikeflow.cli failures --db trades.db --stage VALIDATION
    python -m strikeflow.cli config --env production
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from strikeflow.analytics.performance import performance_summary
from strikeflow.config import load_config
from strikeflow.errors import ConfigValidationError, StoreUnavailableError
from strikeflow.market_data.schemas import MarketContext, Regime, Trend
from strikeflow.runtime import TradingRuntime, build_runtime
from strikeflow.signals.schemas import PipelineStage

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
LOG = logging.getLogger(__name__)


def _load_json(path: str):
    with open(path, 'r') as f:
        return json.load(f)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def _parse_price(text: str):
    symbol, _, price = text.partition('=')
    if not symbol or not price:
        raise argparse.ArgumentTypeError(f"expected SYMBOL=PRICE, got {text!r}")
    try:
        return symbol.strip().upper(), float(price)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid price in {text!r}")


def _build(args) -> TradingRuntime:
    config = load_config(args.env)
    if args.db:
        config.db_path = args.db
    runtime = build_runtime(config)

    context_path = getattr(args, 'context', None)
    if context_path:
        data = _load_json(context_path)
        runtime.market_data.update_context(MarketContext(
            vix=float(data['vix']),
            trend=Trend(str(data.get('trend', 'NEUTRAL')).upper()),
            regime=Regime(str(data.get('regime', 'NORMAL')).upper()),
            bias=float(data.get('bias', 0.0)),
        ))
    for symbol, price in getattr(args, 'price', None) or []:
        runtime.market_data.update_price(symbol, price)
    return runtime


def cmd_process(args) -> int:
    payload = _load_json(args.input)
    raws = payload if isinstance(payload, list) else [payload]

    runtime = _build(args)
    try:
        results = runtime.pipeline.process_signal_batch(raws, max_workers=args.workers)
    finally:
        runtime.shutdown()

    _print([r.to_dict() for r in results])
    succeeded = sum(1 for r in results if r.success)
    LOG.info(f"Processed {len(results)} signals: {succeeded} succeeded, {len(results) - succeeded} failed")
    return 0 if succeeded == len(results) else 1


def cmd_monitor(args) -> int:
    runtime = _build(args)
    try:
        if args.dry_run:
            _print([a.to_dict() for a in runtime.exit_monitor.scan()])
        else:
            _print(runtime.exit_monitor.run_once().to_dict())
    finally:
        runtime.shutdown()
    return 0


def cmd_analytics(args) -> int:
    runtime = _build(args)
    try:
        _print(performance_summary(runtime.store.get_positions()).to_dict())
    finally:
        runtime.shutdown()
    return 0


def cmd_failures(args) -> int:
    runtime = _build(args)
    try:
        stage = PipelineStage(args.stage) if args.stage else None
        failures = runtime.pipeline.get_failures(args.tracking_id, stage, args.since_hours)
        _print([f.to_dict() for f in failures])
    finally:
        runtime.shutdown()
    return 0


def cmd_config(args) -> int:
    config = load_config(args.env)
    _print(config.to_dict())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Strikeflow signal pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env", choices=["development", "staging", "production"],
                        help="Configuration profile (default: STRIKEFLOW_ENV or development)")
    parser.add_argument("--db", type=str, help="SQLite store path (default: in-memory)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Run signals from a JSON file through the pipeline")
    process.add_argument("input", type=str, help="JSON file with one signal object or a list")
    process.add_argument("--context", type=str, help="JSON file with market context (vix, trend, regime, bias)")
    process.add_argument("--price", type=_parse_price, action="append", help="SYMBOL=PRICE (repeatable)")
    process.add_argument("--workers", type=int, default=1, help="Parallel workers (default: 1)")
    process.set_defaults(func=cmd_process)

    monitor = subparsers.add_parser("monitor", help="Run one exit monitor pass over open positions")
    monitor.add_argument("--context", type=str, help="JSON file with market context")
    monitor.add_argument("--price", type=_parse_price, action="append", help="SYMBOL=PRICE (repeatable)")
    monitor.add_argument("--dry-run", action="store_true", help="Report alerts without closing anything")
    monitor.set_defaults(func=cmd_monitor)

    analytics = subparsers.add_parser("analytics", help="Realized performance summary")
    analytics.set_defaults(func=cmd_analytics)

    failures = subparsers.add_parser("failures", help="List pipeline failure records")
    failures.add_argument("--tracking-id", type=str)
    failures.add_argument("--stage", choices=[s.value for s in PipelineStage])
    failures.add_argument("--since-hours", type=float)
    failures.set_defaults(func=cmd_failures)

    show_config = subparsers.add_parser("config", help="Print the resolved configuration")
    show_config.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if args.command == "process" and not Path(args.input).exists():
        LOG.error(f"Input file not found: {args.input}")
        return 2

    try:
        return args.func(args)
    except ConfigValidationError as e:
        LOG.error(f"Configuration error: {e}")
        return 2
    except StoreUnavailableError as e:
        LOG.error(f"Store unavailable: {e}")
        return 3


if __name__ == "__main__":
    sys.exit(main())
