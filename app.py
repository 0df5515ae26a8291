"""
UPH Rate Engine - Command Line Entry Point

Recalculates and queries units-per-hour rates per operator, work center
and routing:
- recalculate: full recalculation into the rate cache
- lookup / estimate / detail: read rates and the order rates behind them
- trigger / schedule: incremental recalculation (once or recurring)
- anomalies / suspects: data quality reports
- init-db: create the rate cache tables
"""

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

import pandas as pd

from config import Config
from utils.config import load_config, validate_config
from utils.formatting import (
    format_hours,
    format_rate,
    format_timestamp,
    observations_to_dataframe,
    rates_to_dataframe,
)
from core.analysis.uph import UphService
from core.calculations.pipeline import CalculationSettings, UphPipeline
from core.db.rate_store import PostgresRateStore
from core.db.sources import PostgresEventSource
from core.scheduling.guard import CalculationBusyError, RunGuard
from core.scheduling.incremental import IncrementalCalculator, STATUS_FAILED
from core.scheduling.scheduler import UphScheduler

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Wired engine objects sharing one store and one run guard"""
    service: UphService
    scheduler: UphScheduler
    store: object


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_components(config=Config) -> Components:
    """
    Wire the PostgreSQL-backed service and scheduler.

    Raises:
        ValueError: If database configuration is missing or invalid
    """
    config.validate()

    settings = CalculationSettings.from_config(config)
    pipeline = UphPipeline(settings)
    source = PostgresEventSource()
    store = PostgresRateStore()
    guard = RunGuard(timeout_seconds=config.PASS_TIMEOUT_SECONDS)

    service = UphService(
        source, store, pipeline, guard=guard,
        default_window_days=config.DEFAULT_WINDOW_DAYS,
    )
    calculator = IncrementalCalculator(
        source, store, pipeline,
        batch_size=config.BATCH_SIZE,
        default_window_days=config.DEFAULT_WINDOW_DAYS,
    )
    scheduler = UphScheduler(calculator, guard=guard, interval_hours=config.SCHEDULER_INTERVAL_HOURS)
    return Components(service=service, scheduler=scheduler, store=store)


def _print_table(df: pd.DataFrame, empty_message: str):
    if df.empty:
        print(empty_message)
    else:
        print(df.to_string(index=False))


def cmd_recalculate(args, components: Components) -> int:
    rates = components.service.recalculate(
        operator_filter=args.operator,
        work_center_filter=args.work_center,
        routing_filter=args.routing,
        window_days=args.window_days,
        bypass_date_filter=args.all_history,
    )
    _print_table(rates_to_dataframe(rates), "No rates calculated")
    print(f"\n{len(rates)} rates stored")
    return 0


def cmd_lookup(args, components: Components) -> int:
    rate = components.service.lookup(args.operator, args.work_center, args.routing)
    if rate is None:
        print(f"UPH: {format_rate(None)}")
        return 1
    print(f"UPH: {format_rate(rate.average_rate, 2)} ({rate.resolution}, "
          f"{rate.observation_count} orders, calculated {format_timestamp(rate.last_calculated)})")
    return 0


def cmd_estimate(args, components: Components) -> int:
    hours = components.service.estimate_hours(args.operator, args.work_center, args.routing, args.quantity)
    print(f"Estimated time for {args.quantity:g} units: {format_hours(hours)}")
    return 0 if hours is not None else 1


def cmd_detail(args, components: Components) -> int:
    observations = components.service.get_observation_detail(
        args.operator, args.work_center, args.routing,
        window_days=args.window_days,
        bypass_date_filter=args.all_history,
    )
    _print_table(observations_to_dataframe(observations), "No order rates found")
    return 0


def cmd_trigger(args, components: Components) -> int:
    result = components.scheduler.trigger_now(force=args.force)
    print(f"Status: {result.status}")
    if result.summary is not None:
        summary = result.summary
        print(f"Batches: {summary.batches}, events: {summary.events_processed}, "
              f"high-water-mark: {summary.start_high_water_mark} -> {summary.high_water_mark}")
        if summary.error:
            print(f"Error: {summary.error}")
    return 1 if result.status == STATUS_FAILED else 0


def cmd_schedule(args, components: Components) -> int:
    scheduler = components.scheduler
    scheduler.start(interval_hours=args.interval_hours, run_immediately=True)
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scheduler")
    finally:
        scheduler.request_cancel()
        scheduler.stop()
    return 0


def cmd_anomalies(args, components: Components) -> int:
    anomalies = components.service.get_anomaly_report(
        window_days=args.window_days,
        bypass_date_filter=args.all_history,
        low_threshold=args.low_threshold,
    )
    df = pd.DataFrame([a.to_dict() for a in anomalies])
    _print_table(df, "No anomalies found")
    return 0


def cmd_suspects(args, components: Components) -> int:
    _print_table(components.service.find_suspect_events(), "No suspect events found")
    return 0


def cmd_init_db(args, components: Components) -> int:
    components.store.ensure_schema()
    print("Rate cache tables ready")
    return 0


def _add_key_arguments(parser: argparse.ArgumentParser, operator_required: bool):
    parser.add_argument("--operator", required=operator_required, help="Operator name")
    parser.add_argument("--work-center", required=True, help="Cutting, Assembly or Packaging")
    parser.add_argument("--routing", required=operator_required, help="Product routing")


def _add_window_arguments(parser: argparse.ArgumentParser):
    parser.add_argument("--window-days", type=int, default=None,
                        help="Look-back window for every operator (default: per-operator setting)")
    parser.add_argument("--all-history", action="store_true", help="Disable date filtering")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Units-per-hour rate engine")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    recalc = subparsers.add_parser("recalculate", help="Full recalculation into the rate cache")
    recalc.add_argument("--operator", default=None, help="Only this operator")
    recalc.add_argument("--work-center", default=None, help="Only this work center")
    recalc.add_argument("--routing", default=None, help="Only this routing")
    _add_window_arguments(recalc)
    recalc.set_defaults(handler=cmd_recalculate)

    lookup = subparsers.add_parser("lookup", help="Look up a rate with fallbacks")
    _add_key_arguments(lookup, operator_required=False)
    lookup.set_defaults(handler=cmd_lookup)

    estimate = subparsers.add_parser("estimate", help="Estimate hours for a quantity")
    _add_key_arguments(estimate, operator_required=False)
    estimate.add_argument("--quantity", type=float, required=True, help="Units to produce")
    estimate.set_defaults(handler=cmd_estimate)

    detail = subparsers.add_parser("detail", help="List the order rates behind a rate")
    _add_key_arguments(detail, operator_required=True)
    _add_window_arguments(detail)
    detail.set_defaults(handler=cmd_detail)

    trigger = subparsers.add_parser("trigger", help="Run an incremental recalculation now")
    trigger.add_argument("--force", action="store_true",
                         help="Clear the cache and reprocess all history")
    trigger.set_defaults(handler=cmd_trigger)

    schedule = subparsers.add_parser("schedule", help="Run incremental recalculation periodically")
    schedule.add_argument("--interval-hours", type=float, default=None,
                          help=f"Hours between runs (default: {Config.SCHEDULER_INTERVAL_HOURS:g})")
    schedule.set_defaults(handler=cmd_schedule)

    anomalies = subparsers.add_parser("anomalies", help="List implausible order rates")
    _add_window_arguments(anomalies)
    anomalies.add_argument("--low-threshold", type=float, default=1.0,
                           help="Rates below this are reported as extreme_low")
    anomalies.set_defaults(handler=cmd_anomalies)

    suspects = subparsers.add_parser("suspects", help="List events that look like import artefacts")
    suspects.set_defaults(handler=cmd_suspects)

    init_db = subparsers.add_parser("init-db", help="Create the rate cache tables")
    init_db.set_defaults(handler=cmd_init_db)

    return parser


def main(argv: Optional[List[str]] = None, components: Optional[Components] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_config()
    configure_logging(args.log_level)

    if components is None:
        config_errors = validate_config()
        if config_errors:
            for error in config_errors:
                logger.error(f"Configuration error: {error}")
            return 2
        components = build_components()

    try:
        return args.handler(args, components)
    except CalculationBusyError as e:
        print(f"Busy: {e}")
        return 3
    except ValueError as e:
        print(f"Error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
