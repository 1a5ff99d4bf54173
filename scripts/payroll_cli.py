#!/usr/bin/env python3
"""
Payroll run command line.

Creates and queues payroll runs, runs the job worker, and reports run
status, totals and payslips.  Settings come from ``payroll_config``
(``--config`` or ``$PAYROLL_CONFIG``, then the packaged defaults, then the
``PAYROLL_DATABASE_URL`` / ``PAYMENT_PROVIDER`` environment overrides).

Usage:
    python3 scripts/payroll_cli.py init-db
    python3 scripts/payroll_cli.py create-run 2025-01
    python3 scripts/payroll_cli.py request 2025-01
    python3 scripts/payroll_cli.py worker --drain
    python3 scripts/payroll_cli.py status 2025-01
    python3 scripts/payroll_cli.py summary 2025-01
    python3 scripts/payroll_cli.py retry-payments 2025-01
    python3 scripts/payroll_cli.py reprocess 2025-01
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from payroll_batch.orchestrator import PayrollOrchestrator  # noqa: E402
from payroll_config import get_runtime_settings  # noqa: E402
from payroll_kernel.db.engine import create_tables, init_engine_from_url, reset_engine  # noqa: E402
from payroll_kernel.exceptions import PayrollKernelError  # noqa: E402
from payroll_kernel.logging_config import configure_logging, get_logger  # noqa: E402

logger = get_logger("cli")


def _fmt(value) -> str:
    return f"{value:,.2f}"


def _orchestrator(args) -> PayrollOrchestrator:
    settings = get_runtime_settings(args.config)
    configure_logging(level=logging.getLevelName(settings.log_level.upper()))
    return PayrollOrchestrator.from_settings(settings, worker_id=getattr(args, "worker_id", None))


def _run_for(orch: PayrollOrchestrator, period: str):
    run = orch.service.find_run_by_period(period)
    if run is None:
        print(f"ERROR: no payroll run for {period}", file=sys.stderr)
    return run


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_init_db(args) -> int:
    settings = get_runtime_settings(args.config)
    configure_logging(level=logging.getLevelName(settings.log_level.upper()))
    create_tables(init_engine_from_url(settings.database_url))
    print("Tables created.")
    return 0


def cmd_create_run(args) -> int:
    run = _orchestrator(args).service.get_or_create_run(args.period)
    print(f"{run.period.code}  {run.id}  {run.status.value}")
    return 0


def cmd_request(args) -> int:
    orch = _orchestrator(args)
    run = orch.service.get_or_create_run(args.period)
    result = orch.service.request_processing(run.id)
    if not result.enqueued:
        print(f"Not queued: {result.reason}")
        return 1
    print(f"Queued {run.period.code} as {result.job_key}")
    return 0


def cmd_status(args) -> int:
    orch = _orchestrator(args)
    if args.period:
        run = _run_for(orch, args.period)
        if run is None:
            return 1
        runs = [run]
    else:
        runs = orch.service.list_runs(take=args.limit)

    print(f"  {'PERIOD':<8} {'STATUS':<11} {'ATTEMPTS':>8}  {'CLAIMED BY':<24} RUN ID")
    for run in runs:
        print(
            f"  {run.period.code:<8} {run.status.value:<11} {run.attempt_count:>8}"
            f"  {(run.claimed_by or '-'):<24} {run.id}"
        )
        if run.error_log:
            print(f"           error: {run.error_log}")
    return 0


def cmd_summary(args) -> int:
    orch = _orchestrator(args)
    summary = orch.service.payroll_summary(args.period)
    if summary.run_id is None:
        print(f"No payroll run for {summary.period.code}")
        return 1

    print(f"  Period:      {summary.period.code} ({summary.status.value})")
    print(f"  Payslips:    {summary.payslip_count} "
          f"(paid {summary.paid_count}, unpaid {summary.unpaid_count})")
    print(f"  Gross:       {_fmt(summary.total_gross)}")
    print(f"  Statutory:   {_fmt(summary.total_statutory)}")
    print(f"  Net:         {_fmt(summary.total_net)}")

    if args.payslips:
        print()
        print(f"  {'EMPLOYEE':<36} {'GROSS':>12} {'NET':>12}  {'PAID':<5} REF")
        for slip in orch.service.list_payslips(summary.run_id):
            print(
                f"  {str(slip.employee_id):<36} {_fmt(slip.gross):>12} {_fmt(slip.net):>12}"
                f"  {'yes' if slip.is_paid else 'no':<5} {slip.transaction_ref}"
            )
    return 0


def cmd_worker(args) -> int:
    orch = _orchestrator(args)
    worker = orch.worker

    if args.drain:
        results = orch.process_pending(args.max_jobs)
        for result in results:
            print(json.dumps({
                "job_key": result.job_key,
                "outcome": result.outcome.value,
                "attempt": result.attempt,
                "error": result.error,
                "result": result.result,
            }, default=str))
        return 0

    def _shutdown(signum, frame):
        logger.info("worker_shutdown_requested", extra={"signal": signum})
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    print(f"Worker {worker.worker_id} polling (Ctrl-C to stop)")
    worker.run_forever()
    return 0


def cmd_retry_payments(args) -> int:
    orch = _orchestrator(args)
    run = _run_for(orch, args.period)
    if run is None:
        return 1
    outcomes = orch.retry_failed_payments(run.id)
    if not outcomes:
        print("No unpaid payslips.")
        return 0
    for outcome in outcomes:
        print(f"  {outcome.employee_id}  {outcome.kind.value:<16} {outcome.message or ''}")
    return 0


def cmd_reprocess(args) -> int:
    orch = _orchestrator(args)
    run = _run_for(orch, args.period)
    if run is None:
        return 1
    result = orch.service.reprocess_run(run.id)
    print(f"Re-queued {run.period.code} as {result.job_key}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Payroll run processing.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings YAML (default: $PAYROLL_CONFIG or the packaged defaults)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create missing tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-run", help="Get or create the run for a period")
    p.add_argument("period", help="YYYY-MM")
    p.set_defaults(func=cmd_create_run)

    p = sub.add_parser("request", help="Queue a PENDING run for processing")
    p.add_argument("period", help="YYYY-MM")
    p.set_defaults(func=cmd_request)

    p = sub.add_parser("status", help="Show run status")
    p.add_argument("period", nargs="?", default=None, help="YYYY-MM (default: recent runs)")
    p.add_argument("--limit", type=int, default=12, help="Runs to list")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("summary", help="Show run totals")
    p.add_argument("period", help="YYYY-MM")
    p.add_argument("--payslips", action="store_true", help="List payslips too")
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("worker", help="Process queued runs")
    p.add_argument("--drain", action="store_true", help="Process ready jobs, then exit")
    p.add_argument("--max-jobs", type=int, default=None, help="Stop after N jobs (with --drain)")
    p.add_argument("--worker-id", default=None, help="Stable worker identity")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("retry-payments", help="Re-dispatch unpaid payslips of a COMPLETED run")
    p.add_argument("period", help="YYYY-MM")
    p.set_defaults(func=cmd_retry_payments)

    p = sub.add_parser("reprocess", help="Re-open a FAILED run and queue it again")
    p.add_argument("period", help="YYYY-MM")
    p.set_defaults(func=cmd_reprocess)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except PayrollKernelError as exc:
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        reset_engine()


if __name__ == "__main__":
    sys.exit(main())
