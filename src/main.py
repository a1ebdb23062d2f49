# src/main.py — v1
"""CLI entry point — submit, periods, bulk commands.

Usage:
    stepbatch submit <image>... [--confirm-low-confidence] [--wait-retries]
    stepbatch periods <preset> [--reference YYYY-MM-DD]
    stepbatch bulk {delete,redate,reverify} [<id>...] [--all] [filter options]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, get_args

from stepbatch.config.settings import ConfigurationError, Settings, load_settings
from stepbatch.core.dates import relative_date_label
from stepbatch.core.errors import LimitExceeded, StepBatchError, SubmissionBlocked
from stepbatch.core.periods import (
    PeriodPreset,
    calculate_days_between,
    parse_date,
    preset_label,
    preset_to_date_range,
    previous_period_range,
)
from stepbatch.logging.logger import setup_logging_from_settings
from stepbatch.version import __version__

if TYPE_CHECKING:
    from stepbatch.batch.controller import BatchController

logger = logging.getLogger(__name__)

_RESOLVE_CHOICES = ("recommended", "keep_existing", "use_incoming", "skip", "none")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    setup_logging_from_settings(settings, verbose=args.verbose)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def cli() -> None:
    """Console-script entry point."""
    sys.exit(main())


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stepbatch",
        description=f"stepbatch v{__version__} — batch step-proof submission",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- submit ---
    p_submit = subparsers.add_parser(
        "submit", help="Extract and submit a batch of proof images",
    )
    p_submit.add_argument("files", nargs="+", type=Path, help="Proof images")
    p_submit.add_argument(
        "--confirm-low-confidence", action="store_true",
        help="Confirm every low-confidence extraction before submitting",
    )
    p_submit.add_argument(
        "--wait-retries", action="store_true",
        help="Wait for automatic retries to finish before review",
    )
    p_submit.add_argument(
        "--proxy-member", default=None,
        help="Submit on behalf of this proxy member",
    )
    p_submit.add_argument(
        "--resolve", choices=_RESOLVE_CHOICES, default="recommended",
        help="How to resolve date conflicts (default: recommended per row)",
    )
    p_submit.set_defaults(func=_cmd_submit)

    # --- periods ---
    p_periods = subparsers.add_parser(
        "periods", help="Show the date range of a preset and its previous period",
    )
    p_periods.add_argument(
        "preset", choices=[p for p in get_args(PeriodPreset) if p != "custom"],
    )
    p_periods.add_argument(
        "--reference", default=None,
        help="Reference date YYYY-MM-DD (default: today)",
    )
    p_periods.set_defaults(func=_cmd_periods)

    # --- bulk ---
    p_bulk = subparsers.add_parser(
        "bulk", help="Bulk delete, re-date or re-verify committed records",
    )
    p_bulk.add_argument("action", choices=["delete", "redate", "reverify"])
    p_bulk.add_argument("ids", nargs="*", help="Record ids (omit with --all)")
    p_bulk.add_argument(
        "--all", dest="all_matching", action="store_true",
        help="Apply to every record matching the filter",
    )
    p_bulk.add_argument("--date", default=None, help="Target date for redate")
    p_bulk.add_argument("--reason", default="Bulk date edit", help="Reason for redate")
    p_bulk.add_argument("--user", default=None, help="Filter: owner user id")
    p_bulk.add_argument("--proxy-member", default=None, help="Filter: proxy member id")
    p_bulk.add_argument(
        "--proxy", action="store_true",
        help="Filter: proxy view (requires --proxy-member to match anything)",
    )
    p_bulk.add_argument("--from", dest="start", default=None, help="Filter: start date")
    p_bulk.add_argument("--to", dest="end", default=None, help="Filter: end date")
    p_bulk.set_defaults(func=_cmd_bulk)

    return parser


async def _cmd_submit(args: argparse.Namespace, settings: Settings) -> int:
    """Run a batch through extraction, review and submission."""
    from stepbatch.api.http_gateway import HttpGateway
    from stepbatch.batch.controller import BatchController
    from stepbatch.conflicts.table import ConflictTable

    gateway = HttpGateway.from_settings(settings)
    controller = BatchController(gateway, settings, proxy_member_id=args.proxy_member)
    try:
        missing = [p for p in args.files if not p.is_file()]
        for path in missing:
            logger.error("File not found: %s", path)
        intake = controller.add_files(p for p in args.files if p.is_file())
        if intake.warning:
            print(f"Warning: {intake.warning}")
        if not intake.added:
            logger.error("No images to process")
            return 1

        await controller.extract_all()
        if args.wait_retries:
            await controller.wait_for_retries()
        _print_items(controller)

        if args.confirm_low_confidence:
            for item in controller.by_status("review"):
                if item.needs_confirmation:
                    controller.confirm_low_confidence(item.id)

        try:
            held = await controller.check_conflicts()
        except StepBatchError as exc:
            logger.warning("Conflict check failed, relying on commit-time detection: %s", exc)
        else:
            if held:
                print(f"\n{len(held)} items collide with existing records")

        try:
            result = await controller.submit_reviewed()
        except SubmissionBlocked as exc:
            print(f"\nSubmission blocked: {exc}")
            return 2

        if result.conflicts and args.resolve != "none":
            table = ConflictTable(result.conflicts)
            if args.resolve != "recommended":
                table.toggle_all()
                table.apply_bulk(args.resolve)
            for key, case in table.rows:
                print(f"  {case.date}: {table.action(key)} ({table.recommendation(key).reason})")
            await controller.resolve_conflicts(table.resolutions())

        counts = controller.status_counts()
        print("\nBatch complete:")
        print(f"  Submitted:  {counts.get('success', 0)}")
        print(f"  Failed:     {counts.get('error', 0)}")
        print(f"  Conflicts:  {len(controller.pending_conflicts)} unresolved")
        print(f"  Duration:   {result.duration_seconds:.1f}s")
        return 0 if counts.get("error", 0) == 0 else 1
    finally:
        controller.reset()
        await gateway.aclose()


async def _cmd_periods(args: argparse.Namespace, settings: Settings) -> int:
    """Print a preset range and the period before it."""
    reference = parse_date(args.reference) if args.reference else date.today()
    current = preset_to_date_range(args.preset, reference)
    print(f"{preset_label(args.preset)}:")
    if current is None:
        print("  (no bounded range)")
        return 0
    print(f"  Current:  {current.start} .. {current.end} ({calculate_days_between(current.start, current.end)} days)")
    previous = previous_period_range(args.preset, reference)
    if previous is not None:
        print(f"  Previous: {previous.start} .. {previous.end}")
    return 0


async def _cmd_bulk(args: argparse.Namespace, settings: Settings) -> int:
    """Bulk mutation over explicit ids or every record matching a filter."""
    from stepbatch.api.http_gateway import HttpGateway
    from stepbatch.core.models import DateRange, RecordFilter
    from stepbatch.selection.bulk import BulkActions
    from stepbatch.selection.manager import SelectionManager

    if not args.ids and not args.all_matching:
        logger.error("Give record ids or --all")
        return 1
    if args.action == "redate" and not args.date:
        logger.error("redate requires --date")
        return 1

    date_range = None
    if args.start or args.end:
        today = date.today().isoformat()
        date_range = DateRange(start=args.start or args.end, end=args.end or today)
    record_filter = RecordFilter(
        league_id=settings.league_id or None,
        view_context="proxy" if args.proxy or args.proxy_member else "me",
        user_id=args.user,
        proxy_member_id=args.proxy_member,
        date_range=date_range,
    )

    gateway = HttpGateway.from_settings(settings)
    manager = SelectionManager(record_filter, page_size=settings.page_size)
    actions = BulkActions(gateway, settings, manager)
    try:
        if args.all_matching:
            await manager.load_page(gateway)
            manager.toggle_page()
            if manager.can_escalate():
                manager.escalate()
        else:
            for record_id in args.ids:
                manager.toggle(record_id)

        try:
            if args.action == "delete":
                outcome = await actions.delete()
            elif args.action == "redate":
                outcome = await actions.edit_date(args.date, reason=args.reason)
            else:
                outcome = await actions.reverify()
        except (LimitExceeded, ValueError) as exc:
            print(f"Refused: {exc}")
            return 2

        print(f"\nBulk {outcome.operation}: {outcome.success_count}/{outcome.requested} succeeded")
        for record_id, message in outcome.failed.items():
            print(f"  {record_id}: {message}")
        return 0 if not outcome.failed else 1
    finally:
        await gateway.aclose()


def _print_items(controller: BatchController) -> None:
    """Print the review table of a batch and its confidence summary."""
    from stepbatch.batch.review import ReviewGate

    print(f"\n{'Item':<10} {'File':<28} {'Status':<11} {'Steps':>7}  {'Date':<26}  Confidence")
    for item in controller.items:
        steps, value = controller.review.commit_values(item)
        print(
            f"{item.id:<10} {item.filename[:28]:<28} {item.status:<11} "
            f"{steps if steps is not None else '-':>7}  {_date_cell(value):<26}  "
            f"{item.confidence or '-'}"
            + (f"  [{item.retry.last_error}]" if item.status == "error" else "")
        )
    summary = ReviewGate.confidence_summary(controller.items)
    print(f"Confidence: {summary['high']} high, {summary['medium']} medium, {summary['low']} low")


def _date_cell(value: str | None) -> str:
    if not value:
        return "-"
    try:
        return f"{value} ({relative_date_label(value)})"
    except ValueError:
        return value


if __name__ == "__main__":
    sys.exit(main())
