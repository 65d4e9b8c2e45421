#!/usr/bin/env python3
"""Report (and optionally merge) employee records that look like the same person.

Run from the backend/ directory:

    python3 scripts/audit_duplicates.py [--threshold N] [--verbose]
    python3 scripts/audit_duplicates.py --apply PRIMARY_ID DUPLICATE_ID [--resolve field=primary|duplicate|value ...]

Without --apply the script only reads. Each reported pair comes with its merge
preview: conflicting fields, fields the primary would gain, aliases to move.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Any

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from personnel.core.config import Settings, settings  # noqa: E402
from personnel.core.errors import MergeConflictError, PersonnelError  # noqa: E402
from personnel.models.employee import MergePreview  # noqa: E402
from personnel.services.merge_reconciler import find_duplicate_candidates  # noqa: E402
from personnel.services.personnel_service import PersonnelService, personnel_service  # noqa: E402

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 85.0


def parse_resolution(value: str) -> tuple[str, Any]:
    """Parse ``field=choice``; explicit rates become floats."""
    field, sep, choice = value.partition("=")
    field, choice = field.strip(), choice.strip()
    if not sep or not field or not choice:
        raise argparse.ArgumentTypeError(f"expected field=primary|duplicate|value, got {value!r}")
    if field in ("hourly_rate", "overtime_rate") and choice not in ("primary", "duplicate"):
        try:
            return field, float(choice)
        except ValueError as e:
            raise argparse.ArgumentTypeError(f"{field} must be a number, got {choice!r}") from e
    return field, choice


def format_preview(preview: MergePreview, score: float) -> list[str]:
    primary = preview.primary_employee
    duplicate = preview.duplicate_employee
    lines = [
        f"{score:.1f}%  {primary.full_name} ({primary.person_id}) <- {duplicate.full_name} ({duplicate.person_id})",
    ]
    for conflict in preview.conflicts:
        lines.append(f"    conflict {conflict.field}: {conflict.primary_value!r} vs {conflict.duplicate_value!r}")
    for field, value in preview.fields_to_fill.items():
        lines.append(f"    fill {field}: {value!r}")
    if preview.aliases_to_merge:
        lines.append(f"    aliases: {', '.join(preview.aliases_to_merge)}")
    return lines


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Find likely duplicate employee records and optionally merge one pair",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=DEFAULT_THRESHOLD,
        help=f"Minimum name similarity (0-100) to report a pair (default: {DEFAULT_THRESHOLD:g})",
    )
    parser.add_argument(
        "--apply",
        nargs=2,
        metavar=("PRIMARY_ID", "DUPLICATE_ID"),
        help="Merge DUPLICATE_ID into PRIMARY_ID instead of reporting",
    )
    parser.add_argument(
        "--resolve",
        action="append",
        type=parse_resolution,
        default=[],
        metavar="FIELD=CHOICE",
        help="Resolution for a conflicting field: primary, duplicate, or an explicit value (repeatable)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging; otherwise LOG_LEVEL applies",
    )
    args = parser.parse_args(argv)
    if not 0 <= args.threshold <= 100:
        parser.error("--threshold must be between 0 and 100")
    if args.resolve and not args.apply:
        parser.error("--resolve only makes sense together with --apply")
    return args


def log_level(args: argparse.Namespace, config: Settings = settings) -> int | str:
    if args.verbose or config.DEBUG:
        return logging.DEBUG
    return config.LOG_LEVEL.upper()


async def report(service: PersonnelService, threshold: float) -> int:
    employees = await service.list_employees()
    logger.info("Scanning %d employees (threshold %.1f)", len(employees), threshold)

    pairs = find_duplicate_candidates(employees, threshold)
    for left, right, score in pairs:
        preview = await service.preview_merge(left.person_id, right.person_id)
        for line in format_preview(preview, score):
            logger.info(line)

    logger.info("Found %d possible duplicate pairs", len(pairs))
    return len(pairs)


async def apply(service: PersonnelService, primary_id: str, duplicate_id: str, resolutions: dict[str, Any]) -> bool:
    try:
        merged = await service.apply_merge(primary_id, duplicate_id, resolutions)
    except MergeConflictError as e:
        for conflict in e.conflicts:
            logger.error(
                "Unresolved conflict %s: primary=%r duplicate=%r (pass --resolve %s=primary|duplicate|value)",
                conflict.field,
                conflict.primary_value,
                conflict.duplicate_value,
                conflict.field,
            )
        return False
    except PersonnelError as e:
        logger.error("Merge failed: %s", e)
        return False

    logger.info("Merged %s into %s (%s)", duplicate_id, merged.person_id, merged.full_name)
    return True


async def audit(args: argparse.Namespace, service: PersonnelService | None = None) -> int:
    logging.basicConfig(level=log_level(args), format="%(asctime)s %(levelname)s %(message)s")
    logger.debug("Personnel audit v%s (store=%s)", settings.APP_VERSION, settings.PERSONNEL_STORE)

    service = service or personnel_service
    await service.initialize(settings)
    try:
        if args.apply:
            primary_id, duplicate_id = args.apply
            resolutions = dict(args.resolve)
            return 0 if await apply(service, primary_id, duplicate_id, resolutions) else 1
        await report(service, args.threshold)
        return 0
    finally:
        await service.close()


def main() -> None:
    args = parse_args()
    sys.exit(asyncio.run(audit(args)))


if __name__ == "__main__":
    main()
