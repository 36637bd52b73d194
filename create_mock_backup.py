#!/usr/bin/env python3
"""
Utility to create mock database backup files following the naming contract.

Useful for trying retention policies against a scratch directory without
waiting for real backups to accumulate.
"""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from backup_inventory import BACKUP_TIMESTAMP_FORMAT


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create empty mock database backup files."
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        required=True,
        help="Directory where the backup files should be placed.",
    )
    parser.add_argument(
        "--base-name",
        default="sales",
        help="Database name used as the file name prefix (default: sales).",
    )
    parser.add_argument(
        "--extension",
        default="bak",
        choices=["bak", "diff", "trn"],
        help="Backup file extension (default: bak).",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of backups to create (default: 1).",
    )
    parser.add_argument(
        "--start",
        type=datetime.fromisoformat,
        help="Timestamp of the first backup in ISO format (default: now).",
    )
    parser.add_argument(
        "--timestamp-step",
        type=str,
        default="1d",
        help="Increment between successive backups (e.g. 30m, 1h, 1d; default: 1d).",
    )
    return parser.parse_args(argv)


def parse_duration(value: str) -> timedelta:
    units = {
        "s": 1,
        "m": 60,
        "h": 60 * 60,
        "d": 24 * 60 * 60,
    }

    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Duration value must not be empty.")

    suffix = normalized[-1]
    if suffix in units:
        number_part = normalized[:-1]
        multiplier = units[suffix]
    else:
        number_part = normalized
        multiplier = 1

    if not number_part:
        raise ValueError(f"Invalid duration value: {value}")

    try:
        number = int(number_part)
    except ValueError as error:
        raise ValueError(f"Invalid duration value: {value}") from error

    if number <= 0:
        raise ValueError("Duration value must be positive.")

    return timedelta(seconds=number * multiplier)


def backup_file_name(base_name: str, timestamp: datetime, extension: str) -> str:
    return f"{base_name}_backup_{timestamp.strftime(BACKUP_TIMESTAMP_FORMAT)}.{extension}"


def make_mock_backup(
    backup_dir: Path,
    base_name: str,
    timestamp: datetime | None = None,
    extension: str = "bak",
) -> Path:
    backup_dir.mkdir(parents=True, exist_ok=True)
    path = backup_dir / backup_file_name(base_name, timestamp or datetime.now(), extension)
    path.touch()
    return path


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        timestamp_step = parse_duration(args.timestamp_step)
    except ValueError as error:
        print(f"Error: {error}")
        return 2

    if args.count <= 0:
        print("Error: --count must be a positive integer.")
        return 2

    backup_dir = args.backup_dir.resolve()
    current_timestamp = args.start or datetime.now().replace(microsecond=0)

    for _ in range(args.count):
        path = make_mock_backup(
            backup_dir=backup_dir,
            base_name=args.base_name,
            timestamp=current_timestamp,
            extension=args.extension,
        )
        print(f"Created mock backup: {path}")
        current_timestamp += timestamp_step
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
