#!/usr/bin/env python3
"""
Database backup cleaner.

Scans backup roots on local disk, FTP servers and rclone cloud remotes,
applies the retention policy of each database and deletes the backups that
are no longer needed without breaking diff/trn restore chains.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from backup_inventory import (
    BackupInventory,
    InvalidRootError,
    NoBackupsFoundError,
    classify_root,
    partition_by_base_name,
)
from eviction import EvictionExecutor, EvictionResult
from rclone_session import (
    DEFAULT_EXECUTABLE,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_PORT,
    RemoteSyncSession,
    SessionError,
)
from retention import classify_partition, select_evictions
from retention_policy import (
    PolicySet,
    RetentionPolicy,
    ValidationError,
    load_policies,
    parse_bool,
    parse_int,
)
from storage_backends import (
    MAX_DEPTH,
    DiskBackend,
    FtpBackend,
    RemoteSyncBackend,
    StorageBackend,
    StorageKind,
    redact_url,
)


CONFIG_SECTION = "cleanup"
DEFAULT_POLICY_NAME = "*"
NOISY_LOGGERS = ("urllib3", "requests")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
DEFAULT_LOG_LEVEL = "INFO"


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or invalid."""


@dataclass
class CleanupConfig:
    roots: List[str]
    policies: PolicySet
    depth: int = 0
    dry_run: bool = False
    rclone_path: str = DEFAULT_EXECUTABLE
    rclone_port: int = DEFAULT_PORT
    readiness_recheck_delay: float = 0.0
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    ftp_user: Optional[str] = None
    ftp_password: Optional[str] = None
    ftp_timeout: float = 30.0
    log_level: str = DEFAULT_LOG_LEVEL


@dataclass
class RunReport:
    results: Dict[str, EvictionResult] = field(default_factory=dict)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    failed_roots: List[str] = field(default_factory=list)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete database backups that fall outside their retention policy."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file with a [cleanup] section.",
    )
    parser.add_argument(
        "--root",
        dest="roots",
        action="append",
        metavar="ROOT",
        help=(
            "Backup root to scan. Repeat for several roots. Accepts an absolute "
            "path, ftp://host/path or rclone remote:path."
        ),
    )
    parser.add_argument(
        "--depth",
        type=int,
        help=f"Subdirectory levels to scan below each root, 0-{MAX_DEPTH} (default: 0).",
    )
    parser.add_argument(
        "-p",
        "--policies",
        type=Path,
        help="Path to the retention policy file.",
    )
    parser.add_argument(
        "--keep-versions",
        type=int,
        help="Create a default policy keeping this many versions when no policy file is given.",
    )
    parser.add_argument(
        "--rclone-path",
        help=f"rclone executable used for cloud roots (default: {DEFAULT_EXECUTABLE}).",
    )
    parser.add_argument("--ftp-user", help="User name for FTP roots.")
    parser.add_argument("--ftp-password", help="Password for FTP roots.")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help=f"Logging verbosity (default: {DEFAULT_LOG_LEVEL}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Show which backups would be deleted without deleting them.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser(interpolation=None)
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def parse_float(value: str, name: str) -> float:
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be a number.") from error


def parse_roots(value: str) -> List[str]:
    return [part.strip() for part in value.replace("\n", ",").split(",") if part.strip()]


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> CleanupConfig:
    file_cfg = file_config or {}

    roots = list(args.roots or parse_roots(file_cfg.get("roots", "")))
    if not roots:
        raise ConfigurationError("At least one backup root must be supplied.")
    for root in roots:
        try:
            classify_root(root)
        except InvalidRootError as error:
            raise ConfigurationError(str(error)) from error

    if args.depth is not None:
        depth = args.depth
    elif "depth" in file_cfg:
        depth = parse_int(file_cfg["depth"], "depth")
    else:
        depth = 0
    if not 0 <= depth <= MAX_DEPTH:
        raise ConfigurationError(f"depth must be between 0 and {MAX_DEPTH}.")

    if args.dry_run is not None:
        dry_run = args.dry_run
    elif "dry_run" in file_cfg:
        dry_run = parse_bool(file_cfg["dry_run"], "dry_run")
    else:
        dry_run = False

    policies_value = args.policies or file_cfg.get("policies")
    if policies_value:
        policies = load_policies(Path(policies_value).expanduser())
    elif args.keep_versions is not None:
        policies = PolicySet()
        policies.add(
            RetentionPolicy(
                base_name=DEFAULT_POLICY_NAME,
                keep_versions=args.keep_versions,
                is_default=True,
            )
        )
    else:
        raise ConfigurationError("A policy file or --keep-versions must be supplied.")
    if not len(policies):
        raise ConfigurationError("The policy file does not define any policy.")

    readiness_delay = parse_float(
        file_cfg.get("readiness_recheck_delay", "0"), "readiness_recheck_delay"
    )
    if readiness_delay < 0:
        raise ConfigurationError("readiness_recheck_delay must not be negative.")

    log_level = (args.log_level or file_cfg.get("log_level") or DEFAULT_LOG_LEVEL).upper()
    if log_level not in LOG_LEVELS:
        raise ConfigurationError(f"Invalid log level: {log_level}")

    return CleanupConfig(
        roots=roots,
        policies=policies,
        depth=depth,
        dry_run=dry_run,
        rclone_path=args.rclone_path or file_cfg.get("rclone_path", DEFAULT_EXECUTABLE),
        rclone_port=parse_int(file_cfg.get("rclone_port", str(DEFAULT_PORT)), "rclone_port"),
        readiness_recheck_delay=readiness_delay,
        http_timeout=parse_float(
            file_cfg.get("http_timeout", str(DEFAULT_HTTP_TIMEOUT)), "http_timeout"
        ),
        ftp_user=args.ftp_user if args.ftp_user is not None else file_cfg.get("ftp_user"),
        ftp_password=(
            args.ftp_password if args.ftp_password is not None else file_cfg.get("ftp_password")
        ),
        ftp_timeout=parse_float(file_cfg.get("ftp_timeout", "30"), "ftp_timeout"),
        log_level=log_level,
    )


class RunContext:
    """Owns the storage backends of one run.

    The rclone session is only created when a cloud backend is first needed
    and is always closed when the context exits.
    """

    def __init__(self, config: CleanupConfig) -> None:
        self.config = config
        self.session: Optional[RemoteSyncSession] = None
        self._backends: Dict[StorageKind, StorageBackend] = {}

    def backend_for(self, kind: StorageKind) -> StorageBackend:
        backend = self._backends.get(kind)
        if backend is None:
            backend = self._create_backend(kind)
            self._backends[kind] = backend
        return backend

    def _create_backend(self, kind: StorageKind) -> StorageBackend:
        config = self.config
        if kind is StorageKind.DISK:
            return DiskBackend()
        if kind is StorageKind.FTP:
            return FtpBackend(
                user=config.ftp_user,
                password=config.ftp_password,
                timeout=config.ftp_timeout,
            )
        if kind is StorageKind.CLOUD:
            self.session = RemoteSyncSession(
                config.rclone_path,
                port=config.rclone_port,
                readiness_recheck_delay=config.readiness_recheck_delay,
                timeout=config.http_timeout,
            )
            return RemoteSyncBackend(self.session)
        raise ConfigurationError(f"Unsupported storage kind: {kind}")

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def run_cleanup(config: CleanupConfig) -> RunReport:
    report = RunReport()
    with RunContext(config) as context:
        inventory = BackupInventory(context.backend_for, depth=config.depth)
        try:
            artifacts = inventory.scan(config.roots)
        finally:
            report.failed_roots = list(inventory.failed_roots)

        executor = EvictionExecutor(context.backend_for, dry_run=config.dry_run)
        for base_name, partition in partition_by_base_name(artifacts).items():
            policy = config.policies.policy_for(base_name)
            if policy is None:
                logging.info(
                    "No retention policy for %s, leaving %d file(s) untouched.",
                    base_name,
                    len(partition),
                )
                continue

            tagged = classify_partition(partition, policy)
            candidates = select_evictions(tagged, policy)
            if not candidates:
                logging.debug("Nothing to evict for %s.", base_name)
                continue
            report.results[base_name] = executor.execute(base_name, candidates)

        report.failures = list(executor.failures)
    return report


def _quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    _quiet_external_loggers()


def log_report(report: RunReport, *, dry_run: bool) -> None:
    verb = "would delete" if dry_run else "deleted"
    for base_name, result in report.results.items():
        logging.info(
            "%s: %s %d file(s) (versions %d, diff %d, trn %d, weekly %d, monthly %d, yearly %d)",
            base_name,
            verb,
            result.total_deleted,
            result.old_versions,
            result.old_diff_versions,
            result.old_trn_versions,
            result.old_weekly,
            result.old_monthly,
            result.old_yearly,
        )
    for path, message in report.failures:
        logging.warning("Failed to delete %s: %s", path, message)
    for root in report.failed_roots:
        logging.warning("Root %s could not be scanned.", redact_url(root))

    total = sum(result.total_deleted for result in report.results.values())
    logging.info(
        "Completed cleanup: %s %d file(s) across %d database(s); %d failure(s).",
        verb,
        total,
        len(report.results),
        len(report.failures),
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except (ConfigurationError, ValidationError) as error:
        logging.error("%s", error)
        return 2
    configure_logging(config.log_level)

    try:
        report = run_cleanup(config)
    except (SessionError, NoBackupsFoundError) as error:
        logging.error("%s", error)
        return 1

    log_report(report, dry_run=config.dry_run)
    return 0


if __name__ == "__main__":
    sys.exit(main())
