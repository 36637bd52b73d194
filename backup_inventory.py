"""
Inventory of database backup files across disk, FTP and cloud roots.

File names follow ``<base>_backup_<yyyy>_<MM>_<dd>_<HHmmss><suffix>.<ext>``.
Names that do not match are skipped.
"""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from storage_backends import (
    MAX_DEPTH,
    EnumerationError,
    StorageBackend,
    StorageEntry,
    StorageKind,
    redact_url,
)


logger = logging.getLogger(__name__)

BACKUP_NAME_PATTERN = re.compile(
    r"^(.+)_(.+)_(\d{4})_(\d{2})_(\d{2})_(\d{2})(\d{2})(\d{2}).*\.(.+)$"
)
BACKUP_TIMESTAMP_FORMAT = "%Y_%m_%d_%H%M%S"
DIFF_EXTENSION = "diff"
TRN_EXTENSION = "trn"
LOG_OR_DIFF_EXTENSIONS = frozenset({DIFF_EXTENSION, TRN_EXTENSION})

_DRIVE_LETTER_PATH = re.compile(r"^[A-Za-z]:[\\/]")
_DRIVE_RELATIVE_PATH = re.compile(r"^[A-Za-z]:(?![\\/])")


class InvalidRootError(ValueError):
    """Raised when a root token names no known kind of storage."""


class NoBackupsFoundError(Exception):
    """Raised when no root yielded a single backup file."""


@dataclass(frozen=True)
class BackupArtifact:
    base_name: str
    full_path: str
    file_name: str
    created_at: datetime
    extension: str
    storage_kind: StorageKind
    archive_bit_set: bool = False

    @property
    def is_log_or_diff(self) -> bool:
        return self.extension in LOG_OR_DIFF_EXTENSIONS


def classify_root(root: str) -> StorageKind:
    token = root.strip()
    if token.lower().startswith("ftp://"):
        return StorageKind.FTP
    if _DRIVE_LETTER_PATH.match(token) or token.startswith("/"):
        return StorageKind.DISK
    if _DRIVE_RELATIVE_PATH.match(token):
        raise InvalidRootError(
            f"Unsupported root {root!r}: drive paths must be absolute, e.g. C:\\backups."
        )
    remote, separator, _ = token.partition(":")
    if separator and remote:
        return StorageKind.CLOUD
    raise InvalidRootError(
        f"Unsupported root {root!r}: use an absolute path, ftp://host/path or remote:path."
    )


def parse_backup_artifact(
    entry: StorageEntry, storage_kind: StorageKind
) -> Optional[BackupArtifact]:
    match = BACKUP_NAME_PATTERN.match(entry.name)
    if match is None:
        logger.debug("Skipping non-conforming backup file %s", redact_url(entry.full_path))
        return None

    year, month, day, hour, minute, second = (int(value) for value in match.group(3, 4, 5, 6, 7, 8))
    try:
        created_at = datetime(year, month, day, hour, minute, second)
    except ValueError as error:
        logger.debug(
            "Skipping %s with invalid timestamp: %s", redact_url(entry.full_path), error
        )
        return None

    return BackupArtifact(
        base_name=match.group(1).lower(),
        full_path=entry.full_path,
        file_name=entry.name,
        created_at=created_at,
        extension=match.group(9).lower(),
        storage_kind=storage_kind,
        archive_bit_set=entry.archive_bit if storage_kind is StorageKind.DISK else False,
    )


def partition_by_base_name(
    artifacts: Iterable[BackupArtifact],
) -> Dict[str, List[BackupArtifact]]:
    """Group artifacts by base name, each group oldest first."""
    groups: Dict[str, List[BackupArtifact]] = defaultdict(list)
    for artifact in artifacts:
        groups[artifact.base_name].append(artifact)
    return {
        base_name: sorted(group, key=lambda artifact: artifact.created_at)
        for base_name, group in sorted(groups.items())
    }


class BackupInventory:
    """Scans configured roots and collects parsed backup artifacts.

    A root whose listing fails is logged and recorded in ``failed_roots``;
    the remaining roots are still scanned.
    """

    def __init__(
        self,
        backend_for: Callable[[StorageKind], StorageBackend],
        depth: int = 0,
    ) -> None:
        if not 0 <= depth <= MAX_DEPTH:
            raise ValueError(f"depth must be between 0 and {MAX_DEPTH}.")
        self.backend_for = backend_for
        self.depth = depth
        self.failed_roots: List[str] = []

    def scan_root(self, root: str) -> List[BackupArtifact]:
        kind = classify_root(root)
        backend = self.backend_for(kind)
        artifacts: List[BackupArtifact] = []
        for entry in backend.walk(root, self.depth):
            artifact = parse_backup_artifact(entry, kind)
            if artifact is not None:
                artifacts.append(artifact)
        logger.info("Found %d backup file(s) in %s", len(artifacts), redact_url(root))
        return artifacts

    def scan(self, roots: Iterable[str]) -> List[BackupArtifact]:
        artifacts: List[BackupArtifact] = []
        for root in roots:
            try:
                artifacts.extend(self.scan_root(root))
            except EnumerationError as error:
                logger.error("Skipping root %s: %s", redact_url(root), error)
                self.failed_roots.append(root)

        if not artifacts:
            raise NoBackupsFoundError("No backups found in any configured root.")
        artifacts.sort(key=lambda artifact: (artifact.base_name, artifact.created_at))
        return artifacts
