"""
Deletion of eviction candidates through their owning storage backend.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Tuple

from retention import RetentionCategory, TaggedArtifact
from storage_backends import DeleteError, StorageBackend, StorageKind, redact_url


logger = logging.getLogger(__name__)

_COUNTERS = {
    RetentionCategory.DAILY: "old_versions",
    RetentionCategory.DIFF: "old_diff_versions",
    RetentionCategory.TRN: "old_trn_versions",
    RetentionCategory.WEEKLY: "old_weekly",
    RetentionCategory.MONTHLY: "old_monthly",
    RetentionCategory.YEARLY: "old_yearly",
}


@dataclass
class EvictionResult:
    base_name: str
    total_deleted: int = 0
    old_versions: int = 0
    old_diff_versions: int = 0
    old_trn_versions: int = 0
    old_weekly: int = 0
    old_monthly: int = 0
    old_yearly: int = 0

    def record(self, category: RetentionCategory) -> None:
        counter = _COUNTERS[category]
        setattr(self, counter, getattr(self, counter) + 1)
        self.total_deleted += 1


@dataclass
class EvictionExecutor:
    """Deletes candidates, skipping blocked ones.

    With ``dry_run`` nothing is deleted but every candidate is logged and
    counted as if it had been. A ``DeleteError`` is recorded in ``failures``
    and the run moves on; any other storage error propagates.
    """

    backend_for: Callable[[StorageKind], StorageBackend]
    dry_run: bool = False
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def execute(self, base_name: str, candidates: Iterable[TaggedArtifact]) -> EvictionResult:
        result = EvictionResult(base_name=base_name)
        action = "Would delete" if self.dry_run else "Deleting"

        for candidate in candidates:
            artifact = candidate.artifact
            display_path = redact_url(artifact.full_path)
            if candidate.block_delete:
                logger.debug("Keeping %s: %s", display_path, candidate.block_reason)
                continue

            logger.info(
                "%s %s backup %s", action, candidate.category.value, display_path
            )
            if not self.dry_run:
                try:
                    self.backend_for(artifact.storage_kind).delete_file(artifact.full_path)
                except DeleteError as error:
                    logger.warning("Could not delete %s: %s", display_path, error)
                    self.failures.append((display_path, str(error)))
                    continue
            result.record(candidate.category)

        return result
