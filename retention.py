"""
Retention classification and eviction selection for one base name.

Each artifact gets exactly one category. Tags are applied in this order, and
the first match wins:

1. diff / trn, by file extension
2. yearly, when the day of the year is selected
3. monthly, when the day of the month is selected
4. weekly, when the weekday is selected
5. daily

Full backups followed directly by a diff/trn file, and diffs followed directly
by a trn file, are blocked from deletion because later files depend on them.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from backup_inventory import DIFF_EXTENSION, TRN_EXTENSION, BackupArtifact
from retention_policy import WEEKDAYS, RetentionPolicy
from storage_backends import StorageKind


class RetentionCategory(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    DIFF = "diff"
    TRN = "trn"


PERIODIC_CATEGORIES = (
    RetentionCategory.WEEKLY,
    RetentionCategory.MONTHLY,
    RetentionCategory.YEARLY,
)


@dataclass(frozen=True)
class TaggedArtifact:
    artifact: BackupArtifact
    category: RetentionCategory
    block_delete: bool = False
    block_reason: Optional[str] = None


def classify_artifact(artifact: BackupArtifact, policy: RetentionPolicy) -> RetentionCategory:
    if artifact.extension == DIFF_EXTENSION:
        return RetentionCategory.DIFF
    if artifact.extension == TRN_EXTENSION:
        return RetentionCategory.TRN

    created_at = artifact.created_at
    if policy.days_of_year and created_at.timetuple().tm_yday in policy.days_of_year:
        return RetentionCategory.YEARLY
    if policy.days_of_month and created_at.day in policy.days_of_month:
        return RetentionCategory.MONTHLY
    if policy.days_of_week and WEEKDAYS[created_at.weekday()] in policy.days_of_week:
        return RetentionCategory.WEEKLY
    return RetentionCategory.DAILY


def block_reason(
    artifact: BackupArtifact,
    successor: Optional[BackupArtifact],
    policy: RetentionPolicy,
) -> Optional[str]:
    if successor is not None:
        if not artifact.is_log_or_diff and successor.is_log_or_diff:
            return f"{successor.file_name} depends on it"
        if artifact.extension == DIFF_EXTENSION and successor.extension == TRN_EXTENSION:
            return f"{successor.file_name} depends on it"
    if (
        policy.check_archive_bit
        and artifact.storage_kind is StorageKind.DISK
        and artifact.archive_bit_set
    ):
        return "archive bit is set"
    return None


def classify_partition(
    artifacts: Sequence[BackupArtifact], policy: RetentionPolicy
) -> List[TaggedArtifact]:
    """Tag one base name's artifacts, which must be ordered oldest first."""
    tagged: List[TaggedArtifact] = []
    for index, artifact in enumerate(artifacts):
        successor = artifacts[index + 1] if index + 1 < len(artifacts) else None
        reason = block_reason(artifact, successor, policy)
        tagged.append(
            TaggedArtifact(
                artifact=artifact,
                category=classify_artifact(artifact, policy),
                block_delete=reason is not None,
                block_reason=reason,
            )
        )
    return tagged


def _beyond_keep(
    items: Sequence[TaggedArtifact],
    category: RetentionCategory,
    keep: Optional[int],
) -> List[TaggedArtifact]:
    if keep is None:
        return []
    matching = [item for item in items if item.category is category]
    return matching[keep:]


def select_evictions(
    tagged: Sequence[TaggedArtifact], policy: RetentionPolicy
) -> List[TaggedArtifact]:
    """Return the eviction candidates, newest first within each category.

    Blocked artifacts are included; the executor skips them. Periodic
    snapshots outside the rolling window are only counted against their own
    keep count, never against ``keep_versions``.
    """
    newest_first = sorted(tagged, key=lambda item: item.artifact.created_at, reverse=True)

    full_backups = [item for item in newest_first if not item.artifact.is_log_or_diff]
    beyond_window = full_backups[policy.keep_versions:]

    candidates = [item for item in beyond_window if item.category is RetentionCategory.DAILY]
    candidates += _beyond_keep(newest_first, RetentionCategory.DIFF, policy.keep_versions_diff)
    candidates += _beyond_keep(newest_first, RetentionCategory.TRN, policy.keep_versions_trn)
    candidates += _beyond_keep(
        beyond_window, RetentionCategory.WEEKLY, policy.keep_versions_weekly
    )
    candidates += _beyond_keep(
        beyond_window, RetentionCategory.MONTHLY, policy.keep_versions_monthly
    )
    candidates += _beyond_keep(
        beyond_window, RetentionCategory.YEARLY, policy.keep_versions_yearly
    )
    return candidates
