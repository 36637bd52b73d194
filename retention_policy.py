"""
Retention policies and their INI persistence.

A policy file holds one ``[policy:<base name>]`` section per policy. At most
one of them may be flagged ``is_default = yes``; it applies to every base name
without a policy of its own. Keys that are absent stay unset, which is not the
same as ``0``.
"""
from __future__ import annotations

import configparser
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


SECTION_PREFIX = "policy:"
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_DAYS_OF_WEEK = ("sunday",)
DEFAULT_DAYS_OF_MONTH = (28,)
DEFAULT_DAYS_OF_YEAR = (365,)


class ValidationError(ValueError):
    """Raised when a retention policy is malformed."""


def parse_bool(value: str, name: str = "value") -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValidationError(f"{name} must be a boolean, got {value!r}.")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ValidationError(f"{name} must be an integer.") from error


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.replace("\n", ",").split(",") if part.strip()]


@dataclass(frozen=True)
class RetentionPolicy:
    base_name: str
    keep_versions: int
    is_default: bool = False
    keep_versions_diff: Optional[int] = None
    keep_versions_trn: Optional[int] = None
    keep_versions_weekly: Optional[int] = None
    days_of_week: Optional[Tuple[str, ...]] = None
    keep_versions_monthly: Optional[int] = None
    days_of_month: Optional[Tuple[int, ...]] = None
    keep_versions_yearly: Optional[int] = None
    days_of_year: Optional[Tuple[int, ...]] = None
    check_archive_bit: bool = False


def _check_period(
    policy: RetentionPolicy,
    count_name: str,
    days_name: str,
    default_days: tuple,
    valid_days: Iterable,
) -> Dict[str, tuple]:
    count = getattr(policy, count_name)
    days = getattr(policy, days_name)
    if count is None:
        if days is not None:
            raise ValidationError(
                f"Policy {policy.base_name!r}: {days_name} requires {count_name}."
            )
        return {}
    if count < 0:
        raise ValidationError(f"Policy {policy.base_name!r}: {count_name} must not be negative.")
    if days is None:
        return {days_name: default_days}
    if not days:
        raise ValidationError(f"Policy {policy.base_name!r}: {days_name} must not be empty.")
    allowed = set(valid_days)
    invalid = [day for day in days if day not in allowed]
    if invalid:
        raise ValidationError(
            f"Policy {policy.base_name!r}: invalid {days_name} {', '.join(map(str, invalid))}."
        )
    return {}


def validate_policy(policy: RetentionPolicy) -> RetentionPolicy:
    """Check a policy and fill in default day selectors.

    Returns the policy with Sunday / 28 / 365 selected where a periodic keep
    count was given without its days.
    """
    if not policy.base_name.strip():
        raise ValidationError("Policy base name must not be empty.")
    if policy.keep_versions is None or policy.keep_versions < 1:
        raise ValidationError(f"Policy {policy.base_name!r}: keep_versions must be at least 1.")
    for name in ("keep_versions_diff", "keep_versions_trn"):
        value = getattr(policy, name)
        if value is not None and value < 0:
            raise ValidationError(f"Policy {policy.base_name!r}: {name} must not be negative.")
    if policy.days_of_week is not None:
        policy = replace(
            policy, days_of_week=tuple(day.strip().lower() for day in policy.days_of_week)
        )

    updates: Dict[str, tuple] = {}
    updates.update(
        _check_period(policy, "keep_versions_weekly", "days_of_week", DEFAULT_DAYS_OF_WEEK, WEEKDAYS)
    )
    updates.update(
        _check_period(
            policy, "keep_versions_monthly", "days_of_month", DEFAULT_DAYS_OF_MONTH, range(1, 32)
        )
    )
    updates.update(
        _check_period(
            policy, "keep_versions_yearly", "days_of_year", DEFAULT_DAYS_OF_YEAR, range(1, 367)
        )
    )
    return replace(policy, **updates) if updates else policy


@dataclass
class PolicySet:
    named: Dict[str, RetentionPolicy] = field(default_factory=dict)
    default: Optional[RetentionPolicy] = None

    def add(self, policy: RetentionPolicy) -> RetentionPolicy:
        policy = validate_policy(policy)
        if policy.is_default:
            if self.default is not None:
                raise ValidationError(
                    f"Only one default policy is allowed ({self.default.base_name!r} "
                    f"and {policy.base_name!r})."
                )
            self.default = policy
            return policy

        key = policy.base_name.lower()
        if key in self.named:
            raise ValidationError(f"Duplicate policy for base name {policy.base_name!r}.")
        self.named[key] = policy
        return policy

    def policy_for(self, base_name: str) -> Optional[RetentionPolicy]:
        return self.named.get(base_name.lower(), self.default)

    def __iter__(self):
        yield from self.named.values()
        if self.default is not None:
            yield self.default

    def __len__(self) -> int:
        return len(self.named) + (1 if self.default is not None else 0)


_INT_FIELDS = (
    "keep_versions_diff",
    "keep_versions_trn",
    "keep_versions_weekly",
    "keep_versions_monthly",
    "keep_versions_yearly",
)


def policy_from_section(base_name: str, section: configparser.SectionProxy) -> RetentionPolicy:
    known = {item.name for item in fields(RetentionPolicy)} - {"base_name"}
    unknown = [key for key in section.keys() if key not in known]
    if unknown:
        raise ValidationError(f"Policy {base_name!r}: unknown key(s) {', '.join(unknown)}.")
    if "keep_versions" not in section:
        raise ValidationError(f"Policy {base_name!r}: keep_versions is required.")

    values = {
        "base_name": base_name,
        "keep_versions": parse_int(section["keep_versions"], "keep_versions"),
        "is_default": parse_bool(section.get("is_default", "no"), "is_default"),
        "check_archive_bit": parse_bool(
            section.get("check_archive_bit", "no"), "check_archive_bit"
        ),
    }
    for name in _INT_FIELDS:
        if name in section:
            values[name] = parse_int(section[name], name)
    if "days_of_week" in section:
        values["days_of_week"] = tuple(day.lower() for day in _split_list(section["days_of_week"]))
    for name in ("days_of_month", "days_of_year"):
        if name in section:
            values[name] = tuple(parse_int(day, name) for day in _split_list(section[name]))
    return RetentionPolicy(**values)


def policies_from_parser(parser: configparser.ConfigParser) -> PolicySet:
    policy_set = PolicySet()
    for section_name in parser.sections():
        if not section_name.startswith(SECTION_PREFIX):
            raise ValidationError(
                f"Unexpected section [{section_name}]; use [{SECTION_PREFIX}<base name>]."
            )
        base_name = section_name[len(SECTION_PREFIX):].strip()
        policy_set.add(policy_from_section(base_name, parser[section_name]))
    return policy_set


def policies_to_parser(policy_set: PolicySet) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    for policy in policy_set:
        section: Dict[str, str] = {"keep_versions": str(policy.keep_versions)}
        if policy.is_default:
            section["is_default"] = "yes"
        for name in _INT_FIELDS:
            value = getattr(policy, name)
            if value is not None:
                section[name] = str(value)
        if policy.days_of_week is not None:
            section["days_of_week"] = ", ".join(policy.days_of_week)
        if policy.days_of_month is not None:
            section["days_of_month"] = ", ".join(map(str, policy.days_of_month))
        if policy.days_of_year is not None:
            section["days_of_year"] = ", ".join(map(str, policy.days_of_year))
        if policy.check_archive_bit:
            section["check_archive_bit"] = "yes"
        parser[f"{SECTION_PREFIX}{policy.base_name}"] = section
    return parser


def load_policies(path: Path) -> PolicySet:
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with path.open(encoding="utf-8") as handle:
            parser.read_file(handle)
    except OSError as error:
        raise ValidationError(f"Policy file {path} could not be read: {error}") from error
    except configparser.Error as error:
        raise ValidationError(f"Policy file {path} is malformed: {error}") from error
    return policies_from_parser(parser)


def save_policies(policy_set: PolicySet, path: Path) -> None:
    parser = policies_to_parser(policy_set)
    with path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
