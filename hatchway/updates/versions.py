"""Version normalization and ordering.

Tags such as ``v1.2.0`` and ``1.2`` are normalized before comparison and
ordered with :mod:`semver`. Tags that are not semantic versions fall back
to comparing their numeric components.
"""

from __future__ import annotations

import enum
import re
from typing import Optional, Tuple

import semver

_NUMBERS = re.compile(r"\d+")


class VersionStatus(str, enum.Enum):
    UP_TO_DATE = "up_to_date"
    OUTDATED = "outdated"
    AHEAD = "ahead"
    UNKNOWN = "unknown"


def normalize_version(version: Optional[str]) -> str:
    """Strip whitespace and a leading ``v``/``V`` from a version or tag."""
    if not version:
        return ""
    version = str(version).strip()
    if version[:1] in ("v", "V") and version[1:2].isdigit():
        version = version[1:]
    return version


def parse_version(version: Optional[str]) -> Optional[semver.Version]:
    normalized = normalize_version(version)
    if not normalized:
        return None
    try:
        return semver.Version.parse(normalized, optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None


def _numeric_key(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in _NUMBERS.findall(version))


def compare_versions(left: Optional[str], right: Optional[str]) -> int:
    """Return a negative number, zero or a positive number as ``left`` is
    older than, equal to or newer than ``right``."""
    left_version, right_version = parse_version(left), parse_version(right)
    if left_version is not None and right_version is not None:
        return left_version.compare(right_version)

    left_key = _numeric_key(normalize_version(left))
    right_key = _numeric_key(normalize_version(right))
    return (left_key > right_key) - (left_key < right_key)


def versions_equal(left: Optional[str], right: Optional[str]) -> bool:
    return bool(normalize_version(left)) and compare_versions(left, right) == 0


def classify(installed: Optional[str], available: Optional[str]) -> VersionStatus:
    """Classify an installed version against the best available one."""
    if not normalize_version(installed) or not normalize_version(available):
        return VersionStatus.UNKNOWN

    result = compare_versions(installed, available)
    if result == 0:
        return VersionStatus.UP_TO_DATE
    if result < 0:
        return VersionStatus.OUTDATED
    return VersionStatus.AHEAD
