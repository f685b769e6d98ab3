"""
Migration Planner

Pure planning over the ledger's applied versions and the migrations on
disk. Nothing here touches the database.

States:
    Pending   - the store holds versions newer than the ledger's current one
    UpToDate  - the ledger matches the newest version in the store
    Diverged  - the ledger references versions missing from the store;
                migrate and rollback refuse to run until resolved by hand
"""

import re
from typing import Dict, List, Optional, Sequence

from ...error_handling import DivergedLedgerError
from .file_store import Migration

PENDING = 'Pending'
UP_TO_DATE = 'UpToDate'
DIVERGED = 'Diverged'

# Versions compare as strings, which only orders correctly at fixed width
VERSION_PATTERN = re.compile(r'^\d{14}$')


class MigrationPlan:
    """Ordered migrations one run will execute"""

    def __init__(self, direction: str, migrations: List[Migration],
                 target_version: Optional[str] = None):
        self.direction = direction
        self.migrations = migrations
        self.target_version = target_version

    @property
    def versions(self) -> List[str]:
        return [m.version for m in self.migrations]

    @property
    def is_empty(self) -> bool:
        return not self.migrations

    def __len__(self):
        return len(self.migrations)

    def __iter__(self):
        return iter(self.migrations)


class MigrationStatus:
    """Snapshot of ledger versus file store"""

    def __init__(self, state: str, current_version: Optional[str], applied: List[str],
                 pending: List[str], unknown: List[str], skipped: List[str]):
        self.state = state
        self.current_version = current_version
        self.applied = applied
        self.pending = pending
        self.unknown = unknown
        self.skipped = skipped

    def to_dict(self) -> Dict:
        return {
            'state': self.state,
            'current_version': self.current_version,
            'applied': list(self.applied),
            'pending': list(self.pending),
            'unknown': list(self.unknown),
            'skipped': list(self.skipped),
        }


def current_version(applied: Sequence[str]) -> Optional[str]:
    return max(applied) if applied else None


def status(applied: Sequence[str], migrations: Sequence[Migration]) -> MigrationStatus:
    known = {m.version for m in migrations}
    applied_set = set(applied)
    current = current_version(applied)

    unknown = sorted(v for v in applied_set if v not in known)
    pending = [m.version for m in migrations
               if m.version not in applied_set and (current is None or m.version > current)]
    # Older than the current version but never applied: migrate will not pick them up
    skipped = [m.version for m in migrations
               if m.version not in applied_set and current is not None and m.version < current]

    if unknown:
        state = DIVERGED
    elif pending:
        state = PENDING
    else:
        state = UP_TO_DATE

    return MigrationStatus(state, current, sorted(applied_set), pending, unknown, skipped)


def validate_version(version: str) -> str:
    """Reject target versions that are not 14-digit timestamps"""
    if not isinstance(version, str) or not VERSION_PATTERN.match(version):
        raise ValueError(
            f"Migration version must be a 14-digit timestamp (YYYYMMDDHHMMSS), got {version!r}"
        )
    return version


def _ensure_not_diverged(applied: Sequence[str], migrations: Sequence[Migration]):
    known = {m.version for m in migrations}
    unknown = sorted(v for v in set(applied) if v not in known)
    if unknown:
        raise DivergedLedgerError(unknown)


def plan_forward(applied: Sequence[str], migrations: Sequence[Migration],
                 target_version: Optional[str] = None) -> MigrationPlan:
    """
    Migrations newer than the ledger's current version, ascending

    Args:
        applied: Versions recorded in the ledger
        migrations: Migrations in the file store
        target_version: Stop after this version (None = run all)

    Raises:
        DivergedLedgerError: If the ledger references unknown versions
        ValueError: On a malformed target version
    """
    if target_version is not None:
        validate_version(target_version)
    _ensure_not_diverged(applied, migrations)
    current = current_version(applied)

    selected = [
        m for m in sorted(migrations, key=lambda m: m.version)
        if (current is None or m.version > current)
        and (target_version is None or m.version <= target_version)
    ]
    return MigrationPlan('up', selected, target_version)


def plan_rollback(applied: Sequence[str], migrations: Sequence[Migration],
                  steps: Optional[int] = 1,
                  target_version: Optional[str] = None) -> MigrationPlan:
    """
    Applied migrations newer than the target, descending

    Either ``target_version`` or ``steps`` picks the target: with ``steps=N``
    the target is the (N+1)-th newest applied version, or "none" when fewer
    than N+1 versions are applied.

    Raises:
        DivergedLedgerError: If the ledger references unknown versions
        ValueError: On a non-positive step count or malformed target version
    """
    if target_version is not None:
        validate_version(target_version)
    _ensure_not_diverged(applied, migrations)
    by_version = {m.version: m for m in migrations}
    newest_first = sorted(set(applied), reverse=True)

    if target_version is None:
        if steps is None or steps < 1:
            raise ValueError(f"Rollback steps must be a positive integer, got {steps}")
        target_version = newest_first[steps] if steps < len(newest_first) else None

    selected = [
        by_version[v] for v in newest_first
        if target_version is None or v > target_version
    ]
    return MigrationPlan('down', selected, target_version)
