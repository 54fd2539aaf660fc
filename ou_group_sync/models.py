"""Data structures passed between the sync stages."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class OrganizationalUnit:
    """Organizational unit as read from the directory."""
    name: str
    distinguished_name: str


@dataclass(frozen=True)
class GroupSpec:
    """Target group derived from an organizational unit."""
    display_name: str
    description: str
    membership_rule: str
    mail_nickname: str

    def with_mail_nickname(self, mail_nickname: str) -> "GroupSpec":
        return replace(self, mail_nickname=mail_nickname)


@dataclass
class SyncReport:
    """Outcome counters for a single sync run."""
    units_found: int = 0
    created: int = 0
    planned: int = 0
    skipped_existing: int = 0
    query_failed: int = 0
    creation_failed: int = 0
    nickname_collisions: int = 0
    created_group_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def has_failures(self) -> bool:
        return (self.query_failed + self.creation_failed) > 0

    @property
    def runtime_seconds(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()
