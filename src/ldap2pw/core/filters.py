"""
Inclusion rules applied identically to directory and local records.

Order of evaluation (both sides):
  1) reserved names (nobody / nogroup)
  2) optional name pattern
  3) numeric id threshold
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern

from .models import MIN_ID, RESERVED_GROUPS, RESERVED_USERS


def compile_pattern(expr: Optional[str], what: str) -> Optional[Pattern[str]]:
    """Compile an optional filter expression; raise ValueError with context on bad syntax."""
    if not expr:
        return None
    try:
        return re.compile(expr)
    except re.error as exc:
        raise ValueError(f"Invalid {what} filter {expr!r}: {exc}") from exc


@dataclass(frozen=True)
class NameFilter:
    users: Optional[Pattern[str]] = None
    groups: Optional[Pattern[str]] = None
    min_id: int = MIN_ID

    @classmethod
    def from_strings(cls, users: Optional[str] = None, groups: Optional[str] = None) -> "NameFilter":
        return cls(users=compile_pattern(users, "user"), groups=compile_pattern(groups, "group"))

    def user_name_ok(self, name: str) -> bool:
        if name in RESERVED_USERS:
            return False
        return self.users is None or self.users.search(name) is not None

    def group_name_ok(self, name: str) -> bool:
        if name in RESERVED_GROUPS:
            return False
        return self.groups is None or self.groups.search(name) is not None

    def id_ok(self, value: int) -> bool:
        return value >= self.min_id

    def accept_user(self, name: str, uid: int) -> bool:
        return self.user_name_ok(name) and self.id_ok(uid)

    def accept_group(self, name: str, gid: int) -> bool:
        return self.group_name_ok(name) and self.id_ok(gid)
