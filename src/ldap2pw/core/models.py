"""
Record types shared by the harvesters, the change cache and the reconciler.

- UserRecord / GroupRecord: the normalized shape both sides are reduced to.
- Action: the six mutations the local store understands.
- Outcome / ChangeResult: explicit result of one reconciliation decision.
- flatten_members / parse_members: canonical membership string handling.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Set, Tuple

MIN_ID = 1000
RESERVED_USERS = frozenset({"nobody"})
RESERVED_GROUPS = frozenset({"nobody", "nogroup"})

# Attribute name -> pw(8) flag, in the order flags are emitted.
FLAGS: Dict[str, str] = {
    "uid": "-u",
    "gid": "-g",
    "gecos": "-c",
    "home": "-d",
    "shell": "-s",
    "members": "-M",
}


@dataclass
class UserRecord:
    name: str
    uid: int
    gid: int
    gecos: str = ""
    home: str = ""
    shell: str = ""
    dn: Optional[str] = field(default=None, compare=False)
    groups: Set[str] = field(default_factory=set, compare=False, repr=False)

    def fields(self) -> Tuple[int, int, str, str, str]:
        """Tuple used for equality decisions."""
        return (self.uid, self.gid, self.gecos, self.home, self.shell)

    def attrs(self) -> Dict[str, Any]:
        return {"uid": self.uid, "gid": self.gid, "gecos": self.gecos, "home": self.home, "shell": self.shell}


@dataclass
class GroupRecord:
    name: str
    gid: int
    members: str = ""
    dn: Optional[str] = field(default=None, compare=False)

    def fields(self) -> Tuple[int, str]:
        return (self.gid, self.members)


class Action(str, Enum):
    CREATE_USER = "create-user"
    MODIFY_USER = "modify-user"
    DELETE_USER = "delete-user"
    CREATE_GROUP = "create-group"
    MODIFY_GROUP = "modify-group"
    DELETE_GROUP = "delete-group"

    @property
    def verb(self) -> str:
        """pw(8) subcommand."""
        return _VERBS[self]


_VERBS = {
    Action.CREATE_USER: "useradd",
    Action.MODIFY_USER: "usermod",
    Action.DELETE_USER: "userdel",
    Action.CREATE_GROUP: "groupadd",
    Action.MODIFY_GROUP: "groupmod",
    Action.DELETE_GROUP: "groupdel",
}


class Outcome(str, Enum):
    NOOP = "NOOP"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


_STATUS_BY_ACTION = {
    Action.CREATE_USER: "CREATED",
    Action.CREATE_GROUP: "CREATED",
    Action.MODIFY_USER: "UPDATED",
    Action.MODIFY_GROUP: "UPDATED",
    Action.DELETE_USER: "DELETED",
    Action.DELETE_GROUP: "DELETED",
}


@dataclass(frozen=True)
class ChangeResult:
    """Outcome of one decision for one user or group."""
    kind: str  # "user" | "group"
    name: str
    outcome: Outcome
    action: Optional[Action] = None
    reason: str = ""
    dry_run: bool = False

    @property
    def status(self) -> str:
        if self.outcome is Outcome.NOOP:
            return "UNCHANGED"
        if self.outcome is Outcome.SKIPPED:
            return "SKIP"
        if self.outcome is Outcome.FAILED:
            return "ERROR"
        if self.action is None:
            raise ValueError(f"{self.kind} {self.name}: applied result without an action")
        return _STATUS_BY_ACTION[self.action]


def flatten_members(names: Iterable[str]) -> str:
    """Sorted (codepoint order), comma-joined, duplicate-free membership string."""
    return ",".join(sorted(set(names)))


def parse_members(value: Any) -> Set[str]:
    """
    Accept a canonical string (comma separated), a store-native string
    (whitespace separated) or any iterable of names.
    """
    if value is None:
        return set()
    if isinstance(value, str):
        return {p for p in value.replace(",", " ").split() if p}
    return {str(v) for v in value if v}


def pw_args(attrs: Mapping[str, Any]) -> list[str]:
    """Translate an attribute mapping into pw(8) flags (stable order)."""
    out: list[str] = []
    for key, flag in FLAGS.items():
        if key in attrs and attrs[key] is not None:
            out.extend([flag, str(attrs[key])])
    return out


def describe(action: Action, name: str, attrs: Optional[Mapping[str, Any]] = None) -> str:
    """Human-readable line for one mutation, e.g. ``create-group staff -g 1000``."""
    parts = [action.value, name] + pw_args(attrs or {})
    return " ".join(shlex.quote(p) for p in parts)
