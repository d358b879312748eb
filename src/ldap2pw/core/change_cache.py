"""
Change cache: the local state as it will be once the changes applied so far
in this run have taken effect. Seeded from the local snapshot; never persisted.

Group membership is held as the explicitly listed members. The membership a
group is compared with adds the cached users whose primary gid is the group's
gid, restricted to `managed` names when given (a local-only or protected
user keeps its primary group whatever `pw groupmod -M` sets).
"""

from __future__ import annotations

from dataclasses import replace
from typing import AbstractSet, Dict, List, Mapping, Optional, Tuple

from .models import GroupRecord, UserRecord, flatten_members, parse_members


class ChangeCache:
    def __init__(
        self,
        users: Mapping[str, UserRecord],
        groups: Mapping[str, GroupRecord],
        *,
        listed: Optional[Mapping[str, str]] = None,
        managed: Optional[AbstractSet[str]] = None,
    ) -> None:
        self._users: Dict[str, UserRecord] = {n: replace(u, groups=set()) for n, u in users.items()}
        self._groups: Dict[str, GroupRecord] = {}
        for n, g in groups.items():
            if listed is not None and n in listed:
                self._groups[n] = replace(g, members=listed[n])
            else:
                self._groups[n] = replace(g)
        self.managed = frozenset(managed) if managed is not None else None

    # ------------- Users -------------

    def user(self, name: str) -> Optional[UserRecord]:
        return self._users.get(name)

    def put_user(self, record: UserRecord) -> None:
        self._users[record.name] = replace(record, dn=None, groups=set())

    def drop_user(self, name: str) -> None:
        self._users.pop(name, None)

    def user_names(self) -> List[str]:
        return sorted(self._users)

    # ------------- Groups -------------

    def group(self, name: str) -> Optional[GroupRecord]:
        return self._groups.get(name)

    def put_group(self, record: GroupRecord) -> None:
        self._groups[record.name] = replace(record, dn=None)

    def drop_group(self, name: str) -> None:
        self._groups.pop(name, None)

    def group_names(self) -> List[str]:
        return sorted(self._groups)

    def effective_members(self, name: str) -> str:
        """Listed members plus the managed cached users whose primary gid is the group's gid."""
        group = self._groups[name]
        members = parse_members(group.members)
        members.update(
            u.name
            for u in self._users.values()
            if u.gid == group.gid and (self.managed is None or u.name in self.managed)
        )
        return flatten_members(members)

    def group_fields(self, name: str) -> Optional[Tuple[int, str]]:
        group = self._groups.get(name)
        if group is None:
            return None
        return (group.gid, self.effective_members(name))
