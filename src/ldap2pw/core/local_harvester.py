"""
Local harvester: local account store -> the same normalized records as the directory side.

Same reserved names, name patterns and id threshold as DirectoryHarvester;
group members are restricted to retained local users, completed with the
users whose primary gid is the group's gid, and flattened canonically.
The explicitly listed part is kept apart in LocalSnapshot.listed: pw(8)
cannot remove a primary-gid member, so only the listed part is comparable
for users the directory does not manage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Set

from .filters import NameFilter
from .models import GroupRecord, UserRecord, flatten_members, parse_members


@dataclass
class LocalSnapshot:
    users: Dict[str, UserRecord] = field(default_factory=dict)
    groups: Dict[str, GroupRecord] = field(default_factory=dict)
    protected: FrozenSet[str] = frozenset()
    # group name -> explicitly listed members (no primary-gid completion), canonical
    listed: Dict[str, str] = field(default_factory=dict)


class LocalHarvester:
    def __init__(
        self,
        store: Any,
        *,
        name_filter: Optional[NameFilter] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.filter = name_filter or NameFilter()
        self.log = logger or logging.getLogger("ldap2pw.local")
        self.listed: Dict[str, str] = {}

    def fetch_users(self) -> Dict[str, UserRecord]:
        users: Dict[str, UserRecord] = {}
        for name, uid, gid, gecos, home, shell in self.store.iter_users():
            if name in users or not self.filter.accept_user(name, int(uid)):
                continue
            users[name] = UserRecord(
                name=name, uid=int(uid), gid=int(gid), gecos=gecos or "", home=home or "", shell=shell or ""
            )
        self.log.info("Local users: %d retained", len(users))
        return users

    def fetch_groups(self, users: Dict[str, UserRecord]) -> Dict[str, GroupRecord]:
        primary: Dict[int, Set[str]] = {}
        for user in users.values():
            primary.setdefault(user.gid, set()).add(user.name)

        groups: Dict[str, GroupRecord] = {}
        self.listed = {}
        for name, gid, member_list in self.store.iter_groups():
            gid = int(gid)
            if name in groups or not self.filter.accept_group(name, gid):
                continue
            listed = parse_members(member_list)
            unknown = listed - users.keys()
            if unknown:
                self.log.debug("Group %s: ignoring non-managed members %s", name, ", ".join(sorted(unknown)))
            explicit = listed & users.keys()
            self.listed[name] = flatten_members(explicit)
            members = explicit | primary.get(gid, set())
            groups[name] = GroupRecord(name=name, gid=gid, members=flatten_members(members))
        self.log.info("Local groups: %d retained", len(groups))
        return groups

    def harvest(self) -> LocalSnapshot:
        protected = frozenset(self.store.admin_members())
        if protected:
            self.log.info("Protected accounts: %s", ", ".join(sorted(protected)))
        users = self.fetch_users()
        groups = self.fetch_groups(users)
        return LocalSnapshot(users=users, groups=groups, protected=protected, listed=dict(self.listed))
