"""
Directory harvester: raw LDAP entries -> normalized user/group records.

Lifecycle (harvest()):
  fetch_users -> fetch_groups -> resolve_membership -> re-key by name

- Entries lacking a required attribute are skipped (logged), never fatal.
- Reserved names and name patterns are applied before the id threshold.
- home/shell overrides replace directory values for every user.
- Nested groups are flattened through MembershipGraph; every user is then
  added to the group carrying its primary gid.
- Members end up as the canonical sorted, comma-joined string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from .config import SchemaSection
from .filters import NameFilter
from .membership import MembershipGraph
from .models import GroupRecord, UserRecord, flatten_members

DEFAULT_USER_FILTER = "(&(objectclass=user)(uidnumber=*))"
DEFAULT_GROUP_FILTER = "(&(objectclass=group)(gidnumber=*))"
OVERRIDABLE = ("home", "shell")


@dataclass
class DirectorySnapshot:
    users: Dict[str, UserRecord] = field(default_factory=dict)
    groups: Dict[str, GroupRecord] = field(default_factory=dict)
    skipped: int = 0


def _first(attrs: Mapping[str, Any], key: str) -> Optional[str]:
    """First value of a (possibly multi-valued) attribute as a stripped string."""
    value = attrs.get(key.lower())
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    value = str(value).strip()
    return value or None


def _all(attrs: Mapping[str, Any], key: str) -> List[str]:
    value = attrs.get(key.lower())
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    out = []
    for v in value:
        if isinstance(v, bytes):
            v = v.decode("utf-8", errors="replace")
        if v:
            out.append(str(v))
    return out


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class DirectoryHarvester:
    """
    Query a DirectoryClient-like object (anything with search_all(filter, attributes, base=...)).

    Intermediate state lives on the instance (users/groups keyed by DN) so the
    three steps can be driven separately in tests; harvest() runs them in order.
    """

    def __init__(
        self,
        client: Any,
        *,
        schema: Optional[SchemaSection] = None,
        name_filter: Optional[NameFilter] = None,
        overrides: Optional[Mapping[str, str]] = None,
        user_filter: str = DEFAULT_USER_FILTER,
        group_filter: str = DEFAULT_GROUP_FILTER,
        user_base: Optional[str] = None,
        group_base: Optional[str] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.schema = schema or SchemaSection()
        self.filter = name_filter or NameFilter()
        self.overrides = {k: v for k, v in (overrides or {}).items() if k in OVERRIDABLE}
        self.user_filter = user_filter
        self.group_filter = group_filter
        self.user_base = user_base
        self.group_base = group_base
        self.log = logger or logging.getLogger("ldap2pw.directory")

        self.users: Dict[str, UserRecord] = {}
        self.groups: Dict[str, GroupRecord] = {}
        self.graph: Optional[MembershipGraph] = None
        self.skipped = 0

    # ------------- Users -------------

    def _user_attributes(self) -> List[str]:
        s = self.schema
        return [s.user_name, s.uid, s.gid, s.gecos, s.gecos_fallback, s.home, s.shell]

    def _parse_user(self, dn: str, attrs: Mapping[str, Any]) -> Optional[UserRecord]:
        s = self.schema
        values = {
            "name": _first(attrs, s.user_name),
            "uid": _to_int(_first(attrs, s.uid)),
            "gid": _to_int(_first(attrs, s.gid)),
            "gecos": _first(attrs, s.gecos) or _first(attrs, s.gecos_fallback) or "",
            "home": _first(attrs, s.home),
            "shell": _first(attrs, s.shell),
        }
        values.update(self.overrides)
        missing = [k for k in ("name", "uid", "gid", "home", "shell") if values[k] is None]
        if missing:
            self.log.debug("Skipping user %s: missing %s", dn, ", ".join(missing))
            self.skipped += 1
            return None
        return UserRecord(dn=dn, **values)

    def fetch_users(self, search_filter: Optional[str] = None) -> Dict[str, UserRecord]:
        raw = self.client.search_all(search_filter or self.user_filter, self._user_attributes(), base=self.user_base)
        users: Dict[str, UserRecord] = {}
        for dn in sorted(raw):
            user = self._parse_user(dn, raw[dn])
            if user is None:
                continue
            if not self.filter.user_name_ok(user.name):
                self.log.debug("Ignoring user %s: name filtered", user.name)
                continue
            if not self.filter.id_ok(user.uid):
                self.log.debug("Ignoring user %s: uid %d below %d", user.name, user.uid, self.filter.min_id)
                continue
            users[dn] = user
        self.users = users
        self.log.info("Directory users: %d of %d entries retained", len(users), len(raw))
        return users

    # ------------- Groups -------------

    def fetch_groups(self, search_filter: Optional[str] = None) -> Dict[str, GroupRecord]:
        """
        Every returned group entry becomes a node of the membership graph so
        nesting through filtered-out groups still resolves; only groups that
        pass the inclusion rules are returned.
        """
        s = self.schema
        raw = self.client.search_all(
            search_filter or self.group_filter,
            [s.group_name, s.group_gid, s.member],
            base=self.group_base,
        )
        self.graph = MembershipGraph(self.users, logger=self.log)
        groups: Dict[str, GroupRecord] = {}
        for dn in sorted(raw):
            attrs = raw[dn]
            name = _first(attrs, s.group_name)
            gid = _to_int(_first(attrs, s.group_gid))
            self.graph.add_group(dn, name or dn, _all(attrs, s.member))
            if name is None or gid is None:
                self.log.debug("Skipping group %s: missing %s", dn, "name" if name is None else "gid")
                self.skipped += 1
                continue
            if not self.filter.group_name_ok(name):
                self.log.debug("Ignoring group %s: name filtered", name)
                continue
            if not self.filter.id_ok(gid):
                self.log.debug("Ignoring group %s: gid %d below %d", name, gid, self.filter.min_id)
                continue
            groups[dn] = GroupRecord(name=name, gid=gid, dn=dn)
        self.groups = groups
        self.log.info("Directory groups: %d of %d entries retained", len(groups), len(raw))
        return groups

    # ------------- Membership -------------

    def resolve_membership(self) -> None:
        """Flatten nested membership, add primary-group members, canonicalise strings (in place)."""
        if self.graph is None:
            raise RuntimeError("fetch_groups() must run before resolve_membership()")
        self.graph.resolve_all()

        members: Dict[str, Set[str]] = {}
        by_gid: Dict[int, List[str]] = {}
        for dn, group in self.groups.items():
            members[dn] = set(self.graph.resolve(dn))
            by_gid.setdefault(group.gid, []).append(dn)

        for user in self.users.values():
            for dn in by_gid.get(user.gid, []):
                if user.name not in members[dn]:
                    self.log.debug("Adding %s to primary group %s", user.name, self.groups[dn].name)
                    members[dn].add(user.name)
                user.groups.add(self.groups[dn].name)

        for dn, group in self.groups.items():
            group.members = flatten_members(members[dn])

        if self.graph.cycles:
            self.log.warning(
                "Resolved %d membership cycle(s): %s",
                len(self.graph.cycles),
                "; ".join(" <-> ".join(c) for c in self.graph.cycles),
            )
        if self.graph.dangling:
            self.log.info("Skipped %d unresolvable member reference(s)", len(self.graph.dangling))

    # ------------- Orchestration -------------

    def _by_name(self, records: Mapping[str, Any], kind: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for dn in sorted(records):
            rec = records[dn]
            if rec.name in out:
                self.log.warning("Duplicate %s name %s (%s replaces %s)", kind, rec.name, dn, out[rec.name].dn)
            out[rec.name] = rec
        return out

    def harvest(self) -> DirectorySnapshot:
        self.skipped = 0
        self.fetch_users()
        self.fetch_groups()
        self.resolve_membership()
        return DirectorySnapshot(
            users=self._by_name(self.users, "user"),
            groups=self._by_name(self.groups, "group"),
            skipped=self.skipped,
        )
