from typing import Any, Dict, List, Optional, Tuple

from ldap2pw.core.models import Action, describe, parse_members

USERS_OU = "ou=Users,dc=example,dc=org"
GROUPS_OU = "ou=Groups,dc=example,dc=org"


def user_dn(name: str) -> str:
    return f"cn={name},{USERS_OU}"


def group_dn(name: str) -> str:
    return f"cn={name},{GROUPS_OU}"


def user_entry(name, uid, gid, *, gecos=None, home=None, shell="/bin/sh", **extra) -> Tuple[str, Dict[str, Any]]:
    """An AD-style user entry as DirectoryClient.search_all returns it (lowercased keys, list values)."""
    attrs: Dict[str, Any] = {"samaccountname": [name], "uidnumber": [str(uid)], "gidnumber": [str(gid)]}
    if gecos is not None:
        attrs["gecos"] = [gecos]
    attrs["unixhomedirectory"] = [home if home is not None else f"/home/{name}"]
    if shell is not None:
        attrs["loginshell"] = [shell]
    attrs.update(extra)
    return user_dn(name), attrs


def group_entry(name, gid, members=(), nested=()) -> Tuple[str, Dict[str, Any]]:
    refs = [user_dn(m) for m in members] + [group_dn(g) for g in nested]
    attrs: Dict[str, Any] = {"samaccountname": [name], "member": refs}
    if gid is not None:
        attrs["gidnumber"] = [str(gid)]
    return group_dn(name), attrs


class FakeDirectory:
    """Stands in for DirectoryClient: search_all() answers from two in-memory entry maps."""

    def __init__(self, users=(), groups=()) -> None:
        self.users: Dict[str, Dict[str, Any]] = dict(users)
        self.groups: Dict[str, Dict[str, Any]] = dict(groups)
        self.calls: List[Tuple[str, Optional[List[str]], Optional[str]]] = []

    def search_all(self, search_filter, attributes=None, *, base=None):
        self.calls.append((search_filter, list(attributes) if attributes else None, base))
        if "objectclass=user" in search_filter.lower():
            return {dn: dict(a) for dn, a in self.users.items()}
        return {dn: dict(a) for dn, a in self.groups.items()}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return None


class FakeStore:
    """
    In-memory local account store. apply() records every call and, unless the
    action/name pair is listed in `fail`, changes the state the way pw(8) would.
    """

    def __init__(self, users=(), groups=(), admins=(), fail=()) -> None:
        # name -> (name, uid, gid, gecos, home, shell)
        self.users: Dict[str, Tuple[str, int, int, str, str, str]] = {u[0]: tuple(u) for u in users}
        # name -> (name, gid, "space separated members")
        self.groups: Dict[str, Tuple[str, int, str]] = {g[0]: tuple(g) for g in groups}
        self.admins = set(admins)
        self.fail = set(fail)
        self.calls: List[Tuple[Action, str, Dict[str, Any]]] = []

    def iter_users(self):
        return iter(list(self.users.values()))

    def iter_groups(self):
        return iter(list(self.groups.values()))

    def admin_members(self):
        return set(self.admins)

    def apply(self, action, name, attrs=None):
        attrs = dict(attrs or {})
        self.calls.append((action, name, attrs))
        if (action, name) in self.fail:
            return False
        if action in (Action.CREATE_USER, Action.MODIFY_USER):
            self.users[name] = (name, attrs["uid"], attrs["gid"], attrs["gecos"], attrs["home"], attrs["shell"])
        elif action is Action.DELETE_USER:
            self.users.pop(name, None)
            for g, (gname, gid, members) in list(self.groups.items()):
                kept = [m for m in members.split() if m != name]
                self.groups[g] = (gname, gid, " ".join(kept))
        elif action in (Action.CREATE_GROUP, Action.MODIFY_GROUP):
            old = self.groups.get(name, (name, 0, ""))
            members = old[2]
            if "members" in attrs:
                members = " ".join(sorted(parse_members(attrs["members"])))
            self.groups[name] = (name, attrs["gid"], members)
        elif action is Action.DELETE_GROUP:
            self.groups.pop(name, None)
        return True

    def lines(self) -> List[str]:
        return [describe(a, n, at) for a, n, at in self.calls]
