"""
Reconciler: directory snapshot + local snapshot -> ordered mutations.

Passes (each completes before the next starts, keys in sorted order):
  1) create missing groups (gid only) so users can reference them
  2) create/modify users
  3) create/modify groups with their canonical membership
  4) delete local-only users, then local-only groups (unless preserving)

- Protected names are never created, modified or deleted.
- A failed mutation affects only its entity; the cache is not advanced for it.
- Dry-run decides and logs identically but never calls the store; the cache
  advances as if every change had succeeded.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .change_cache import ChangeCache
from .directory_harvester import DirectorySnapshot
from .local_harvester import LocalSnapshot
from .models import Action, ChangeResult, GroupRecord, Outcome, UserRecord, describe

_USER_FIELDS = ("uid", "gid", "gecos", "home", "shell")


class Reconciler:
    def __init__(
        self,
        store: Any,
        *,
        dry_run: bool = False,
        preserve: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.dry_run = dry_run
        self.preserve = preserve
        self.log = logger or logging.getLogger("ldap2pw.reconcile")
        self.cache: Optional[ChangeCache] = None

    def run(
        self,
        directory: DirectorySnapshot,
        local: LocalSnapshot,
    ) -> Tuple[List[ChangeResult], Dict[str, int]]:
        protected = local.protected
        self.cache = ChangeCache(
            local.users,
            local.groups,
            listed=local.listed,
            managed={n for n in directory.users if n not in protected},
        )
        results: List[ChangeResult] = []
        counts: Dict[str, int] = {}

        for res in self._create_missing_groups(directory.groups, protected):
            self._append(results, counts, res)
        for res in self._sync_users(directory.users, protected):
            self._append(results, counts, res)
        for res in self._sync_groups(directory.groups, protected):
            self._append(results, counts, res)
        for res in self._delete_users(directory.users, protected):
            self._append(results, counts, res)
        for res in self._delete_groups(directory.groups, protected):
            self._append(results, counts, res)

        return results, counts

    # ------------- Passes -------------

    def _create_missing_groups(
        self, groups: Mapping[str, GroupRecord], protected: FrozenSet[str]
    ) -> Iterable[ChangeResult]:
        cache = self.cache
        for name in sorted(groups):
            if name in protected or cache.group(name) is not None:
                continue
            wanted = groups[name]
            self.log.info("group %s: missing", name)
            res = self._apply("group", name, Action.CREATE_GROUP, {"gid": wanted.gid})
            if res.outcome is Outcome.APPLIED:
                cache.put_group(GroupRecord(name=name, gid=wanted.gid, members=""))
            yield res

    def _sync_users(self, users: Mapping[str, UserRecord], protected: FrozenSet[str]) -> Iterable[ChangeResult]:
        cache = self.cache
        for name in sorted(users):
            if name in protected:
                self.log.info("user %s: protected, leaving untouched", name)
                yield ChangeResult("user", name, Outcome.SKIPPED, reason="protected")
                continue
            wanted = users[name]
            current = cache.user(name)
            if current is None:
                self.log.info("user %s: missing", name)
                action = Action.CREATE_USER
            elif current.fields() != wanted.fields():
                diffs = [
                    f"{f} {getattr(current, f)!r} != {getattr(wanted, f)!r}"
                    for f in _USER_FIELDS
                    if getattr(current, f) != getattr(wanted, f)
                ]
                self.log.info("user %s: mismatch (%s)", name, "; ".join(diffs))
                action = Action.MODIFY_USER
            else:
                self.log.debug("user %s: no change", name)
                yield ChangeResult("user", name, Outcome.NOOP)
                continue
            res = self._apply("user", name, action, wanted.attrs())
            if res.outcome is Outcome.APPLIED:
                cache.put_user(wanted)
            yield res

    def _sync_groups(self, groups: Mapping[str, GroupRecord], protected: FrozenSet[str]) -> Iterable[ChangeResult]:
        cache = self.cache
        for name in sorted(groups):
            if name in protected:
                self.log.info("group %s: protected, leaving untouched", name)
                yield ChangeResult("group", name, Outcome.SKIPPED, reason="protected")
                continue
            wanted = groups[name]
            if not wanted.members:
                self.log.debug("group %s: empty membership, not applied", name)
                yield ChangeResult("group", name, Outcome.SKIPPED, reason="empty membership")
                continue
            current = cache.group_fields(name)
            if current is None:
                self.log.info("group %s: missing", name)
                action = Action.CREATE_GROUP
            elif current != wanted.fields():
                self.log.info(
                    "group %s: mismatch (gid %s != %s; members %r != %r)",
                    name, current[0], wanted.gid, current[1], wanted.members,
                )
                action = Action.MODIFY_GROUP
            else:
                self.log.debug("group %s: no change", name)
                yield ChangeResult("group", name, Outcome.NOOP)
                continue
            res = self._apply("group", name, action, {"gid": wanted.gid, "members": wanted.members})
            if res.outcome is Outcome.APPLIED:
                cache.put_group(wanted)
            yield res

    def _delete_users(self, users: Mapping[str, UserRecord], protected: FrozenSet[str]) -> Iterable[ChangeResult]:
        cache = self.cache
        for name in cache.user_names():
            if name in users:
                continue
            res = self._delete("user", name, Action.DELETE_USER, protected)
            if res.outcome is Outcome.APPLIED:
                cache.drop_user(name)
            yield res

    def _delete_groups(self, groups: Mapping[str, GroupRecord], protected: FrozenSet[str]) -> Iterable[ChangeResult]:
        cache = self.cache
        for name in cache.group_names():
            if name in groups:
                continue
            res = self._delete("group", name, Action.DELETE_GROUP, protected)
            if res.outcome is Outcome.APPLIED:
                cache.drop_group(name)
            yield res

    # ------------- Apply -------------

    def _delete(self, kind: str, name: str, action: Action, protected: FrozenSet[str]) -> ChangeResult:
        if name in protected:
            self.log.info("%s %s: not in directory but protected", kind, name)
            return ChangeResult(kind, name, Outcome.SKIPPED, reason="protected")
        if self.preserve:
            self.log.info("%s %s: not in directory, preserved", kind, name)
            return ChangeResult(kind, name, Outcome.SKIPPED, reason="preserved")
        self.log.info("%s %s: not in directory", kind, name)
        return self._apply(kind, name, action, {})

    def _apply(self, kind: str, name: str, action: Action, attrs: Mapping[str, Any]) -> ChangeResult:
        self.log.info("%s", describe(action, name, attrs))
        if self.dry_run:
            return ChangeResult(kind, name, Outcome.APPLIED, action=action, dry_run=True)
        if self.store.apply(action, name, dict(attrs)):
            return ChangeResult(kind, name, Outcome.APPLIED, action=action)
        self.log.error("%s %s: %s failed", kind, name, action.value)
        return ChangeResult(kind, name, Outcome.FAILED, action=action, reason="store mutation failed")

    @staticmethod
    def _append(results: List[ChangeResult], counts: Dict[str, int], res: ChangeResult) -> None:
        results.append(res)
        counts[res.status] = counts.get(res.status, 0) + 1
