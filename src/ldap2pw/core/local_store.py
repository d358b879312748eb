"""
Local account store backed by the system databases and pw(8).

Read side: pwd/grp enumeration (ordered pull, no privileges needed).
Write side: one `pw <verb> <name> [flags]` process per mutation; failure is
reported through the return value and the log, never raised.
"""

from __future__ import annotations

import grp
import logging
import pwd
import subprocess
from typing import Any, Iterator, List, Mapping, Optional, Set, Tuple

from .models import Action, describe, pw_args

UserRow = Tuple[str, int, int, str, str, str]
GroupRow = Tuple[str, int, str]


class LocalStoreError(RuntimeError):
    """Raised when the local account databases cannot be read."""


class PwStore:
    def __init__(
        self,
        *,
        pw_path: str = "/usr/sbin/pw",
        admin_group: str = "wheel",
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.pw_path = pw_path
        self.admin_group = admin_group
        self.log = logger or logging.getLogger("ldap2pw.pw")

    # ------------- Enumeration -------------

    def iter_users(self) -> Iterator[UserRow]:
        """Yield (name, uid, gid, gecos, home, shell) in database order."""
        try:
            entries = pwd.getpwall()
        except OSError as e:
            raise LocalStoreError(f"cannot read password database: {e}") from e
        for pw in entries:
            yield (pw.pw_name, pw.pw_uid, pw.pw_gid, pw.pw_gecos, pw.pw_dir, pw.pw_shell)

    def iter_groups(self) -> Iterator[GroupRow]:
        """Yield (name, gid, members) with members space-separated."""
        try:
            entries = grp.getgrall()
        except OSError as e:
            raise LocalStoreError(f"cannot read group database: {e}") from e
        for gr in entries:
            yield (gr.gr_name, gr.gr_gid, " ".join(gr.gr_mem))

    def admin_members(self) -> Set[str]:
        """Members of the administrative group; these accounts are never touched."""
        try:
            return set(grp.getgrnam(self.admin_group).gr_mem)
        except KeyError:
            self.log.warning("Administrative group %s not found; protected set is empty", self.admin_group)
            return set()

    # ------------- Mutation -------------

    def command(self, action: Action, name: str, attrs: Optional[Mapping[str, Any]] = None) -> List[str]:
        """argv for one mutation (exposed for diagnostics and tests)."""
        return [self.pw_path, action.verb, name] + pw_args(attrs or {})

    def apply(self, action: Action, name: str, attrs: Optional[Mapping[str, Any]] = None) -> bool:
        argv = self.command(action, name, attrs)
        self.log.debug("exec: %s", " ".join(argv))
        try:
            p = subprocess.run(argv, capture_output=True, text=True, check=False)
        except OSError as e:
            self.log.error("%s: cannot run %s: %s", describe(action, name, attrs), self.pw_path, e)
            return False
        if p.returncode != 0:
            self.log.error(
                "%s failed (rc=%s): %s",
                describe(action, name, attrs),
                p.returncode,
                (p.stderr or p.stdout or "").strip(),
            )
            return False
        return True
