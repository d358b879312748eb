"""
Directory client over ldap3.

- Candidate servers are tried in order; the first successful bind wins.
- Bind modes: GSSAPI (Kerberos ticket of the running process), simple, anonymous.
- search(): one page of a simple-paged-results search (RFC 2696).
- search_all(): pages until the server returns an empty cookie; merges pages
  into one mapping {dn: {attribute (lowercased): value}}.
- Every failure is a DirectoryError; nothing here is retried once a session exists.

Usage:
    with DirectoryClient(["dc1.example.org", "dc2.example.org"], base="dc=example,dc=org") as dc:
        users = dc.search_all("(&(objectclass=user)(uidnumber=*))", ["sAMAccountName", "uidNumber"])
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ldap3 import (
    ANONYMOUS,
    AUTO_BIND_NO_TLS,
    AUTO_BIND_TLS_BEFORE_BIND,
    KERBEROS,
    NONE,
    SASL,
    SIMPLE,
    SUBTREE,
    Connection,
    Server,
)
from ldap3.core.exceptions import LDAPException

PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"
AUTH_MODES = ("gssapi", "simple", "anonymous")

Entries = Dict[str, Dict[str, Any]]
ConnectionFactory = Callable[[str], Any]


@dataclass
class DirectoryError(Exception):
    """Directory connection/search failure with context. Always fatal for a run."""
    message: str
    server: str = ""
    result: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        base = f"DirectoryError({self.server or '-'}): {self.message}"
        if self.result:
            base += f" [result={self.result.get('result')} {self.result.get('description', '')}]"
        return base


class DirectoryClient:
    """Single long-lived session against the first reachable candidate server."""

    def __init__(
        self,
        servers: Sequence[str],
        *,
        base: str,
        auth: str = "gssapi",
        bind_dn: str = "",
        password: str = "",
        use_ssl: bool = False,
        start_tls: bool = False,
        timeout_sec: int = 30,
        page_size: int = 500,
        logger: Optional[logging.LoggerAdapter] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        if not servers:
            raise ValueError("at least one directory server is required")
        if auth not in AUTH_MODES:
            raise ValueError(f"unknown auth mode {auth!r}")
        self.servers = list(servers)
        self.base = base
        self.auth = auth
        self.bind_dn = bind_dn
        self.password = password
        self.use_ssl = use_ssl
        self.start_tls = start_tls
        self.timeout = int(timeout_sec)
        self.page_size = max(1, int(page_size))
        self.log = logger or logging.getLogger("ldap2pw.ldap")
        self._factory = connection_factory or self._open_connection
        self._conn: Any = None
        self.server: str = ""

    # ------------- Session -------------

    def _open_connection(self, host: str) -> Connection:
        server = Server(host, use_ssl=self.use_ssl, get_info=NONE, connect_timeout=self.timeout)
        auto_bind = AUTO_BIND_TLS_BEFORE_BIND if self.start_tls else AUTO_BIND_NO_TLS
        kwargs: Dict[str, Any] = {
            "auto_bind": auto_bind,
            "read_only": True,
            "receive_timeout": self.timeout,
            "raise_exceptions": False,
        }
        if self.auth == "gssapi":
            return Connection(server, authentication=SASL, sasl_mechanism=KERBEROS, **kwargs)
        if self.auth == "simple":
            return Connection(server, user=self.bind_dn, password=self.password, authentication=SIMPLE, **kwargs)
        return Connection(server, authentication=ANONYMOUS, **kwargs)

    def connect(self) -> None:
        """Try every candidate in order; raise DirectoryError once all are exhausted."""
        if self._conn is not None:
            return
        failures: List[str] = []
        for host in self.servers:
            start = time.time()
            try:
                conn = self._factory(host)
            except LDAPException as e:
                self.log.warning("LDAP connect to %s failed: %s", host, e)
                failures.append(f"{host}: {e}")
                continue
            self._conn = conn
            self.server = host
            self.log.info("Connected to %s (auth=%s) in %.1fms", host, self.auth, (time.time() - start) * 1000)
            return
        raise DirectoryError("no directory server reachable (" + "; ".join(failures) + ")")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.unbind()
        except LDAPException as e:
            self.log.debug("unbind from %s failed: %s", self.server, e)
        self._conn = None

    def __enter__(self) -> "DirectoryClient":
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------- Queries -------------

    def search(
        self,
        base: str,
        search_filter: str,
        attributes: Optional[Sequence[str]] = None,
        page_cursor: Optional[bytes] = None,
    ) -> Tuple[Entries, Optional[bytes]]:
        """Fetch one page. Returns (entries, next_cursor); next_cursor is None on the last page."""
        if self._conn is None:
            self.connect()
        conn = self._conn
        try:
            conn.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=list(attributes) if attributes else ["*"],
                paged_size=self.page_size,
                paged_cookie=page_cursor,
            )
        except LDAPException as e:
            raise DirectoryError(f"search {search_filter} failed: {e}", server=self.server) from e

        result = dict(conn.result or {})
        if result.get("result", 0) != 0:
            raise DirectoryError(f"search {search_filter} failed", server=self.server, result=result)

        entries: Entries = {}
        for item in conn.response or []:
            if item.get("type") != "searchResEntry":
                continue  # referrals
            attrs = item.get("attributes") or {}
            entries[item["dn"]] = {str(k).lower(): v for k, v in attrs.items()}

        cookie = (
            (result.get("controls") or {})
            .get(PAGED_RESULTS_OID, {})
            .get("value", {})
            .get("cookie")
        )
        return entries, (cookie or None)

    def search_all(
        self,
        search_filter: str,
        attributes: Optional[Sequence[str]] = None,
        *,
        base: Optional[str] = None,
    ) -> Entries:
        """Page through a search and accumulate every entry keyed by DN."""
        base = base or self.base
        out: Entries = {}
        cursor: Optional[bytes] = None
        pages = 0
        while True:
            entries, cursor = self.search(base, search_filter, attributes, cursor)
            pages += 1
            out.update(entries)
            self.log.debug("search %s page=%d entries=%d", search_filter, pages, len(entries))
            if not cursor:
                break
        self.log.info("search %s under %s -> %d entries (%d pages)", search_filter, base, len(out), pages)
        return out
