"""
Domain controller discovery through DNS SRV records (RFC 2782).

discover_servers("example.org") looks up _ldap._tcp.example.org and returns
the targets ordered by priority (lowest first), then weight (highest first),
then name. Any DNS failure, or an empty answer, falls back to the domain name
itself, which an AD domain resolves to its controllers.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

import dns.exception
import dns.resolver

LDAP_PORT = 389


def _target(rr: Any) -> str:
    return rr.target.to_text(omit_final_dot=True)


def discover_servers(
    domain: str,
    *,
    service: str = "_ldap._tcp",
    timeout_sec: float = 5.0,
    logger: Optional[logging.LoggerAdapter] = None,
) -> List[str]:
    log = logger or logging.getLogger("ldap2pw.discovery")
    qname = f"{service}.{domain.rstrip('.')}"
    try:
        answer = dns.resolver.resolve(qname, "SRV", lifetime=timeout_sec)
    except dns.exception.DNSException as e:
        log.warning("SRV lookup of %s failed (%s); falling back to %s", qname, e.__class__.__name__, domain)
        return [domain]

    ranked: List[Tuple[int, int, str]] = []
    for rr in answer:
        host = _target(rr)
        if not host or host == ".":
            continue  # "service not available here"
        if rr.port and rr.port != LDAP_PORT:
            host = f"{host}:{rr.port}"
        ranked.append((rr.priority, -rr.weight, host))

    servers: List[str] = []
    for _, _, host in sorted(ranked):
        if host not in servers:
            servers.append(host)
    if not servers:
        log.warning("SRV lookup of %s returned no usable targets; falling back to %s", qname, domain)
        return [domain]
    log.info("Discovered %d directory server(s) for %s: %s", len(servers), domain, ", ".join(servers))
    return servers
