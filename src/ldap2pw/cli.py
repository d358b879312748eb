"""
Command-line interface for ldap2pw.

Usage (examples):
  - Show what would change:
      ldap2pw sync --dry-run --verbose

  - Synchronize against explicit servers, keeping local-only accounts:
      ldap2pw sync -s dc1.example.org -s dc2.example.org --preserve

  - Restrict to some groups and force a shell:
      ldap2pw sync -g '^fw-' -o shell=/bin/sh
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any, Dict, Iterable, Optional

from .core.config import AppConfig, ConfigError, load_config, parse_overrides
from .core.directory_client import DirectoryClient, DirectoryError
from .core.directory_harvester import DirectoryHarvester
from .core.discovery import discover_servers
from .core.filters import NameFilter
from .core.local_harvester import LocalHarvester
from .core.local_store import LocalStoreError, PwStore
from .core.logging_setup import build_logger
from .core.reconciler import Reconciler

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_APPLY_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_DIRECTORY_ERROR = 4


def _summarize_counts(counts: Dict[str, int]) -> str:
    # stable order for readability
    keys = ["CREATED", "UPDATED", "DELETED", "UNCHANGED", "SKIP", "ERROR"]
    parts = [f"{k}={counts.get(k, 0)}" for k in keys]
    return " | ".join(parts)


def _exit_code_from_counts(counts: Dict[str, int]) -> int:
    if counts.get("ERROR", 0):
        return EXIT_APPLY_ERROR
    return EXIT_OK


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ldap2pw", description="Synchronize local users and groups with an LDAP directory")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("sync", help="Reconcile the local account database with the directory")
    s.add_argument("-n", "--dry-run", action="store_true", help="Decide and report, change nothing")
    s.add_argument("-v", "--verbose", action="store_true", help="Report no-op decisions too")
    s.add_argument("-p", "--preserve", action="store_true", help="Never delete local-only users or groups")
    s.add_argument("-c", "--config", default="", help="YAML configuration file")

    # Directory
    s.add_argument("-d", "--domain", default="", help="Directory domain (default: derived from host name)")
    s.add_argument("-s", "--server", action="append", default=[], help="Directory server (repeatable, tried in order)")
    s.add_argument("-b", "--base", default="", help="Search base DN (default: derived from domain)")
    s.add_argument("--auth", choices=["gssapi", "simple", "anonymous"], default=None, help="Bind mode")
    s.add_argument("--bind-dn", default="", help="Bind DN for simple auth")

    # Selection
    s.add_argument("-u", "--user-filter", default="", help="Only manage users whose name matches this regex")
    s.add_argument("-g", "--group-filter", default="", help="Only manage groups whose name matches this regex")
    s.add_argument("-o", "--override", action="append", default=[], metavar="KEY=VALUE",
                   help="Force home=/path or shell=/path for every user (repeatable)")

    # Logging
    s.add_argument("--logs-dir", default=None, help="Logs base directory")
    s.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    s.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")

    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only options actually given on the command line override lower layers."""
    app: Dict[str, Any] = {}
    if args.dry_run:
        app["dry_run"] = True
    if args.verbose:
        app["verbose"] = True
    if args.preserve:
        app["preserve"] = True

    directory: Dict[str, Any] = {}
    if args.domain:
        directory["domain"] = args.domain
    if args.server:
        directory["servers"] = list(args.server)
    if args.base:
        directory["base"] = args.base
    if args.auth:
        directory["auth"] = args.auth
    if args.bind_dn:
        directory["bind_dn"] = args.bind_dn

    filters: Dict[str, Any] = {}
    if args.user_filter:
        filters["users"] = args.user_filter
    if args.group_filter:
        filters["groups"] = args.group_filter

    logging_cfg: Dict[str, Any] = {}
    if args.logs_dir:
        logging_cfg["base_dir"] = args.logs_dir
    if args.console_level:
        logging_cfg["console_level"] = args.console_level
    if args.file_level:
        logging_cfg["file_level"] = args.file_level

    out: Dict[str, Any] = {"app": app, "directory": directory, "filters": filters, "logging": logging_cfg}
    overrides = parse_overrides(args.override)
    if overrides:
        out["overrides"] = overrides
    return out


def _make_client(cfg: AppConfig, logger: Any) -> DirectoryClient:
    d = cfg.directory
    return DirectoryClient(
        d.servers,
        base=d.base,
        auth=d.auth,
        bind_dn=d.bind_dn,
        password=d.password,
        use_ssl=d.use_ssl,
        start_tls=d.start_tls,
        timeout_sec=d.timeout_sec,
        page_size=d.page_size,
        logger=logger,
    )


def _make_store(cfg: AppConfig, logger: Any) -> PwStore:
    return PwStore(pw_path=cfg.local.pw_path, admin_group=cfg.local.admin_group, logger=logger)


def _sync_cmd(args: argparse.Namespace) -> int:
    # 1) Config (fatal before anything is touched)
    try:
        kwargs: Dict[str, Any] = {}
        if args.config:
            if not os.path.exists(args.config):
                raise ConfigError(f"Configuration file not found: {args.config}")
            kwargs["files"] = (args.config,)
        cfg = load_config(_cli_overrides(args), **kwargs)
    except ConfigError as e:
        print(f"ldap2pw: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    # 2) Logger
    console_level = "DEBUG" if cfg.app.verbose else cfg.logging.console_level
    logger = build_logger(
        run_id=cfg.run_id,
        action="sync",
        base_dir=cfg.logging.base_dir,
        console_level=console_level,
        file_level=cfg.logging.file_level,
    )
    if not cfg.directory.servers:
        cfg.directory.servers = discover_servers(
            cfg.directory.domain, timeout_sec=cfg.directory.timeout_sec, logger=logger
        )
    logger.info(
        "Starting ldap2pw sync (dry_run=%s, preserve=%s, servers=%s, base=%s)",
        cfg.app.dry_run, cfg.app.preserve, ",".join(cfg.directory.servers), cfg.directory.base,
    )
    if cfg.source:
        logger.debug("Configuration file: %s", cfg.source)
    if cfg.app.dry_run:
        logger.info("Dry-run: no changes will be applied")

    name_filter = NameFilter.from_strings(cfg.filters.users, cfg.filters.groups)

    # 3) Directory snapshot (fatal on any error, nothing local touched yet)
    try:
        with _make_client(cfg, logger) as client:
            harvester = DirectoryHarvester(
                client,
                schema=cfg.schema,
                name_filter=name_filter,
                overrides=cfg.overrides,
                user_filter=cfg.directory.user_filter,
                group_filter=cfg.directory.group_filter,
                user_base=cfg.directory.user_base or None,
                group_base=cfg.directory.group_base or None,
                logger=logger,
            )
            directory = harvester.harvest()
    except DirectoryError as e:
        logger.error("Directory error, aborting: %s", e)
        return EXIT_DIRECTORY_ERROR
    logger.info(
        "Directory snapshot: %d users, %d groups (%d entries skipped)",
        len(directory.users), len(directory.groups), directory.skipped,
    )

    # 4) Local snapshot
    store = _make_store(cfg, logger)
    try:
        local = LocalHarvester(store, name_filter=name_filter, logger=logger).harvest()
    except LocalStoreError as e:
        logger.error("Local store error, aborting: %s", e)
        return EXIT_APPLY_ERROR

    # 5) Reconcile
    reconciler = Reconciler(store, dry_run=cfg.app.dry_run, preserve=cfg.app.preserve, logger=logger)
    _, counts = reconciler.run(directory, local)

    summary = _summarize_counts(counts)
    logger.info("%s summary: %s", "Dry-run" if cfg.app.dry_run else "Sync", summary)
    print(summary)
    return _exit_code_from_counts(counts)


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.cmd == "sync":
        return _sync_cmd(args)

    parser.error("Unknown command")  # pragma: no cover
    return 2  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
