from __future__ import annotations

import os
import posixpath
import re
import socket
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .filters import compile_pattern


class ConfigError(ValueError):
    """Raised when runtime configuration is invalid. Always detected before any mutation."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False
    verbose: bool = False
    preserve: bool = False


@dataclass
class DirectorySection:
    domain: str = ""
    servers: List[str] = field(default_factory=list)
    base: str = ""
    user_base: str = ""
    group_base: str = ""
    auth: str = "gssapi"           # gssapi | simple | anonymous
    bind_dn: str = ""
    password: str = ""             # secret – never log in clear text
    use_ssl: bool = False
    start_tls: bool = False
    timeout_sec: int = 30
    page_size: int = 500
    user_filter: str = "(&(objectclass=user)(uidnumber=*))"
    group_filter: str = "(&(objectclass=group)(gidnumber=*))"


@dataclass
class SchemaSection:
    user_name: str = "sAMAccountName"
    uid: str = "uidNumber"
    gid: str = "gidNumber"
    gecos: str = "gecos"
    gecos_fallback: str = "displayName"
    home: str = "unixHomeDirectory"
    shell: str = "loginShell"
    group_name: str = "sAMAccountName"
    group_gid: str = "gidNumber"
    member: str = "member"


@dataclass
class FiltersSection:
    users: str = ""
    groups: str = ""


@dataclass
class LocalSection:
    pw_path: str = "/usr/sbin/pw"
    admin_group: str = "wheel"


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    directory: DirectorySection
    schema: SchemaSection
    filters: FiltersSection
    overrides: Dict[str, str]
    local: LocalSection
    logging: LoggingSection
    source: Optional[str] = None   # configuration file used, if any

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./ldap2pw.yml",
    os.path.expanduser("~/.config/ldap2pw/config.yml"),
    "/usr/local/etc/ldap2pw.yml",
    "/etc/ldap2pw.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False, "verbose": False, "preserve": False},
    "directory": {
        "domain": "",
        "servers": [],
        "base": "",
        "user_base": "",
        "group_base": "",
        "auth": "gssapi",
        "bind_dn": "",
        "password": "",
        "use_ssl": False,
        "start_tls": False,
        "timeout_sec": 30,
        "page_size": 500,
        "user_filter": "(&(objectclass=user)(uidnumber=*))",
        "group_filter": "(&(objectclass=group)(gidnumber=*))",
    },
    "schema": {},
    "filters": {"users": "", "groups": ""},
    "overrides": {},
    "local": {"pw_path": "/usr/sbin/pw", "admin_group": "wheel"},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}

_BOOL_KEYS = {"dry_run", "verbose", "preserve", "use_ssl", "start_tls"}
_INT_KEYS = {"timeout_sec", "page_size"}
_OVERRIDE_KEYS = ("home", "shell")
_AUTH_MODES = ("gssapi", "simple", "anonymous")

_LABEL = r"(?!-)[A-Za-z0-9-]{1,63}(?<!-)"
_HOSTNAME_RE = re.compile(rf"^{_LABEL}(\.{_LABEL})*\.?$")
_DOMAIN_RE = re.compile(rf"^{_LABEL}(\.{_LABEL})+$")
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Tuple[Optional[str], Dict[str, Any]]:
    """(path, data) of the first configuration file present; (None, {}) when there is none."""
    for p in files:
        if os.path.isfile(p):
            return p, _read_yaml_file(p)
    return None, {}


def _env_to_dict(prefix: str = "LDAP2PW_") -> Dict[str, Any]:
    """
    Convert LDAP2PW_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = [p for p in key[plen:].lower().split("__") if p]
        if not path:
            continue
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expand ${VAR} references anywhere in string values ("ldaps://${DC}:636");
    unset variables expand to "".
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and "${" in v:
            return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), v)
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(repl(x)) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans, integers and server lists in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if key_path[-1:] == ("servers",) and isinstance(obj, str):
            # env / CLI form: "dc1.example.org, dc2.example.org"
            return [s for s in re.split(r"[\s,]+", obj) if s]
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if key_path and key_path[-1] in _BOOL_KEYS:
            return to_bool(obj)
        if key_path and key_path[-1] in _INT_KEYS:
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"{'.'.join(key_path)} must be an integer, got {obj!r}")
        return obj

    return walk(cfg)


def derive_domain(fqdn: Optional[str] = None) -> str:
    """Domain part of a host name: "fw1.example.org" -> "example.org"."""
    fqdn = (fqdn if fqdn is not None else socket.getfqdn()).rstrip(".")
    if "." not in fqdn:
        return ""
    return fqdn.split(".", 1)[1]


def domain_to_base(domain: str) -> str:
    """"example.org" -> "dc=example,dc=org"."""
    return ",".join(f"dc={label}" for label in domain.rstrip(".").split(".") if label)


def parse_overrides(items: Optional[List[str]]) -> Dict[str, str]:
    """Parse ["home=/home/x", "shell=/bin/sh"] into a mapping (validated later)."""
    out: Dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Override must be key=value, got {item!r}")
        out[key.strip().lower()] = value.strip()
    return out


def _derive(cfg: Dict[str, Any], fqdn: Optional[str]) -> None:
    d = cfg["directory"]
    if not d.get("domain"):
        d["domain"] = derive_domain(fqdn)
    if not d.get("base") and d.get("domain"):
        d["base"] = domain_to_base(d["domain"])


def _validate(cfg: Dict[str, Any]) -> None:
    problems: List[str] = []
    d = cfg.get("directory", {})

    if d.get("domain") and not _DOMAIN_RE.match(str(d["domain"])):
        problems.append(f"directory.domain is not a valid domain name: {d['domain']!r}")
    if not d.get("servers") and not d.get("domain"):
        problems.append("directory.servers (no servers given and no domain to discover them from)")
    for host in d.get("servers") or []:
        if not _HOSTNAME_RE.match(str(host)):
            problems.append(f"directory.servers contains an invalid host name: {host!r}")
    if not d.get("base"):
        problems.append("directory.base")
    if d.get("auth") not in _AUTH_MODES:
        problems.append(f"directory.auth must be one of {', '.join(_AUTH_MODES)}")
    if d.get("auth") == "simple" and not d.get("bind_dn"):
        problems.append("directory.bind_dn is required for simple auth")
    if int(d.get("page_size") or 0) <= 0:
        problems.append("directory.page_size must be positive")

    f = cfg.get("filters", {})
    for what in ("users", "groups"):
        try:
            compile_pattern(f.get(what), what[:-1])
        except ValueError as exc:
            problems.append(str(exc))

    overrides = cfg.get("overrides") or {}
    if not isinstance(overrides, dict):
        problems.append("overrides must be a mapping")
    else:
        for key, value in overrides.items():
            if key not in _OVERRIDE_KEYS:
                problems.append(f"override key {key!r} not supported (allowed: {', '.join(_OVERRIDE_KEYS)})")
            elif not isinstance(value, str) or not posixpath.isabs(value) or "\0" in value or ":" in value:
                problems.append(f"override {key} must be an absolute path, got {value!r}")

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "LDAP2PW_",
    *,
    fqdn: Optional[str] = None,
    dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix LDAP2PW_, nested via __), after loading .env
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int/server lists)
      - derivation of domain and base DN (servers, when none are given, are
        discovered at connect time, see discovery.py)
      - validation (raises ConfigError)
    """
    if dotenv:
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)

    # Load file first (low precedence)
    source, file_cfg = _load_first_existing(files)

    # Env overlay
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    # Interpolate and coerce
    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _derive(merged, fqdn)
    _validate(merged)

    try:
        return AppConfig(
            app=AppSection(**merged.get("app", {})),
            directory=DirectorySection(**merged.get("directory", {})),
            schema=SchemaSection(**merged.get("schema", {})),
            filters=FiltersSection(**merged.get("filters", {})),
            overrides=dict(merged.get("overrides") or {}),
            local=LocalSection(**merged.get("local", {})),
            logging=LoggingSection(**merged.get("logging", {})),
            source=source,
        )
    except TypeError as exc:
        raise ConfigError(f"Unknown configuration key: {exc}") from exc
