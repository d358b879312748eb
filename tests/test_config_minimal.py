import pytest

from ldap2pw.core.config import ConfigError, derive_domain, domain_to_base, load_config, parse_overrides


def _load(cli=None, **kw):
    kw.setdefault("files", ())
    kw.setdefault("fqdn", "fw1.example.org")
    return load_config(cli or {}, dotenv=False, **kw)


def test_defaults_derived_from_host_name_and_run_id_generated():
    cfg = _load()
    assert cfg.directory.domain == "example.org"
    assert cfg.directory.base == "dc=example,dc=org"
    assert cfg.directory.servers == []   # discovered at connect time
    assert cfg.directory.auth == "gssapi"
    assert cfg.schema.user_name == "sAMAccountName"
    assert cfg.local.pw_path == "/usr/sbin/pw"
    assert cfg.logging.console_level == "INFO"
    rid1 = cfg.run_id
    rid2 = cfg.run_id
    assert isinstance(rid1, str) and len(rid1) >= 8
    assert rid1 == rid2  # stable once generated


def test_cli_overrides_take_precedence():
    cfg = _load({
        "app": {"dry_run": True, "preserve": True},
        "directory": {"domain": "corp.example.net", "servers": ["dc1.corp.example.net", "dc2.corp.example.net"]},
        "overrides": {"shell": "/bin/sh"},
        "logging": {"console_level": "WARNING"},
    })
    assert cfg.app.dry_run is True and cfg.app.preserve is True
    assert cfg.directory.base == "dc=corp,dc=example,dc=net"
    assert cfg.directory.servers == ["dc1.corp.example.net", "dc2.corp.example.net"]
    assert cfg.overrides == {"shell": "/bin/sh"}
    assert cfg.logging.console_level == "WARNING"


def test_host_without_domain_needs_explicit_settings():
    with pytest.raises(ConfigError) as exc:
        _load(fqdn="localhost")
    assert "directory.servers" in str(exc.value) and "directory.base" in str(exc.value)

    cfg = _load({"directory": {"servers": ["dc1.example.org"], "base": "dc=example,dc=org"}}, fqdn="localhost")
    assert cfg.directory.domain == ""
    assert cfg.directory.servers == ["dc1.example.org"]


@pytest.mark.parametrize(
    "cli, fragment",
    [
        ({"overrides": {"uid": "0"}}, "override key 'uid' not supported"),
        ({"overrides": {"shell": "bin/sh"}}, "override shell must be an absolute path"),
        ({"overrides": {"home": "/home/x:y"}}, "override home must be an absolute path"),
        ({"filters": {"users": "(unclosed"}}, "Invalid user filter"),
        ({"directory": {"servers": ["bad host!"]}}, "invalid host name"),
        ({"directory": {"domain": "nodots"}}, "not a valid domain name"),
        ({"directory": {"auth": "simple"}}, "bind_dn is required"),
        ({"directory": {"auth": "ntlm"}}, "directory.auth must be one of"),
        ({"directory": {"page_size": "0"}}, "page_size must be positive"),
        ({"directory": {"page_size": "many"}}, "must be an integer"),
        ({"directory": {"colour": "blue"}}, "Unknown configuration key"),
    ],
)
def test_invalid_configuration_is_rejected(cli, fragment):
    with pytest.raises(ConfigError) as exc:
        _load(cli)
    assert fragment in str(exc.value)


def test_helpers():
    assert derive_domain("fw1.example.org.") == "example.org"
    assert derive_domain("fw1") == ""
    assert domain_to_base("a.b.c") == "dc=a,dc=b,dc=c"
    assert parse_overrides(["Shell=/bin/sh", "home = /var/empty"]) == {"shell": "/bin/sh", "home": "/var/empty"}
    with pytest.raises(ConfigError):
        parse_overrides(["shell"])
