import random

import pytest

from ldap2pw.core.models import (
    Action,
    ChangeResult,
    GroupRecord,
    Outcome,
    UserRecord,
    describe,
    flatten_members,
    parse_members,
)


def test_flatten_is_sorted_and_order_independent():
    names = ["des", "bob", "Zed", "alice", "bob"]
    first = flatten_members(names)
    shuffled = list(names)
    random.Random(7).shuffle(shuffled)
    assert first == flatten_members(shuffled) == "Zed,alice,bob,des"   # codepoint order, duplicates dropped
    assert flatten_members([]) == ""


def test_parse_members_accepts_store_and_canonical_forms():
    assert parse_members("bob des  alice") == {"alice", "bob", "des"}
    assert parse_members("bob,des") == {"bob", "des"}
    assert parse_members(["bob", "", "des"]) == {"bob", "des"}
    assert parse_members(None) == set() and parse_members("") == set()


def test_record_equality_ignores_dn_and_backrefs():
    a = UserRecord("bob", 1001, 1000, "Bob", "/home/bob", "/bin/sh", dn="cn=bob,ou=A")
    b = UserRecord("bob", 1001, 1000, "Bob", "/home/bob", "/bin/sh", dn="cn=bob,ou=B")
    b.groups.add("staff")
    assert a == b
    assert a.fields() == (1001, 1000, "Bob", "/home/bob", "/bin/sh")
    assert GroupRecord("staff", 1000, "bob", dn="x").fields() == (1000, "bob")


def test_describe_uses_pw_flags_in_stable_order():
    assert describe(Action.CREATE_GROUP, "kenneth", {"gid": 1003}) == "create-group kenneth -g 1003"
    assert describe(Action.MODIFY_GROUP, "staff", {"members": "bob,des", "gid": 1000}) == (
        "modify-group staff -g 1000 -M bob,des"
    )
    line = describe(
        Action.CREATE_USER,
        "kenneth",
        {"uid": 1003, "gid": 1003, "gecos": "Kenneth K", "home": "/home/kenneth", "shell": "/bin/sh"},
    )
    assert line == "create-user kenneth -u 1003 -g 1003 -c 'Kenneth K' -d /home/kenneth -s /bin/sh"
    assert describe(Action.DELETE_USER, "old") == "delete-user old"
    assert Action.MODIFY_USER.verb == "usermod"


def test_change_result_status_mapping():
    assert ChangeResult("user", "a", Outcome.NOOP).status == "UNCHANGED"
    assert ChangeResult("user", "a", Outcome.SKIPPED, reason="protected").status == "SKIP"
    assert ChangeResult("user", "a", Outcome.FAILED, action=Action.CREATE_USER).status == "ERROR"
    assert ChangeResult("group", "g", Outcome.APPLIED, action=Action.CREATE_GROUP).status == "CREATED"
    assert ChangeResult("group", "g", Outcome.APPLIED, action=Action.MODIFY_GROUP).status == "UPDATED"
    assert ChangeResult("user", "a", Outcome.APPLIED, action=Action.DELETE_USER, dry_run=True).status == "DELETED"


def test_applied_result_without_action_is_rejected():
    with pytest.raises(ValueError):
        ChangeResult("user", "a", Outcome.APPLIED).status
