from conftest import FakeDirectory, group_dn, group_entry, user_dn, user_entry

from ldap2pw.core.config import SchemaSection
from ldap2pw.core.directory_harvester import DirectoryHarvester
from ldap2pw.core.filters import NameFilter


def _dir(users=(), groups=()):
    return FakeDirectory(users=dict(users), groups=dict(groups))


def test_harvest_rekeys_by_name_and_flattens_membership():
    d = _dir(
        users=[user_entry("bob", 1001, 1000, gecos="Bob"), user_entry("des", 1002, 1000), user_entry("kenneth", 1003, 1003)],
        groups=[group_entry("staff", 1000, members=["des"]), group_entry("kenneth", 1003)],
    )
    snap = DirectoryHarvester(d).harvest()

    assert sorted(snap.users) == ["bob", "des", "kenneth"]
    assert sorted(snap.groups) == ["kenneth", "staff"]
    bob = snap.users["bob"]
    assert (bob.uid, bob.gid, bob.gecos, bob.home, bob.shell) == (1001, 1000, "Bob", "/home/bob", "/bin/sh")
    # bob is only a primary member of staff; the directory omitted him
    assert snap.groups["staff"].members == "bob,des"
    assert snap.groups["kenneth"].members == "kenneth"
    assert bob.groups == {"staff"}


def test_entries_missing_required_attributes_are_skipped():
    dn, no_shell = user_entry("noshell", 1005, 1000, shell=None)
    d = _dir(
        users=[
            user_entry("ok", 1001, 1000),
            (dn, no_shell),
            ("cn=noid,ou=Users,dc=example,dc=org", {"samaccountname": ["noid"], "unixhomedirectory": ["/h"], "loginshell": ["/bin/sh"]}),
            user_entry("badid", "abc", 1000),
        ],
        groups=[group_entry("nogid", None, members=["ok"])],
    )
    snap = DirectoryHarvester(d).harvest()

    assert list(snap.users) == ["ok"]
    assert snap.groups == {}
    assert snap.skipped == 4


def test_overrides_complete_and_replace_directory_values():
    d = _dir(users=[user_entry("noshell", 1005, 1000, shell=None), user_entry("bob", 1001, 1000, shell="/bin/zsh")])
    h = DirectoryHarvester(d, overrides={"shell": "/bin/tcsh", "home": "/var/empty", "uid": "0"})
    snap = h.harvest()

    assert {u.shell for u in snap.users.values()} == {"/bin/tcsh"}
    assert {u.home for u in snap.users.values()} == {"/var/empty"}
    assert snap.users["bob"].uid == 1001   # only home/shell are overridable


def test_threshold_and_reserved_names_are_filtered_on_both_kinds():
    d = _dir(
        users=[user_entry("root", 0, 0), user_entry("svc", 999, 1000), user_entry("nobody", 65534, 65534), user_entry("bob", 1001, 1000)],
        groups=[group_entry("wheel", 0, members=["bob"]), group_entry("nogroup", 65533), group_entry("staff", 1000)],
    )
    snap = DirectoryHarvester(d).harvest()

    assert list(snap.users) == ["bob"]
    assert list(snap.groups) == ["staff"]
    assert all(u.uid >= 1000 for u in snap.users.values())
    assert all(g.gid >= 1000 for g in snap.groups.values())


def test_name_patterns_apply_before_threshold():
    d = _dir(
        users=[user_entry("fw-alice", 1001, 2000), user_entry("bob", 1002, 2000)],
        groups=[group_entry("fw-admins", 2000, members=["fw-alice", "bob"]), group_entry("other", 2001)],
    )
    snap = DirectoryHarvester(d, name_filter=NameFilter.from_strings(users="^fw-", groups="^fw-")).harvest()

    assert list(snap.users) == ["fw-alice"]
    assert list(snap.groups) == ["fw-admins"]
    # bob was filtered out, so his membership reference is dangling
    assert snap.groups["fw-admins"].members == "fw-alice"


def test_nested_membership_through_filtered_out_group():
    d = _dir(
        users=[user_entry("alice", 1001, 3000), user_entry("bob", 1002, 3000)],
        groups=[
            group_entry("ops", 2000, members=["alice"], nested=["lowid"]),
            group_entry("lowid", 500, members=["bob"]),
        ],
    )
    snap = DirectoryHarvester(d).harvest()

    assert list(snap.groups) == ["ops"]
    assert snap.groups["ops"].members == "alice,bob"


def test_cyclic_groups_resolve_without_recursion_error():
    d = _dir(
        users=[user_entry("alice", 1001, 3000), user_entry("bob", 1002, 3000)],
        groups=[
            group_entry("a", 2000, members=["alice"], nested=["b"]),
            group_entry("b", 2001, members=["bob"], nested=["a"]),
        ],
    )
    first = DirectoryHarvester(d).harvest()
    second = DirectoryHarvester(d).harvest()

    assert first.groups["a"].members == first.groups["b"].members == "alice,bob"
    assert second.groups["a"].members == first.groups["a"].members


def test_schema_and_bases_are_passed_to_the_client():
    schema = SchemaSection(user_name="uid", group_name="cn", member="memberUid")
    d = _dir(
        users=[(user_dn("bob"), {"uid": ["bob"], "uidnumber": ["1001"], "gidnumber": ["1000"],
                                 "unixhomedirectory": ["/home/bob"], "loginshell": ["/bin/sh"],
                                 "displayname": ["Bob B"]})],
        groups=[(group_dn("staff"), {"cn": ["staff"], "gidnumber": ["1000"], "memberuid": [user_dn("bob")]})],
    )
    h = DirectoryHarvester(d, schema=schema, user_base="ou=Users,dc=x", group_base="ou=Groups,dc=x")
    snap = h.harvest()

    assert snap.users["bob"].gecos == "Bob B"   # falls back to displayName
    assert snap.groups["staff"].members == "bob"
    (uf, uattrs, ubase), (gf, gattrs, gbase) = d.calls
    assert "objectclass=user" in uf and ubase == "ou=Users,dc=x" and "uid" in uattrs
    assert "objectclass=group" in gf and gbase == "ou=Groups,dc=x" and "memberUid" in gattrs


def test_duplicate_names_keep_the_last_dn(caplog):
    d = _dir(
        users=[
            ("cn=bob,ou=A,dc=example,dc=org", user_entry("bob", 1001, 1000)[1]),
            ("cn=bob,ou=B,dc=example,dc=org", user_entry("bob", 1009, 1000)[1]),
        ]
    )
    snap = DirectoryHarvester(d).harvest()
    assert snap.users["bob"].uid == 1009
    assert "Duplicate user name bob" in caplog.text
