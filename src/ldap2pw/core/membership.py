"""
Nested group resolution.

Groups reference members by DN; a member DN is either a user, another group
or unknown (dangling). The graph may contain cycles.

Resolution is a memoised depth-first traversal over an arena of GroupNode
objects. Each node moves UNRESOLVED -> IN_PROGRESS -> RESOLVED. Meeting an
IN_PROGRESS node means the traversal closed a cycle: it is reported, and the
groups on that cycle are finalised together once the traversal returns to the
first of them (Tarjan's lowlink bookkeeping), so every group on a cycle ends
up with the complete union of users reachable from any of them. The walk
keeps its own stack, so nesting depth is not limited by the interpreter
recursion limit; a group listing itself is reported as a one-group cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .models import UserRecord


class NodeState(Enum):
    UNRESOLVED = "unresolved"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


@dataclass
class GroupNode:
    dn: str
    name: str
    refs: List[str] = field(default_factory=list)
    state: NodeState = NodeState.UNRESOLVED
    # user name -> user record
    members: Dict[str, UserRecord] = field(default_factory=dict)
    # user name -> DN of the group it was found in (diagnostics only)
    provenance: Dict[str, str] = field(default_factory=dict)
    index: int = -1
    lowlink: int = -1


class MembershipGraph:
    """Arena of group nodes plus the user records (keyed by DN) they may point at."""

    def __init__(
        self,
        users: Mapping[str, UserRecord],
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.users = users
        self.nodes: Dict[str, GroupNode] = {}
        self.log = logger or logging.getLogger("ldap2pw.membership")
        self.dangling: Set[Tuple[str, str]] = set()
        self.cycles: List[List[str]] = []
        self._counter = 0
        self._stack: List[GroupNode] = []
        self._self_loops: Set[str] = set()

    def add_group(self, dn: str, name: str, refs: Iterable[str]) -> GroupNode:
        node = GroupNode(dn=dn, name=name, refs=list(refs))
        self.nodes[dn] = node
        return node

    def resolve_all(self) -> None:
        for dn in sorted(self.nodes):
            self.resolve(dn)

    def resolve(self, dn: str) -> Dict[str, UserRecord]:
        """Return the flat user membership of one group (memoised)."""
        node = self.nodes[dn]
        if node.state is NodeState.UNRESOLVED:
            self._visit(node)
        return node.members

    # ------------- Internal -------------

    def _visit(self, root: GroupNode) -> None:
        """Iterative Tarjan walk from `root`; nesting depth is bounded by memory, not the call stack."""
        self._enter(root)
        work: List[Tuple[GroupNode, Iterator[str]]] = [(root, iter(root.refs))]
        while work:
            node, refs = work[-1]
            descended = False
            for ref in refs:
                child = self.nodes.get(ref)
                if child is None:
                    self._add_user(node, ref)
                    continue
                if child.state is NodeState.UNRESOLVED:
                    self._enter(child)
                    work.append((child, iter(child.refs)))
                    descended = True
                    break
                if child.state is NodeState.IN_PROGRESS:
                    self.log.warning("Membership cycle: %s -> %s", node.name, child.name)
                    node.lowlink = min(node.lowlink, child.index)
                    if child is node:
                        self._self_loops.add(node.dn)
                self._merge(node, child)
            if descended:
                continue

            work.pop()
            if node.lowlink == node.index:
                self._finish_component(node)
            if work:
                parent = work[-1][0]
                parent.lowlink = min(parent.lowlink, node.lowlink)
                self._merge(parent, node)

    def _enter(self, node: GroupNode) -> None:
        node.state = NodeState.IN_PROGRESS
        node.index = node.lowlink = self._counter
        self._counter += 1
        self._stack.append(node)

    def _add_user(self, node: GroupNode, ref: str) -> None:
        user = self._user_by_dn(ref)
        if user is None:
            self.dangling.add((node.dn, ref))
            self.log.debug("Skipping unresolvable member %s of %s", ref, node.name)
            return
        node.members.setdefault(user.name, user)
        node.provenance.setdefault(user.name, node.dn)

    def _finish_component(self, root: GroupNode) -> None:
        component: List[GroupNode] = []
        while True:
            member = self._stack.pop()
            component.append(member)
            if member is root:
                break

        if len(component) > 1 or root.dn in self._self_loops:
            self.cycles.append(sorted(n.name for n in component))
        if len(component) > 1:
            union: Dict[str, UserRecord] = {}
            provenance: Dict[str, str] = {}
            for n in component:
                for uname, user in n.members.items():
                    union.setdefault(uname, user)
                    provenance.setdefault(uname, n.provenance.get(uname, n.dn))
            for n in component:
                n.members = dict(union)
                n.provenance = dict(provenance)

        for n in component:
            n.state = NodeState.RESOLVED
            for user in n.members.values():
                user.groups.add(n.name)
            self.log.debug(
                "Resolved %s: %s",
                n.name,
                ", ".join(f"{u}(via {n.provenance.get(u, n.dn)})" for u in sorted(n.members)) or "-",
            )

    @staticmethod
    def _merge(node: GroupNode, child: GroupNode) -> None:
        for uname, user in child.members.items():
            if uname not in node.members:
                node.members[uname] = user
                node.provenance[uname] = child.provenance.get(uname, child.dn)

    def _user_by_dn(self, dn: str) -> Optional[UserRecord]:
        return self.users.get(dn)
