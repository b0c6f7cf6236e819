"""Tree and branch models.

A tree groups branches; the branches of one tree form a forest linked by
parent_branch_id. The forest is never stored: it is rebuilt from the flat
branch list on every read by build_branch_tree().
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum


class BranchType(str, Enum):
    CONVERSATION = "conversation"
    IMPLEMENTATION = "implementation"
    EXPLORATION = "exploration"


class BranchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    FAILED = "failed"


@dataclass
class Branch:
    id: str
    tree_id: str
    session_id: str
    parent_branch_id: str | None = None
    fork_from_message_id: int | None = None
    branch_type: BranchType = BranchType.CONVERSATION
    status: BranchStatus = BranchStatus.ACTIVE
    title: str | None = None
    summary: str | None = None
    model: str | None = None
    context_snapshot: str | None = None
    collapsed: bool = False
    created_at: str = ""
    updated_at: str = ""
    children: list[Branch] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return self.parent_branch_id is None

    def walk(self):
        """Depth-first iteration over this branch and its descendants."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass
class Tree:
    id: str
    name: str
    project: str | None = None
    working_directory: str | None = None
    created_at: str = ""
    updated_at: str = ""
    archived: bool = False
    branches: list[Branch] = field(default_factory=list)
    message_count: int = 0

    def find_branch(self, branch_id: str) -> Branch | None:
        for root in self.branches:
            for branch in root.walk():
                if branch.id == branch_id:
                    return branch
        return None


def build_branch_tree(branches: list[Branch]) -> list[Branch]:
    """Assemble a flat branch list into a forest and return its roots.

    A branch whose parent is missing from *branches* becomes a root, so
    partial slices load cleanly. Input objects are not mutated: each call
    works on fresh copies, which makes the operation idempotent. Sibling
    order follows input order.
    """
    nodes: dict[str, Branch] = {}
    order: list[str] = []
    for branch in branches:
        if branch.id in nodes:
            continue
        nodes[branch.id] = replace(branch, children=[])
        order.append(branch.id)

    roots: list[Branch] = []
    for branch_id in order:
        node = nodes[branch_id]
        parent_id = node.parent_branch_id
        parent = nodes.get(parent_id) if parent_id else None
        if parent is None or parent_id == node.id or _creates_cycle(nodes, node):
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def _creates_cycle(nodes: dict[str, Branch], node: Branch) -> bool:
    seen = {node.id}
    current = node.parent_branch_id
    while current is not None and current in nodes:
        if current in seen:
            return True
        seen.add(current)
        current = nodes[current].parent_branch_id
    return False
