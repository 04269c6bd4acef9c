# ssadata_shims/ctrlflow_analyses.py
"""
Control-flow analyses for ssadata-shims.

This module provides analyses that reason about the *structure* of control
flow (loops, paths, dominance, reachability) rather than propagating
abstract data values, which is the job of :mod:`taint_analysis`.

All analyses consume a :class:`~ssadata_shims.ssa_ir.Function` viewed as a
graph of basic blocks.

Principal analyses
------------------
- DominatorTree
- NaturalLoopDetector
- reachable_blocks / exit_reachable_avoiding

Usage example
-------------
    from ssadata_shims.ctrlflow_analyses import NaturalLoopDetector

    for loop in NaturalLoopDetector(fn).detect():
        print(f"loop at block {loop.header}: body {sorted(loop.body)}, "
              f"{len(loop.exit_edges)} exits")
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple,
)

from .ssa_ir import Return


# ---------------------------------------------------------------------------
# The graph protocol
# ---------------------------------------------------------------------------
# We program against a structural protocol so the module works with both
# real functions and lightweight mocks in tests.
#
# A "CfgNode" must expose:
#   .id            : int | str          — unique identifier
#   .successors    : Sequence[CfgNode]
#   .predecessors  : Sequence[CfgNode]
#
# A "Cfg" must expose:
#   .entry         : CfgNode
#   .nodes         : Sequence[CfgNode]  — all nodes (blocks)

CfgNode = Any
Cfg = Any


def _nid(node: CfgNode) -> Any:
    """Return a hashable id for a CFG node."""
    if hasattr(node, "id"):
        return node.id
    return id(node)


def _successors(node: CfgNode) -> List[CfgNode]:
    return list(getattr(node, "successors", []) or [])


def _predecessors(node: CfgNode) -> List[CfgNode]:
    return list(getattr(node, "predecessors", []) or [])


def _all_nodes(cfg: Cfg) -> List[CfgNode]:
    return list(getattr(cfg, "nodes", []) or [])


# ===================================================================
#  1. Dominator Tree
# ===================================================================

class DominatorTree:
    """
    Dominator tree, computed with the Cooper–Harvey–Kennedy iterative
    algorithm over a reverse post-order numbering.

    Nodes unreachable from the entry have no immediate dominator and are
    dominated by nothing.

    Attributes after .compute():
        idom              : Dict[node_id, node_id]  — immediate dominator
                            (the entry maps to itself)
        dom_tree_children : Dict[node_id, List[node_id]]
        depth             : Dict[node_id, int]  — depth in the dominator tree
    """

    def __init__(self, cfg: Cfg):
        self.cfg = cfg
        self._nodes: List[CfgNode] = _all_nodes(cfg)
        self._node_map: Dict[Any, CfgNode] = {_nid(n): n for n in self._nodes}
        self.idom: Dict[Any, Any] = {}
        self.dom_tree_children: Dict[Any, List[Any]] = defaultdict(list)
        self.depth: Dict[Any, int] = {}
        self.rpo: List[Any] = []
        self._computed = False

    # ---- public API --------------------------------------------------

    def compute(self) -> "DominatorTree":
        if self._computed:
            return self
        if self.cfg.entry is not None:
            self._compute_idom()
            self._build_dom_tree()
            self._compute_depth()
        self._computed = True
        return self

    def dominates(self, a_id: Any, b_id: Any) -> bool:
        """Return True if *a* dominates *b* (a dom b)."""
        self.compute()
        if b_id not in self.idom:
            return False
        cur = b_id
        while True:
            if cur == a_id:
                return True
            parent = self.idom.get(cur)
            if parent is None or parent == cur:
                return False
            cur = parent

    def strictly_dominates(self, a_id: Any, b_id: Any) -> bool:
        return a_id != b_id and self.dominates(a_id, b_id)

    def is_reachable(self, node_id: Any) -> bool:
        self.compute()
        return node_id in self.idom

    # ---- internals ---------------------------------------------------

    def _compute_idom(self):
        entry = self.cfg.entry
        entry_id = _nid(entry)

        # iterative DFS for RPO
        finish: List[Any] = []
        visited: Set[Any] = set()
        stack: List[Tuple[CfgNode, int]] = [(entry, 0)]
        visited.add(entry_id)
        while stack:
            node, idx = stack[-1]
            succs = _successors(node)
            if idx < len(succs):
                stack[-1] = (node, idx + 1)
                child = succs[idx]
                if _nid(child) not in visited:
                    visited.add(_nid(child))
                    stack.append((child, 0))
            else:
                stack.pop()
                finish.append(_nid(node))

        self.rpo = list(reversed(finish))
        rpo_num: Dict[Any, int] = {nid: i for i, nid in enumerate(self.rpo)}
        idom: Dict[Any, Any] = {entry_id: entry_id}

        def _intersect(b1: Any, b2: Any) -> Any:
            while b1 != b2:
                while rpo_num[b1] > rpo_num[b2]:
                    b1 = idom[b1]
                while rpo_num[b2] > rpo_num[b1]:
                    b2 = idom[b2]
            return b1

        changed = True
        while changed:
            changed = False
            for nid in self.rpo:
                if nid == entry_id:
                    continue
                preds = [_nid(p) for p in _predecessors(self._node_map[nid])
                         if _nid(p) in idom]
                if not preds:
                    continue
                new_idom = preds[0]
                for p in preds[1:]:
                    new_idom = _intersect(new_idom, p)
                if idom.get(nid) != new_idom:
                    idom[nid] = new_idom
                    changed = True
        self.idom = idom

    def _build_dom_tree(self):
        self.dom_tree_children = defaultdict(list)
        for nid, idom_id in self.idom.items():
            if idom_id != nid:
                self.dom_tree_children[idom_id].append(nid)

    def _compute_depth(self):
        entry_id = _nid(self.cfg.entry)
        self.depth = {entry_id: 0}
        queue: Deque[Any] = deque([entry_id])
        while queue:
            nid = queue.popleft()
            for child in self.dom_tree_children.get(nid, []):
                if child not in self.depth:
                    self.depth[child] = self.depth[nid] + 1
                    queue.append(child)


# ===================================================================
#  2. Natural Loop Detection
# ===================================================================

@dataclass
class NaturalLoop:
    """
    A natural loop of the CFG.

    Attributes
    ----------
    header       : node id of the loop header (dominates all body nodes)
    body         : frozenset of node ids constituting the loop body
    back_edges   : list of (tail, header) back-edge pairs
    exit_edges   : list of (body_node, outside_node) edges leaving the loop
    preheader    : the unique predecessor of header outside the loop, if any
    depth        : nesting depth (1 = outermost)
    parent       : header id of the enclosing loop, or None
    children     : header ids of immediately nested loops
    """
    header: Any
    body: FrozenSet[Any]
    back_edges: List[Tuple[Any, Any]]
    exit_edges: List[Tuple[Any, Any]] = field(default_factory=list)
    preheader: Optional[Any] = None
    depth: int = 1
    parent: Optional[Any] = None
    children: List[Any] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.body)

    @property
    def has_exits(self) -> bool:
        return bool(self.exit_edges)


class NaturalLoopDetector:
    """
    Detect all natural loops in a CFG.

    Algorithm:
    1. Compute dominator tree.
    2. Identify back-edges (edges n→h where h dominates n).
    3. For each header, compute the loop body by reverse reachability from
       its back-edge tails, stopping at the header.
    4. Compute exit edges, preheaders and nesting.

    Loops sharing a header are merged, so there is one loop per header.
    """

    def __init__(self, cfg: Cfg, domtree: Optional[DominatorTree] = None):
        self.cfg = cfg
        self.domtree = domtree or DominatorTree(cfg)
        self._loops: List[NaturalLoop] = []
        self._detected = False

    def detect(self) -> List[NaturalLoop]:
        """Return all natural loops, outermost first (ties by header id)."""
        if self._detected:
            return list(self._loops)

        self.domtree.compute()
        nodes = [n for n in _all_nodes(self.cfg) if self.domtree.is_reachable(_nid(n))]
        node_map = {_nid(n): n for n in nodes}

        header_to_tails: Dict[Any, List[Any]] = defaultdict(list)
        for node in nodes:
            nid = _nid(node)
            for succ in _successors(node):
                sid = _nid(succ)
                if self.domtree.dominates(sid, nid):
                    header_to_tails[sid].append(nid)

        loop_objects: Dict[Any, NaturalLoop] = {}
        for header, tails in header_to_tails.items():
            body: Set[Any] = {header}
            worklist: Deque[Any] = deque()
            for tail in tails:
                if tail not in body:
                    body.add(tail)
                    worklist.append(tail)
            while worklist:
                nid = worklist.popleft()
                for pred in _predecessors(node_map[nid]):
                    pid = _nid(pred)
                    if pid in node_map and pid not in body:
                        body.add(pid)
                        worklist.append(pid)

            exits: List[Tuple[Any, Any]] = []
            for nid in sorted(body, key=str):
                for succ in _successors(node_map[nid]):
                    if _nid(succ) not in body:
                        exits.append((nid, _nid(succ)))

            outer_preds = [_nid(p) for p in _predecessors(node_map[header])
                           if _nid(p) not in body]
            loop_objects[header] = NaturalLoop(
                header=header,
                body=frozenset(body),
                back_edges=[(t, header) for t in tails],
                exit_edges=exits,
                preheader=outer_preds[0] if len(outer_preds) == 1 else None,
            )

        # Loop A is nested in loop B if A.body ⊂ B.body
        headers_by_size = sorted(loop_objects, key=lambda h: len(loop_objects[h].body))
        for i, h1 in enumerate(headers_by_size):
            inner = loop_objects[h1]
            for h2 in headers_by_size[i + 1:]:
                outer = loop_objects[h2]
                if inner.body < outer.body:
                    inner.parent = h2
                    outer.children.append(h1)
                    break

        for h, loop in loop_objects.items():
            depth, p = 1, loop.parent
            while p is not None:
                depth += 1
                p = loop_objects[p].parent
            loop.depth = depth

        self._loops = sorted(loop_objects.values(), key=lambda l: (l.depth, str(l.header)))
        self._detected = True
        return list(self._loops)

    def loop_for_node(self, node_id: Any) -> Optional[NaturalLoop]:
        """Return the innermost loop containing *node_id*, or None."""
        self.detect()
        best: Optional[NaturalLoop] = None
        for loop in self._loops:
            if node_id in loop.body and (best is None or loop.depth > best.depth):
                best = loop
        return best

    def nesting_depth(self, node_id: Any) -> int:
        loop = self.loop_for_node(node_id)
        return loop.depth if loop else 0


# ===================================================================
#  3. Reachability
# ===================================================================

def reachable_blocks(cfg: Cfg, start: Optional[CfgNode] = None) -> Set[Any]:
    """Ids of the nodes reachable from *start* (default: the entry)."""
    start = start if start is not None else cfg.entry
    if start is None:
        return set()
    seen: Set[Any] = {_nid(start)}
    queue: Deque[CfgNode] = deque([start])
    while queue:
        node = queue.popleft()
        for succ in _successors(node):
            sid = _nid(succ)
            if sid not in seen:
                seen.add(sid)
                queue.append(succ)
    return seen


def is_return_block(node: CfgNode) -> bool:
    instrs = getattr(node, "instrs", None)
    return bool(instrs) and isinstance(instrs[-1], Return)


def exit_reachable_avoiding(
    start: CfgNode,
    covered: Callable[[CfgNode], bool],
    is_exit: Callable[[CfgNode], bool] = is_return_block,
) -> bool:
    """
    Is there a path from the end of *start* to an exit that passes through
    no *covered* node?

    *start* itself is not tested against *covered*; the caller decides
    whether the remainder of *start* already covers the path.  Paths that
    revisit *start* through a back edge do test it.
    """
    if is_exit(start):
        return True
    seen: Set[Any] = set()
    queue: Deque[CfgNode] = deque(_successors(start))
    while queue:
        node = queue.popleft()
        nid = _nid(node)
        if nid in seen:
            continue
        seen.add(nid)
        if covered(node):
            continue
        if is_exit(node):
            return True
        queue.extend(_successors(node))
    return False


__all__ = [
    "DominatorTree",
    "NaturalLoop",
    "NaturalLoopDetector",
    "reachable_blocks",
    "is_return_block",
    "exit_reachable_avoiding",
]
