"""
ssadata_shims.callgraph
=======================

The interprocedural call graph of an SSA :class:`~ssadata_shims.ssa_ir.Program`.

The call graph is a directed graph where:
- **Nodes** are :class:`~ssadata_shims.ssa_ir.Function` objects (plus
  synthetic nodes for external/library callees and a single UNKNOWN node).
- **Edges** represent call relationships, annotated with the call-site
  instruction (``Call``, ``Go`` or ``Defer``) and the resolution method.

Resolution methods
------------------
``DIRECT``
    The callee is a statically named function or method.
``CLOSURE``
    The callee is a closure created by ``MakeClosure`` at a known site.
``UNRESOLVED``
    Interface method invocations and calls through function values.  An edge
    to the synthetic UNKNOWN node is created.

The graph may be built here (:func:`build_callgraph`) or supplied by the
front end; :func:`verify_callgraph` checks that a supplied graph covers every
static call site of the program.

Public API
----------
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    build_callgraph     - build from a Program
    verify_callgraph    - check a supplied graph against a Program
    CallResolutionKind  - enum of resolution methods

Typical usage::

    from ssadata_shims.callgraph import build_callgraph

    cg = build_callgraph(program)
    for scc in cg.strongly_connected_components():
        for node in scc:
            print(node.name)
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

from .errors import CallGraphError, ErrorCode
from .ssa_ir import CALL_INSTRUCTIONS, Function, Instruction, MakeClosure, Program

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolution kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"
    CLOSURE    = "closure"
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION  = "function"      # A function with a body in the program
    EXTERNAL  = "external"      # A library function (no body)
    UNKNOWN   = "unknown"       # Synthetic sink for unresolved calls


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id : str
        Unique identifier: the function's full name, or a descriptive string
        for the synthetic UNKNOWN node.
    name : str
        Human-readable name.
    kind : NodeKind
        What this node represents.
    function : Function or None
        The underlying SSA function (``None`` for UNKNOWN).
    out_edges / in_edges : list[CallGraphEdge]
        Outgoing and incoming call edges.
    """

    __slots__ = ("id", "name", "kind", "function", "out_edges", "in_edges")

    def __init__(
        self,
        node_id: str,
        name: str,
        kind: NodeKind = NodeKind.FUNCTION,
        function: Optional[Function] = None,
    ) -> None:
        self.id: str = node_id
        self.name: str = name
        self.kind: NodeKind = kind
        self.function = function
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def callees(self) -> List[CallGraphNode]:
        return [e.callee for e in self.out_edges]

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A directed edge in the call graph representing one call site.

    Attributes
    ----------
    caller, callee : CallGraphNode
    site : Instruction or None
        The ``Call``/``Go``/``Defer`` instruction.  ``None`` for edges a front
        end supplies without site information.
    resolution : CallResolutionKind
    """

    __slots__ = ("caller", "callee", "site", "resolution")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        site: Optional[Instruction] = None,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.site = site
        self.resolution = resolution

    @property
    def line(self) -> int:
        return self.site.pos.line if self.site is not None else 0

    def __repr__(self) -> str:
        loc = f" @ line {self.line}" if self.line else ""
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name}, "
            f"{self.resolution.value}{loc})"
        )

    def __hash__(self) -> int:
        return hash((self.caller.id, self.callee.id, id(self.site)))

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphEdge):
            return (
                self.caller.id == other.caller.id
                and self.callee.id == other.callee.id
                and self.site is other.site
            )
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by node id, in creation order.
    edges : list[CallGraphEdge]
    unknown : CallGraphNode
        The synthetic UNKNOWN node.
    """

    def __init__(self, program: Optional[Program] = None) -> None:
        self.program = program
        self.nodes: OrderedDict[str, CallGraphNode] = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.unknown = CallGraphNode(
            node_id="__UNKNOWN__",
            name="<unknown>",
            kind=NodeKind.UNKNOWN,
        )
        self.nodes[self.unknown.id] = self.unknown

    # ----- node management --------------------------------------------------

    def get_or_create_node(self, function: Function) -> CallGraphNode:
        """Return the node for *function*, creating it on first use."""
        fid = function.full_name
        node = self.nodes.get(fid)
        if node is not None:
            return node
        kind = NodeKind.EXTERNAL if function.is_external else NodeKind.FUNCTION
        node = CallGraphNode(fid, fid, kind, function)
        self.nodes[fid] = node
        return node

    def node_for_function(self, function: Function) -> Optional[CallGraphNode]:
        return self.nodes.get(function.full_name)

    # ----- edge management --------------------------------------------------

    def add_edge(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        site: Optional[Instruction] = None,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> CallGraphEdge:
        """Create a call edge and wire it up."""
        edge = CallGraphEdge(caller, callee, site, resolution)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    def remove_edge(self, edge: CallGraphEdge) -> None:
        self.edges.remove(edge)
        edge.caller.out_edges.remove(edge)
        edge.callee.in_edges.remove(edge)

    def has_edge(
        self,
        caller: Function,
        callee: Function,
        site: Optional[Instruction] = None,
    ) -> bool:
        """Is there an edge ``caller -> callee`` (for *site*, if given)?

        Edges recorded without a site match any site.
        """
        node = self.node_for_function(caller)
        if node is None:
            return False
        for e in node.out_edges:
            if e.callee.id != callee.full_name:
                continue
            if site is None or e.site is None or e.site is site:
                return True
        return False

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        if node.is_recursive:
            return True
        return any(len(scc) > 1 and node in scc
                   for scc in self.strongly_connected_components())

    # ----- whole-graph queries ----------------------------------------------

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Each SCC with more than one node represents mutual
        recursion.  The walk is iterative so deep call chains do not hit the
        interpreter's recursion limit.
        """
        counter = 0
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        for root in self.nodes.values():
            if root.id in index:
                continue
            work = [(root, 0)]
            while work:
                v, i = work[-1]
                if i == 0:
                    index[v.id] = lowlink[v.id] = counter
                    counter += 1
                    stack.append(v)
                    on_stack.add(v.id)
                if i < len(v.out_edges):
                    work[-1] = (v, i + 1)
                    w = v.out_edges[i].callee
                    if w.id not in index:
                        work.append((w, 0))
                    elif w.id in on_stack:
                        lowlink[v.id] = min(lowlink[v.id], index[w.id])
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent.id] = min(lowlink[parent.id], lowlink[v.id])
                if lowlink[v.id] == index[v.id]:
                    scc: List[CallGraphNode] = []
                    while True:
                        w = stack.pop()
                        on_stack.discard(w.id)
                        scc.append(w)
                        if w.id == v.id:
                            break
                    result.append(scc)

        return result

    def topological_order(self) -> List[CallGraphNode]:
        """Nodes callee-first; nodes within an SCC in discovery order."""
        sccs = self.strongly_connected_components()
        return [node for scc in sccs for node in scc]

    def bottom_up_order(self) -> List[CallGraphNode]:
        """Alias for :meth:`topological_order` — callees before callers."""
        return self.topological_order()

    def top_down_order(self) -> List[CallGraphNode]:
        """Callers before callees."""
        return list(reversed(self.topological_order()))

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        by_kind = {k: 0 for k in CallResolutionKind}
        for e in self.edges:
            by_kind[e.resolution] += 1
        sccs = self.strongly_connected_components()
        return {
            "functions": sum(1 for n in self.nodes.values()
                             if n.kind == NodeKind.FUNCTION),
            "external_functions": sum(1 for n in self.nodes.values()
                                      if n.kind == NodeKind.EXTERNAL),
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "direct_calls": by_kind[CallResolutionKind.DIRECT],
            "closure_calls": by_kind[CallResolutionKind.CLOSURE],
            "unresolved_calls": by_kind[CallResolutionKind.UNRESOLVED],
            "sccs": len(sccs),
            "recursive_sccs": sum(1 for scc in sccs if len(scc) > 1),
            "self_recursive_functions": sum(1 for n in self.nodes.values()
                                            if n.is_recursive),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
            NodeKind.UNKNOWN:  'style=filled, fillcolor="#ffcccc", shape=diamond',
        }
        for n in self.nodes.values():
            attrs = kind_attrs.get(n.kind, "")
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{n.id}" [label="{escaped}", {attrs}];')

        res_attrs = {
            CallResolutionKind.DIRECT: "",
            CallResolutionKind.CLOSURE: ", style=dashed, color=blue",
            CallResolutionKind.UNRESOLVED: ", style=dotted, color=red",
        }
        for e in self.edges:
            attrs = res_attrs.get(e.resolution, "")
            elabel = e.resolution.value
            if e.line:
                elabel += f":{e.line}"
            lines.append(
                f'  "{e.caller.id}" -> "{e.callee.id}" '
                f'[label="{elabel}"{attrs}];'
            )
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ---------------------------------------------------------------------------
# Construction and verification
# ---------------------------------------------------------------------------

def build_callgraph(program: Program, include_external: bool = True) -> CallGraph:
    """Build the call graph of *program*.

    Parameters
    ----------
    program : Program
    include_external : bool, optional
        If ``True`` (default), external callees get EXTERNAL nodes; otherwise
        calls to them are routed to the UNKNOWN node.
    """
    cg = CallGraph(program)
    functions = list(program.all_functions())
    for fn in functions:
        cg.get_or_create_node(fn)

    for fn in functions:
        caller = cg.get_or_create_node(fn)
        for instr in fn.instructions():
            if not isinstance(instr, CALL_INSTRUCTIONS):
                continue
            common = instr.call
            callee = common.static_callee()
            if callee is None:
                cg.add_edge(caller, cg.unknown, instr, CallResolutionKind.UNRESOLVED)
                continue
            resolution = (CallResolutionKind.CLOSURE
                          if isinstance(common.value, MakeClosure)
                          else CallResolutionKind.DIRECT)
            if callee.is_external and not include_external:
                cg.add_edge(caller, cg.unknown, instr, CallResolutionKind.UNRESOLVED)
                continue
            cg.add_edge(caller, cg.get_or_create_node(callee), instr, resolution)

    logger.debug("built %r for %s", cg, program.name)
    return cg


def verify_callgraph(cg: CallGraph, program: Program) -> None:
    """Check that *cg* is consistent with *program*.

    Raises
    ------
    CallGraphError
        If a static call to a function with a body has no edge, or an edge
        leaves a function that is not part of the program.
    """
    known = program.function_index()
    for edge in cg.edges:
        caller = edge.caller
        if caller.kind == NodeKind.FUNCTION and caller.id not in known:
            raise CallGraphError(
                f"call edge {edge!r} leaves a function outside the program",
                code=ErrorCode.FOREIGN_CALL_EDGE, function=caller.id,
            )
    for fn in known.values():
        for instr in fn.instructions():
            if not isinstance(instr, CALL_INSTRUCTIONS):
                continue
            callee = instr.call.static_callee()
            if callee is None or callee.is_external:
                continue
            if not cg.has_edge(fn, callee, instr):
                raise CallGraphError(
                    f"no call-graph edge for call to {callee.full_name}",
                    code=ErrorCode.MISSING_CALL_EDGE,
                    function=fn.full_name, position=instr.pos,
                )


def find_recursive_functions(cg: CallGraph) -> List[Set[CallGraphNode]]:
    """Return a list of sets of mutually-recursive functions.

    Singleton sets indicate direct self-recursion.
    """
    result: List[Set[CallGraphNode]] = []
    for scc in cg.strongly_connected_components():
        if len(scc) == 1:
            if scc[0].is_recursive:
                result.append({scc[0]})
        else:
            result.append(set(scc))
    return result


__all__ = [
    "CallResolutionKind",
    "NodeKind",
    "CallGraphNode",
    "CallGraphEdge",
    "CallGraph",
    "build_callgraph",
    "verify_callgraph",
    "find_recursive_functions",
]
