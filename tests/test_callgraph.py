# tests/test_callgraph.py
"""
Tests for call-graph construction, SCC ordering and verification of a
supplied graph.
"""

import pytest

from ssadata_shims.callgraph import (
    CallResolutionKind, NodeKind, build_callgraph, find_recursive_functions,
    verify_callgraph,
)
from ssadata_shims.errors import CallGraphError, ErrorCode, MalformedProgramError
from ssadata_shims.ir_builder import FunctionBuilder

from tests.conftest import CTX, SLEEP, make_program


def _chain():
    """main -> a -> b -> time.Sleep"""
    b = FunctionBuilder("b")
    b.call(SLEEP, 1)
    b.ret()
    a = FunctionBuilder("a")
    a.call(b.fn)
    a.ret()
    m = FunctionBuilder("main")
    m.call(a.fn)
    m.ret()
    return make_program(m.build(), a.build(), b.build())


def _mutual():
    """f -> g -> f, plus a self-recursive h"""
    f = FunctionBuilder("f", [("x", "int")], ["int"])
    g = FunctionBuilder("g", [("x", "int")], ["int"])
    f.ret(f.call(g.fn, f.param("x")))
    g.ret(g.call(f.fn, g.param("x")))
    h = FunctionBuilder("h", [("n", "int")])
    h.call(h.fn, h.param("n"))
    h.ret()
    return make_program(f.build(), g.build(), h.build())


class TestBuild:

    def test_nodes_and_kinds(self):
        cg = build_callgraph(_chain())
        assert cg.nodes["main.a"].kind is NodeKind.FUNCTION
        assert cg.nodes["time.Sleep"].kind is NodeKind.EXTERNAL
        assert cg.unknown.kind is NodeKind.UNKNOWN

    def test_direct_edges(self):
        prog = _chain()
        cg = build_callgraph(prog)
        main, a = prog.lookup("main.main"), prog.lookup("main.a")
        assert cg.has_edge(main, a)
        assert not cg.has_edge(a, main)
        assert [n.name for n in cg.nodes["main.a"].callees] == ["main.b"]

    def test_exclude_external(self):
        cg = build_callgraph(_chain(), include_external=False)
        assert "time.Sleep" not in cg.nodes
        edge = cg.nodes["main.b"].out_edges[0]
        assert edge.callee is cg.unknown
        assert edge.resolution is CallResolutionKind.UNRESOLVED

    def test_invoke_is_unresolved(self):
        b = FunctionBuilder("f", [("ctx", CTX)])
        b.invoke(b.param("ctx"), "Done", type="<-chan struct{}")
        b.ret()
        cg = build_callgraph(make_program(b.build()))
        assert cg.statistics()["unresolved_calls"] == 1

    def test_closure_edge(self):
        b = FunctionBuilder("outer", [("x", "int")])
        c = b.closure(free_vars=[("x", "int")])
        c.ret()
        b.call(b.make_closure(c, b.param("x")))
        b.go(c.fn)
        b.ret()
        cg = build_callgraph(make_program(b.build()))
        kinds = [e.resolution for e in cg.nodes["main.outer"].out_edges]
        assert kinds == [CallResolutionKind.CLOSURE, CallResolutionKind.DIRECT]
        assert "main.outer$1" in cg.nodes


class TestOrdering:

    def test_callees_before_callers(self):
        cg = build_callgraph(_chain())
        order = [n.id for n in cg.bottom_up_order()]
        assert order.index("main.b") < order.index("main.a") < order.index("main.main")
        assert order.index("time.Sleep") < order.index("main.b")

    def test_top_down_is_reverse(self):
        cg = build_callgraph(_chain())
        assert cg.top_down_order() == list(reversed(cg.bottom_up_order()))

    def test_mutual_recursion_is_one_component(self):
        cg = build_callgraph(_mutual())
        sccs = [sorted(n.id for n in scc) for scc in cg.strongly_connected_components()]
        assert ["main.f", "main.g"] in sccs
        assert ["main.h"] in sccs

    def test_find_recursive_functions(self):
        cg = build_callgraph(_mutual())
        groups = [sorted(n.id for n in s) for s in find_recursive_functions(cg)]
        assert sorted(groups) == [["main.f", "main.g"], ["main.h"]]

    def test_self_recursion_flag(self):
        cg = build_callgraph(_mutual())
        assert cg.nodes["main.h"].is_recursive
        assert not cg.nodes["main.f"].is_recursive
        assert cg.is_recursive(cg.nodes["main.f"])

    def test_deep_chain_does_not_recurse(self):
        builders = [FunctionBuilder(f"f{i}") for i in range(3000)]
        for cur, nxt in zip(builders, builders[1:]):
            cur.call(nxt.fn)
        for fb in builders:
            fb.ret()
        cg = build_callgraph(make_program(*(fb.build() for fb in builders)))
        order = [n.id for n in cg.bottom_up_order()]
        assert order.index("main.f2999") < order.index("main.f0")


class TestStatistics:

    def test_counts(self):
        stats = build_callgraph(_mutual()).statistics()
        assert stats["functions"] == 3
        assert stats["direct_calls"] == 3
        assert stats["recursive_sccs"] == 1
        assert stats["self_recursive_functions"] == 1

    def test_to_dot(self):
        dot = build_callgraph(_chain()).to_dot(title="chain")
        assert dot.startswith("digraph CallGraph {")
        assert '"main.main" -> "main.a"' in dot


class TestVerify:

    def test_built_graph_verifies(self):
        prog = _chain()
        verify_callgraph(build_callgraph(prog), prog)

    def test_missing_edge(self):
        prog = _chain()
        cg = build_callgraph(prog)
        cg.remove_edge(cg.nodes["main.a"].out_edges[0])
        with pytest.raises(CallGraphError) as exc:
            verify_callgraph(cg, prog)
        assert exc.value.code is ErrorCode.MISSING_CALL_EDGE
        assert exc.value.function == "main.a"

    def test_foreign_edge(self):
        prog = _chain()
        cg = build_callgraph(prog)
        stray = FunctionBuilder("stray")
        stray.ret()
        node = cg.get_or_create_node(stray.build())
        cg.add_edge(node, cg.nodes["main.a"])
        with pytest.raises(CallGraphError) as exc:
            verify_callgraph(cg, prog)
        assert exc.value.code is ErrorCode.FOREIGN_CALL_EDGE

    def test_call_graph_error_is_malformed_program(self):
        assert issubclass(CallGraphError, MalformedProgramError)
