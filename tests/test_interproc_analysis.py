# tests/test_interproc_analysis.py
"""
Tests for function summaries and the bottom-up summary builder.
"""

import pytest

from ssadata_shims.callgraph import build_callgraph
from ssadata_shims.errors import ErrorCode, InternalAnalysisError
from ssadata_shims.interproc_analysis import (
    FunctionSummary, SummaryBuilder, SummaryCache, build_summaries,
    summarize_function,
)
from ssadata_shims.ir_builder import FunctionBuilder
from ssadata_shims.taint_analysis import SOURCE, TaintEngine
from ssadata_shims.taint_catalog import create_default_catalog

from tests.conftest import (
    DB, DB_QUERY, FORM_VALUE, REQUEST, handler_builder, make_program,
)


def _identity():
    b = FunctionBuilder("identity", [("s", "string")], ["string"])
    b.ret(b.param("s"))
    return b.build()


def _constant():
    b = FunctionBuilder("constant", [("s", "string")], ["string"])
    b.ret("fixed")
    return b.build()


class TestFunctionSummary:

    def test_identity_returns_param(self, catalog):
        summary, _ = summarize_function(_identity(), catalog)
        assert summary.returns == {0: frozenset({0})}
        assert summary.param_to_outputs() == {0: {("return", 0)}}
        assert not summary.is_empty

    def test_no_flow_is_empty(self, catalog):
        summary, _ = summarize_function(_constant(), catalog)
        assert summary.is_empty
        assert summary.param_to_outputs() == {}

    def test_source_inside_callee(self, catalog):
        b = FunctionBuilder("name", [("r", REQUEST)], ["string"])
        b.ret(b.call(FORM_VALUE, b.param("r"), "name"))
        summary, _ = summarize_function(b.build(), catalog)
        assert SOURCE in summary.returns[0]
        assert ("return", 0) in summary.source_outputs()

    def test_multiple_results(self, catalog):
        b = FunctionBuilder("split", [("a", "string"), ("b", "string")],
                            ["string", "string"])
        b.ret(b.param("b"), "x")
        summary, _ = summarize_function(b.build(), catalog)
        assert summary.returns == {0: frozenset({1})}

    def test_returned_struct_field(self, catalog):
        b = FunctionBuilder("wrap", [("s", "string")], ["*main.Box"])
        box = b.composite("main.Box", {"V": b.param("s")})
        b.ret(box)
        summary, _ = summarize_function(b.build(), catalog)
        assert summary.returned_fields == {(0, "V"): frozenset({0})}
        assert ("field", 0, "V") in summary.param_to_outputs()[0]

    def test_output_parameter(self, catalog):
        b = FunctionBuilder("fill", [("dst", "*main.Box"), ("s", "string")])
        b.store_field(b.param("dst"), "V", b.param("s"))
        b.ret()
        summary, _ = summarize_function(b.build(), catalog)
        assert summary.out_fields == {(0, "V"): frozenset({1})}

    def test_output_slice_contents(self, catalog):
        b = FunctionBuilder("put", [("dst", "[]string"), ("s", "string")])
        b.store(b.index_addr(b.param("dst"), 0), b.param("s"))
        b.ret()
        summary, _ = summarize_function(b.build(), catalog)
        assert summary.out_contents == {0: frozenset({1})}

    def test_param_sinks(self, catalog):
        b = FunctionBuilder("lookup", [("db", DB), ("name", "string")])
        q = b.concat("SELECT * FROM users WHERE name = '", b.param("name"), "'")
        sink = b.call(DB_QUERY, b.param("db"), q)
        b.ret()
        summary, _ = summarize_function(b.build(), catalog)
        assert summary.param_sinks == {1: frozenset({sink})}

    def test_captured_variable_numbered_after_params(self, catalog):
        b = FunctionBuilder("outer")
        c = b.closure([("x", "string")], ["string"], free_vars=[("q", "string")])
        c.ret(c.concat(c.param("x"), c.free_var("q")))
        b.ret()
        b.build()
        summary, _ = summarize_function(c.fn, catalog)
        assert summary.returns == {0: frozenset({0, 1})}

    def test_repr(self):
        assert "returns=0" in repr(FunctionSummary("main.f"))


class TestSummaryCache:

    def test_write_once(self):
        fn = _identity()
        cache = SummaryCache()
        cache.put(fn, FunctionSummary(fn.full_name))
        with pytest.raises(InternalAnalysisError) as exc:
            cache.put(fn, FunctionSummary(fn.full_name))
        assert exc.value.code is ErrorCode.SUMMARY_REWRITE

    def test_lookup(self):
        fn = _identity()
        cache = SummaryCache()
        assert cache.get(fn) is None
        assert fn not in cache
        s = FunctionSummary(fn.full_name)
        cache.put(fn, s)
        assert cache[fn] is s
        assert fn in cache
        assert len(cache) == 1
        assert cache.all_summaries() == {"main.identity": s}


class TestSummaryBuilder:

    def test_every_function_summarized(self):
        prog = make_program(_identity(), _constant())
        cache = build_summaries(prog)
        assert len(cache) == 2

    def test_callee_summary_applied(self, catalog):
        ident = _identity()
        b = handler_builder()
        v = b.call(FORM_VALUE, b.param("r"), "id")
        out = b.call(ident, v)
        b.ret()
        prog = make_program(b.build(), ident)
        cache = build_summaries(prog, catalog=catalog)
        state = TaintEngine(b.fn, catalog, cache.get).run()
        assert state.is_tainted(out)

    def test_empty_summary_untaints(self, catalog):
        const = _constant()
        b = handler_builder()
        v = b.call(FORM_VALUE, b.param("r"), "id")
        out = b.call(const, v)
        b.ret()
        prog = make_program(b.build(), const)
        cache = build_summaries(prog, catalog=catalog)
        state = TaintEngine(b.fn, catalog, cache.get).run()
        assert not state.is_tainted(out)

    def test_transitive_chain(self, catalog):
        ident = _identity()
        mid = FunctionBuilder("mid", [("s", "string")], ["string"])
        mid.ret(mid.call(ident, mid.param("s")))
        top = FunctionBuilder("top", [("s", "string")], ["string"])
        top.ret(top.call(mid.fn, top.param("s")))
        prog = make_program(top.build(), mid.build(), ident)
        cache = build_summaries(prog, catalog=catalog)
        assert cache.get(top.fn).returns == {0: frozenset({0})}

    def test_nested_param_sinks(self, catalog):
        inner = FunctionBuilder("inner", [("db", DB), ("q", "string")])
        sink = inner.call(DB_QUERY, inner.param("db"), inner.param("q"))
        inner.ret()
        outer = FunctionBuilder("outer", [("db", DB), ("name", "string")])
        outer.call(inner.fn, outer.param("db"), outer.concat("SELECT ", outer.param("name")))
        outer.ret()
        prog = make_program(outer.build(), inner.build())
        cache = build_summaries(prog, catalog=catalog)
        assert cache.get(outer.fn).param_sinks == {1: frozenset({sink})}

    def test_self_recursion_terminates(self, catalog):
        b = FunctionBuilder("rec", [("s", "string"), ("n", "int")], ["string"])
        base, step = b.new_block(), b.new_block()
        b.if_(b.binop("==", b.param("n"), 0), base, step)
        b.set_block(base)
        b.ret(b.param("s"))
        b.set_block(step)
        r = b.call(b.fn, b.concat(b.param("s"), "x"), b.binop("-", b.param("n"), 1))
        b.ret(r)
        prog = make_program(b.build())
        builder = SummaryBuilder(prog, catalog=catalog)
        cache = builder.build()
        assert builder.recursive_components == 1
        assert cache.get(b.fn).returns == {0: frozenset({0})}

    def test_mutual_recursion_one_unrolling(self, catalog):
        f = FunctionBuilder("f", [("s", "string")], ["string"])
        g = FunctionBuilder("g", [("s", "string")], ["string"])
        c = f.binop("==", f.param("s"), "")
        base, step = f.new_block(), f.new_block()
        f.if_(c, base, step)
        f.set_block(base)
        f.ret(f.param("s"))
        f.set_block(step)
        f.ret(f.call(g.fn, f.param("s")))
        g.ret(g.call(f.fn, g.param("s")))
        prog = make_program(f.build(), g.build())
        builder = SummaryBuilder(prog, build_callgraph(prog), catalog)
        cache = builder.build()
        assert builder.recursive_components == 1
        assert cache.get(f.fn).returns == {0: frozenset({0})}
        assert cache.get(g.fn).returns == {0: frozenset({0})}

    def test_default_catalog_used(self):
        builder = SummaryBuilder(make_program(_identity()))
        assert len(builder.catalog) == len(create_default_catalog())
