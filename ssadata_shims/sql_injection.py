"""
ssadata_shims/sql_injection.py
==============================

SQL-injection detection: externally-controlled data reaching the query
text of a ``database/sql`` call.

For every function with a body (enclosing functions before the closures
they create, so captured values carry the taint they had at capture time)
the detector runs the taint engine against the callee summaries and
inspects each call:

1. a sink call whose query-text argument carries the ``SOURCE`` label is
   reported at the sink call;
2. a call to a summarized function that passes ``SOURCE``-labelled data
   into a parameter, or into a captured variable of a closure callee, with
   recorded *parameter sinks* is reported at each of those inner sink calls.

Trailing (bind) arguments of a sink are never inspected.  Each sink call
site is reported at most once however many paths reach it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .interproc_analysis import SummaryCache
from .ssa_helper import call_inputs, iter_calls, user_callee
from .ssa_ir import Function, Instruction, MakeClosure, Program, Value
from .taint_analysis import SOURCE, Label, ObjectKey, TaintEngine
from .taint_catalog import TaintCatalog, TaintSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class InjectionSite:
    """
    A sink call whose query text may carry request data.

    Attributes:
        call: The sink Call / Go / Defer instruction
        function: The function containing ``call``
        sink: The catalog entry that matched
        via: The call in another function that passed the tainted data
            into ``function``, if the flow is interprocedural
    """
    call: Instruction
    function: Function
    sink: Optional[TaintSink]
    via: Optional[Instruction] = None


class SqlInjectionDetector:
    """
    Usage:
        cache = build_summaries(program, callgraph, catalog)
        sites = SqlInjectionDetector(program, catalog, cache).run()
    """

    def __init__(self, program: Program, catalog: TaintCatalog, summaries: SummaryCache):
        self.program = program
        self.catalog = catalog
        self.summaries = summaries
        self._engines: Dict[str, TaintEngine] = {}

    def run(self) -> List[InjectionSite]:
        sites: List[InjectionSite] = []
        seen: Set[int] = set()

        def report(site: InjectionSite) -> None:
            if id(site.call) in seen:
                return
            seen.add(id(site.call))
            sites.append(site)

        for fn in self.program.all_functions():
            if fn.is_external:
                continue
            engine = self.analyze_function(fn)
            for instr, common in iter_calls(fn):
                query = self.catalog.query_argument(common)
                if query is not None and SOURCE in engine.labels(query):
                    report(InjectionSite(instr, fn, self.catalog.sink_for_call(common)))

                callee = user_callee(common)
                summary = self.summaries.get(callee) if callee is not None else None
                if summary is None:
                    continue
                inputs = call_inputs(common, callee)
                for index, inner in summary.param_sinks.items():
                    if index >= len(inputs) or SOURCE not in engine.labels(inputs[index]):
                        continue
                    for sink_call in sorted(inner, key=_site_order):
                        inner_fn = sink_call.parent
                        report(InjectionSite(
                            sink_call, inner_fn,
                            self.catalog.sink_for_call(sink_call.call), via=instr,
                        ))

        logger.debug("sql injection: %d sink sites tainted", len(sites))
        return sites

    def analyze_function(self, fn: Function) -> TaintEngine:
        """Run the taint engine on *fn*, seeding captured variables."""
        seeds, field_seeds = self._closure_seeds(fn)
        engine = TaintEngine(fn, self.catalog, self.summaries.get,
                             seeds=seeds, field_seeds=field_seeds)
        engine.run()
        self._engines[fn.full_name] = engine
        return engine

    def _closure_seeds(
        self, fn: Function,
    ) -> Tuple[Dict[Value, Set[Label]], Dict[Tuple[ObjectKey, str], Set[Label]]]:
        seeds: Dict[Value, Set[Label]] = {}
        field_seeds: Dict[Tuple[ObjectKey, str], Set[Label]] = {}
        parent = fn.parent
        if parent is None or parent.full_name not in self._engines:
            return seeds, field_seeds
        outer = self._engines[parent.full_name]
        for instr in parent.instructions():
            if not isinstance(instr, MakeClosure) or instr.fn is not fn:
                continue
            for fv, binding in zip(fn.free_vars, instr.bindings):
                seeds.setdefault(fv, set()).update(outer.labels(binding))
                for obj in outer.objects(binding):
                    for fname, labels in outer.state.fields.fields_of(obj).items():
                        field_seeds.setdefault((fv, fname), set()).update(labels)
        return seeds, field_seeds


def _site_order(instr: Instruction) -> Tuple[str, int, int]:
    block = instr.block
    fn = instr.parent
    return (fn.full_name if fn else "", block.index if block else -1, instr.block_index())


def find_sql_injections(
    program: Program, catalog: TaintCatalog, summaries: SummaryCache,
) -> List[InjectionSite]:
    return SqlInjectionDetector(program, catalog, summaries).run()


__all__ = ["InjectionSite", "SqlInjectionDetector", "find_sql_injections"]
