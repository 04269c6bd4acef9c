"""
ssadata_shims/interproc_analysis.py
===================================

Interprocedural taint summaries.

Every function with a body is analysed once, with each input ``k`` seeded
with the label ``k`` (see :mod:`ssadata_shims.taint_analysis`).  Inputs are
the parameters, then the free variables of a closure.  The labels that reach
the function's outputs form its :class:`FunctionSummary`:

  * ``returns``          result index -> labels
  * ``returned_fields``  (result index, field) -> labels, for structs the
                         function allocates (or receives) and returns
  * ``out_contents``     input index -> labels written through that input
                         (``*p = x``, ``p[i] = x``)
  * ``out_fields``       (input index, field) -> labels (``p.f = x``)
  * ``param_sinks``      input index -> sink call sites, in the function
                         or its callees, whose query text depends on it

A call site substitutes the labels of its actual arguments, and of the
bindings of a closure callee, for the input labels, so a callee body is never
re-analysed per call site.

Ordering
--------
Summaries are built in one bottom-up walk over the strongly connected
components of the call graph (callees before callers).  Inside a recursive
component each member is first analysed with the recursive edges
contributing nothing; it is then analysed once more against those
provisional summaries and the result is final.  That is a single unrolling,
not a fixed point, so deeper recursive flows are missed.

Summaries are written exactly once into a :class:`SummaryCache` and never
mutated, which makes the cache safe to share between independent workers.

Public API
----------
    FunctionSummary   - the per-function record
    SummaryCache      - write-once store keyed by function
    SummaryBuilder    - the bottom-up driver
    summarize_function - analyse one function against a summary lookup
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from .callgraph import CallGraph, build_callgraph
from .errors import ErrorCode, InternalAnalysisError
from .ssa_helper import call_inputs, iter_calls, user_callee, value_params
from .ssa_ir import Function, Instruction, Program, Return
from .taint_analysis import (
    SOURCE, Label, SummaryLookup, TaintEngine, TaintState,
)
from .taint_catalog import TaintCatalog, create_default_catalog

logger = logging.getLogger(__name__)

Labels = FrozenSet[Label]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — SUMMARIES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class FunctionSummary:
    """
    What one call of ``function`` does with taint.

    Label sets may contain :data:`~ssadata_shims.taint_analysis.SOURCE`
    (the output is tainted whatever the arguments) and parameter indices.
    """

    function: str
    returns: Dict[int, Labels] = field(default_factory=dict)
    returned_fields: Dict[Tuple[int, str], Labels] = field(default_factory=dict)
    out_contents: Dict[int, Labels] = field(default_factory=dict)
    out_fields: Dict[Tuple[int, str], Labels] = field(default_factory=dict)
    param_sinks: Dict[int, FrozenSet[Instruction]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.returns or self.returned_fields or self.out_contents
                    or self.out_fields or self.param_sinks)

    def _slots(self) -> Iterator[Tuple[tuple, Labels]]:
        for i, ls in self.returns.items():
            yield ("return", i), ls
        for (i, f), ls in self.returned_fields.items():
            yield ("field", i, f), ls
        for k, ls in self.out_contents.items():
            yield ("out", k), ls
        for (k, f), ls in self.out_fields.items():
            yield ("out_field", k, f), ls

    def param_to_outputs(self) -> Dict[int, Set[tuple]]:
        """Parameter index -> the output positions it can taint."""
        result: Dict[int, Set[tuple]] = defaultdict(set)
        for slot, labels in self._slots():
            for label in labels:
                if isinstance(label, int):
                    result[label].add(slot)
        return dict(result)

    def source_outputs(self) -> Set[tuple]:
        """Output positions tainted regardless of the arguments."""
        return {slot for slot, labels in self._slots() if SOURCE in labels}

    def __repr__(self) -> str:
        return (f"FunctionSummary({self.function!r}, returns={len(self.returns)}, "
                f"fields={len(self.returned_fields)}, "
                f"outs={len(self.out_contents) + len(self.out_fields)}, "
                f"sinks={len(self.param_sinks)})")


class SummaryCache:
    """Write-once store of :class:`FunctionSummary` objects keyed by function."""

    def __init__(self) -> None:
        self._cache: Dict[str, FunctionSummary] = {}

    def get(self, fn: Function) -> Optional[FunctionSummary]:
        return self._cache.get(fn.full_name)

    def put(self, fn: Function, summary: FunctionSummary) -> None:
        if fn.full_name in self._cache:
            raise InternalAnalysisError(
                "summary already recorded",
                code=ErrorCode.SUMMARY_REWRITE, function=fn.full_name,
            )
        self._cache[fn.full_name] = summary

    def __getitem__(self, fn: Function) -> FunctionSummary:
        return self._cache[fn.full_name]

    def __contains__(self, fn: Function) -> bool:
        return fn.full_name in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def all_summaries(self) -> Dict[str, FunctionSummary]:
        return dict(self._cache)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — SUMMARY EXTRACTION
# ═══════════════════════════════════════════════════════════════════════════

def _merge(table: Dict, key, labels) -> None:
    if labels:
        table[key] = frozenset(table.get(key, frozenset()) | labels)


def _param_labels(labels) -> Set[int]:
    return {lb for lb in labels if isinstance(lb, int)}


def summarize_function(
    fn: Function,
    catalog: TaintCatalog,
    summaries: Optional[SummaryLookup] = None,
) -> Tuple[FunctionSummary, TaintState]:
    """
    Analyse *fn* with parameter labels and read its summary off the result.

    Args:
        fn: A function with a body
        catalog: Sources, sinks and sanitizers
        summaries: Lookup for callee summaries; missing entries contribute
            nothing

    Returns:
        The summary and the taint state it was extracted from
    """
    engine = TaintEngine(fn, catalog, summaries)
    state = engine.run()
    summary = FunctionSummary(fn.full_name)

    for instr in fn.instructions():
        if not isinstance(instr, Return):
            continue
        for i, result in enumerate(instr.results):
            _merge(summary.returns, i, engine.labels(result))
            for obj in engine.objects(result):
                for fname, labels in state.fields.fields_of(obj).items():
                    _merge(summary.returned_fields, (i, fname), labels)

    for k, value in enumerate(value_params(fn)):
        _merge(summary.out_contents, k, state.content(value))
        for fname, labels in state.fields.fields_of(value).items():
            _merge(summary.out_fields, (k, fname), labels)

    sinks: Dict[int, Set[Instruction]] = defaultdict(set)
    lookup = summaries or (lambda _fn: None)
    for instr, common in iter_calls(fn):
        query = catalog.query_argument(common)
        if query is not None:
            for k in _param_labels(engine.labels(query)):
                sinks[k].add(instr)
        callee = user_callee(common)
        callee_summary = lookup(callee) if callee is not None else None
        if callee_summary is None:
            continue
        inputs = call_inputs(common, callee)
        for j, sites in callee_summary.param_sinks.items():
            if j < len(inputs):
                for k in _param_labels(engine.labels(inputs[j])):
                    sinks[k] |= sites
    summary.param_sinks = {k: frozenset(v) for k, v in sinks.items()}
    return summary, state


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — BOTTOM-UP DRIVER
# ═══════════════════════════════════════════════════════════════════════════

class SummaryBuilder:
    """
    Builds summaries for every function of a program, callees first.

    Usage:
        cache = SummaryBuilder(program, callgraph, catalog).build()
        cache.get(fn).returns
    """

    def __init__(
        self,
        program: Program,
        callgraph: Optional[CallGraph] = None,
        catalog: Optional[TaintCatalog] = None,
        cache: Optional[SummaryCache] = None,
    ):
        self.program = program
        self.callgraph = callgraph if callgraph is not None else build_callgraph(program)
        self.catalog = catalog if catalog is not None else create_default_catalog()
        self.cache = cache if cache is not None else SummaryCache()
        self.recursive_components = 0

    def build(self) -> SummaryCache:
        for scc in self.callgraph.strongly_connected_components():
            members = [n.function for n in scc
                       if n.function is not None and not n.function.is_external]
            if not members:
                continue
            if len(scc) > 1 or scc[0].is_recursive:
                self._build_recursive(members)
            else:
                self._put(members[0], self.cache.get)

        # functions the call graph does not know about
        for fn in self.program.all_functions():
            if not fn.is_external and fn not in self.cache:
                self._put(fn, self.cache.get)

        logger.debug("built %d summaries (%d recursive components)",
                     len(self.cache), self.recursive_components)
        return self.cache

    def _put(self, fn: Function, lookup: SummaryLookup) -> None:
        summary, _state = summarize_function(fn, self.catalog, lookup)
        self.cache.put(fn, summary)

    def _build_recursive(self, members: List[Function]) -> None:
        self.recursive_components += 1
        names = {fn.full_name for fn in members}

        def without_members(callee: Function) -> Optional[FunctionSummary]:
            if callee.full_name in names:
                return None
            return self.cache.get(callee)

        provisional = {fn.full_name: summarize_function(fn, self.catalog, without_members)[0]
                       for fn in members}

        def unrolled(callee: Function) -> Optional[FunctionSummary]:
            if callee.full_name in names:
                return provisional[callee.full_name]
            return self.cache.get(callee)

        for fn in members:
            self._put(fn, unrolled)
        logger.debug("summarized recursive component %s", sorted(names))


def build_summaries(
    program: Program,
    callgraph: Optional[CallGraph] = None,
    catalog: Optional[TaintCatalog] = None,
) -> SummaryCache:
    return SummaryBuilder(program, callgraph, catalog).build()


__all__ = [
    "FunctionSummary",
    "SummaryCache",
    "SummaryBuilder",
    "summarize_function",
    "build_summaries",
]
