"""
ssadata_shims.taint_analysis
============================

Per-function taint propagation over SSA values.

Theory
------
The lattice is the powerset of *labels* ordered by inclusion.  A label is
either :data:`SOURCE` (the value may carry externally-controlled data) or an
input index ``k`` (the value may carry whatever the caller supplies for
input ``k``).  Inputs are the parameters followed by the free variables of
a closure, so ``k`` past the last parameter names a captured variable.
Input labels are what make a single analysis of a function reusable as a
summary: a caller substitutes the labels of its actual arguments, and of the
closure bindings, for ``k``.

The analysis is flow-insensitive and monotone: every instruction's transfer
function only ever *adds* labels, and the engine re-applies all transfer
functions until nothing changes.  Once a value is tainted it stays tainted.

Besides the per-value map, a :class:`TaintState` keeps

* a :class:`FieldTaintMap` from ``(object, field)`` to labels.  Objects are
  allocation sites, parameters and call results.  Only one level of field
  nesting is represented: ``a.b.c`` where ``b`` is itself a pointer is not
  resolved, because loading ``a.b`` does not yield an object;
* a *content* map from object to labels, the whole-container approximation
  for arrays, slices, channels and address-taken locals.  Any tainted element
  taints every read of the container.

Map values are deliberately not tracked: ``MapUpdate`` records nothing and
``Lookup`` is always untainted.

Public API
----------
    SOURCE              - the label of externally-controlled data
    CallResult          - object key for "the value returned by this call"
    FieldTaintMap       - (object, field) -> labels
    TaintState          - all facts of one function
    TaintEngine         - the fixpoint solver
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, List, Mapping,
    NamedTuple, Optional, Set, Tuple, Union,
)

from .errors import ErrorCode, InternalAnalysisError
from .ssa_helper import call_inputs, user_callee, value_params
from .ssa_ir import (
    Alloc, BinOp, Builtin, Call, ChangeInterface, ChangeType, Const, Convert,
    Defer, Extract, Field, FieldAddr, FreeVar, Function, Global, Go, If, Index,
    IndexAddr, Instruction, Jump, Lookup, MakeChan, MakeClosure, MakeInterface,
    MakeMap, MakeSlice, MapUpdate, Next, Panic, Parameter, Phi, Range, Return,
    RunDefers, Select, Send, Slice, Store, TypeAssert, UnOp, Value,
)
from .taint_catalog import TaintCatalog

if TYPE_CHECKING:
    from .interproc_analysis import FunctionSummary

logger = logging.getLogger(__name__)

Label = Union[str, int]
Labels = FrozenSet[Label]

SOURCE: str = "source"
EMPTY: Labels = frozenset()

# Builtins whose result never carries data from their arguments
_OPAQUE_BUILTINS = frozenset({
    "len", "cap", "copy", "delete", "close", "print", "println",
    "panic", "recover", "clear",
})

# Instructions that neither produce nor move taint
_SILENT = (
    FieldAddr, Lookup, MakeMap, MapUpdate, MakeClosure,
    Go, Defer, RunDefers, If, Jump, Return, Panic,
)


class CallResult(NamedTuple):
    """Object key for result ``index`` of a call to a summarized function."""
    call: Call
    index: int


ObjectKey = Union[Value, CallResult]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — FIELD TAINT MAP
# ═══════════════════════════════════════════════════════════════════════════

class FieldTaintMap:
    """Flat ``(object, field) -> labels`` map; one level of fields only."""

    def __init__(self) -> None:
        self._map: Dict[Tuple[ObjectKey, str], Set[Label]] = {}

    def get(self, obj: ObjectKey, field: str) -> Labels:
        return frozenset(self._map.get((obj, field), EMPTY))

    def add(self, obj: ObjectKey, field: str, labels: Iterable[Label]) -> bool:
        labels = set(labels)
        if not labels:
            return False
        cur = self._map.setdefault((obj, field), set())
        if labels <= cur:
            return False
        cur |= labels
        return True

    def fields_of(self, obj: ObjectKey) -> Dict[str, Labels]:
        return {f: frozenset(ls) for (o, f), ls in self._map.items() if o == obj}

    def is_tainted(self, obj: ObjectKey, field: str) -> bool:
        return SOURCE in self._map.get((obj, field), EMPTY)

    def items(self):
        return ((k, frozenset(v)) for k, v in self._map.items())

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, key: Tuple[ObjectKey, str]) -> bool:
        return key in self._map


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — TAINT STATE
# ═══════════════════════════════════════════════════════════════════════════

class TaintState:
    """
    The facts computed for one function.

    Attributes:
        values: SSA value -> labels
        fields: (object, field) -> labels
        contents: object -> labels of its elements / pointee
        slots: (call, result index) -> labels of that result
    """

    def __init__(self) -> None:
        self.values: Dict[Value, Set[Label]] = {}
        self.fields = FieldTaintMap()
        self.contents: Dict[ObjectKey, Set[Label]] = {}
        self.slots: Dict[Tuple[Call, int], Set[Label]] = {}

    # ---- queries ------------------------------------------------------

    def labels(self, value: Optional[Value]) -> Labels:
        if value is None:
            return EMPTY
        return frozenset(self.values.get(value, EMPTY))

    def is_tainted(self, value: Optional[Value]) -> bool:
        return SOURCE in self.labels(value)

    def content(self, obj: ObjectKey) -> Labels:
        return frozenset(self.contents.get(obj, EMPTY))

    def slot(self, call: Call, index: int) -> Labels:
        return frozenset(self.slots.get((call, index), EMPTY))

    def tainted_values(self) -> List[Value]:
        return [v for v, ls in self.values.items() if SOURCE in ls]

    def snapshot(self) -> Dict[Value, Labels]:
        return {v: frozenset(ls) for v, ls in self.values.items()}

    # ---- updates (monotone) ------------------------------------------

    @staticmethod
    def _add(table: Dict[Any, Set[Label]], key: Any, labels: Iterable[Label]) -> bool:
        labels = set(labels)
        if not labels:
            return False
        cur = table.setdefault(key, set())
        if labels <= cur:
            return False
        cur |= labels
        return True

    def add(self, value: Value, labels: Iterable[Label]) -> bool:
        return self._add(self.values, value, labels)

    def add_content(self, obj: ObjectKey, labels: Iterable[Label]) -> bool:
        return self._add(self.contents, obj, labels)

    def add_slot(self, call: Call, index: int, labels: Iterable[Label]) -> bool:
        return self._add(self.slots, (call, index), labels)

    def __repr__(self) -> str:
        return (f"TaintState(values={len(self.values)}, fields={len(self.fields)}, "
                f"contents={len(self.contents)})")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — FIXPOINT ENGINE
# ═══════════════════════════════════════════════════════════════════════════

SummaryLookup = Callable[[Function], Optional["FunctionSummary"]]


class TaintEngine:
    """
    Computes the :class:`TaintState` of one function.

    Every input is seeded with its own index label: parameters first, then
    free variables.  *seeds* adds the labels the bindings had at closure
    creation and *field_seeds* the field facts of captured objects.  Calls to functions with a body are resolved
    through *summaries*; a callee without a summary (a recursive edge not yet
    summarized) contributes nothing.

    Usage:
        state = TaintEngine(fn, catalog, summaries.get).run()
        state.is_tainted(some_value)
    """

    def __init__(
        self,
        fn: Function,
        catalog: TaintCatalog,
        summaries: Optional[SummaryLookup] = None,
        *,
        seeds: Optional[Mapping[Value, Iterable[Label]]] = None,
        field_seeds: Optional[Mapping[Tuple[ObjectKey, str], Iterable[Label]]] = None,
        max_iterations: int = 10_000,
    ):
        self.fn = fn
        self.catalog = catalog
        self.summaries = summaries or (lambda _fn: None)
        self.max_iterations = max_iterations
        self.state = TaintState()
        self.iterations = 0
        for k, value in enumerate(value_params(fn)):
            self.state.add(value, {k})
        for value, labels in (seeds or {}).items():
            self.state.add(value, labels)
        for (obj, fname), labels in (field_seeds or {}).items():
            self.state.fields.add(obj, fname, labels)
        # values stored whole into each alloc/global, for pointer loads
        self._stored: Dict[Value, List[Value]] = defaultdict(list)
        for instr in fn.instructions():
            if isinstance(instr, Store) and isinstance(instr.addr, (Alloc, Global)):
                self._stored[instr.addr].append(instr.val)
        self._warned: Set[type] = set()
        self._dispatch = {
            Alloc: self._t_self_content,
            MakeSlice: self._t_self_content,
            MakeChan: self._t_self_content,
            Call: self._t_call,
            BinOp: self._t_union,
            Convert: self._t_union,
            ChangeType: self._t_union,
            ChangeInterface: self._t_union,
            MakeInterface: self._t_union,
            TypeAssert: self._t_union,
            Phi: self._t_union,
            Range: self._t_union,
            Next: self._t_union,
            Field: self._t_field,
            Extract: self._t_extract,
            UnOp: self._t_unop,
            IndexAddr: self._t_container,
            Index: self._t_container,
            Slice: self._t_container,
            Select: self._t_select,
            Store: self._t_store,
            Send: self._t_send,
        }

    # ---- driver ---------------------------------------------------------

    def run(self) -> TaintState:
        changed = True
        while changed:
            self.iterations += 1
            if self.iterations > self.max_iterations:
                raise InternalAnalysisError(
                    f"taint fixpoint did not converge after {self.max_iterations} rounds",
                    code=ErrorCode.INTERNAL, function=self.fn.full_name,
                )
            changed = False
            for instr in self.fn.instructions():
                if self._transfer(instr):
                    changed = True
        logger.debug("taint of %s converged in %d rounds (%d tainted values)",
                     self.fn.full_name, self.iterations, len(self.state.tainted_values()))
        return self.state

    def _transfer(self, instr: Instruction) -> bool:
        handler = self._dispatch.get(type(instr))
        if handler is not None:
            return handler(instr)
        if not isinstance(instr, _SILENT) and type(instr) not in self._warned:
            self._warned.add(type(instr))
            logger.warning("%s: no taint rule for %s, treated as untainted",
                           self.fn.full_name, type(instr).__name__)
        return False

    # ---- helpers --------------------------------------------------------

    def labels(self, value: Optional[Value]) -> Labels:
        if value is None or isinstance(value, (Const, Function, Builtin)):
            return EMPTY
        return self.state.labels(value)

    def objects(self, value: Value, _seen: Optional[Set[int]] = None) -> Set[ObjectKey]:
        """
        The objects *value* may point to.

        Follows phis, type changes, slicing and loads of address-taken
        locals.  Loads of struct fields are *not* followed, which is what
        limits field tracking to a single level.
        """
        seen = _seen if _seen is not None else set()
        if id(value) in seen:
            return set()
        seen.add(id(value))

        if isinstance(value, (Alloc, Parameter, FreeVar, Global, MakeSlice, MakeChan, MakeMap)):
            return {value}
        if isinstance(value, Phi):
            out: Set[ObjectKey] = set()
            for edge in value.edges:
                out |= self.objects(edge, seen)
            return out
        if isinstance(value, (ChangeType, ChangeInterface, MakeInterface, TypeAssert, Slice)):
            return self.objects(value.x, seen)
        if isinstance(value, UnOp) and value.op == "*" and isinstance(value.x, (Alloc, Global)):
            out = set()
            for stored in self._stored.get(value.x, ()):
                out |= self.objects(stored, seen)
            return out
        if isinstance(value, Extract) and isinstance(value.tuple, Call):
            if user_callee(value.tuple.call) is not None:
                return {CallResult(value.tuple, value.index)}
            return set()
        if isinstance(value, Call) and user_callee(value.call) is not None:
            return {CallResult(value, 0)}
        return set()

    def container(self, value: Value) -> Labels:
        """Labels of *value* plus everything stored in the objects it refers to."""
        out = set(self.labels(value))
        for obj in self.objects(value):
            out |= self.state.content(obj)
        return frozenset(out)

    def map_labels(self, labels: Iterable[Label], inputs: List[Optional[Value]]) -> Labels:
        """Substitute the labels of the caller's inputs for input labels."""
        out: Set[Label] = set()
        for label in labels:
            if label == SOURCE:
                out.add(SOURCE)
            elif isinstance(label, int) and label < len(inputs):
                out |= self.labels(inputs[label])
        return frozenset(out)

    # ---- transfer functions ---------------------------------------------

    def _t_union(self, instr) -> bool:
        out: Set[Label] = set()
        for op in instr.operands():
            out |= self.labels(op)
        return self.state.add(instr, out)

    def _t_self_content(self, instr) -> bool:
        return self.state.add(instr, self.state.content(instr))

    def _t_container(self, instr) -> bool:
        return self.state.add(instr, self.container(instr.x))

    def _t_field(self, instr: Field) -> bool:
        out = set(self.labels(instr.x))
        base = instr.x
        if isinstance(base, UnOp) and base.op == "*":
            for obj in self.objects(base.x):
                out |= self.state.fields.get(obj, instr.field)
        return self.state.add(instr, out)

    def _t_extract(self, instr: Extract) -> bool:
        tup = instr.tuple
        if isinstance(tup, Call) and user_callee(tup.call) is not None:
            return self.state.add(instr, self.state.slot(tup, instr.index))
        return self.state.add(instr, self.labels(tup))

    def _t_unop(self, instr: UnOp) -> bool:
        if instr.op == "*":
            return self.state.add(instr, self._load(instr.x))
        if instr.op == "<-":
            return self.state.add(instr, self.container(instr.x))
        return self.state.add(instr, self.labels(instr.x))

    def _load(self, addr: Value) -> Labels:
        if isinstance(addr, FieldAddr):
            if self.catalog.is_source_field(addr):
                return frozenset({SOURCE})
            out: Set[Label] = set(self.labels(addr.x))
            for obj in self.objects(addr.x):
                out |= self.state.fields.get(obj, addr.field)
            return frozenset(out)
        if isinstance(addr, IndexAddr):
            return self.container(addr.x)
        return self.container(addr)

    def _t_select(self, instr: Select) -> bool:
        out: Set[Label] = set()
        for st in instr.states:
            if st.dir == "recv":
                out |= self.container(st.chan)
        return self.state.add(instr, out)

    def _t_store(self, instr: Store) -> bool:
        labels = self.labels(instr.val)
        if not labels:
            return False
        addr = instr.addr
        changed = False
        if isinstance(addr, FieldAddr):
            for obj in self.objects(addr.x):
                changed |= self.state.fields.add(obj, addr.field, labels)
        elif isinstance(addr, IndexAddr):
            for obj in self.objects(addr.x):
                changed |= self.state.add_content(obj, labels)
        else:
            for obj in self.objects(addr):
                changed |= self.state.add_content(obj, labels)
        return changed

    def _t_send(self, instr: Send) -> bool:
        labels = self.labels(instr.x)
        changed = False
        for obj in self.objects(instr.chan):
            changed |= self.state.add_content(obj, labels)
        return changed

    def _t_call(self, instr: Call) -> bool:
        common = instr.call
        if self.catalog.is_source_call(common):
            return self.state.add(instr, {SOURCE})
        if self.catalog.is_sanitizer_call(common):
            return False

        callee = user_callee(common)
        if callee is not None:
            summary = self.summaries(callee)
            if summary is None:
                return False
            return self._apply_summary(instr, call_inputs(common, callee), summary)

        value = common.value
        if isinstance(value, Builtin) and common.method is None:
            if value.name in _OPAQUE_BUILTINS:
                if value.name == "copy" and len(common.args) == 2:
                    src = self.container(common.args[1])
                    return any([self.state.add_content(o, src)
                                for o in self.objects(common.args[0])])
                return False
            out: Set[Label] = set()
            for arg in common.args:
                out |= self.container(arg)
            return self.state.add(instr, out)

        # library call, interface invocation or call through a func value
        out = set()
        for op in common.operands():
            out |= self.labels(op)
        return self.state.add(instr, out)

    def _apply_summary(
        self, instr: Call, inputs: List[Optional[Value]], summary: "FunctionSummary",
    ) -> bool:
        changed = False
        everything: Set[Label] = set()
        for index, labels in summary.returns.items():
            mapped = self.map_labels(labels, inputs)
            everything |= mapped
            changed |= self.state.add_slot(instr, index, mapped)
        changed |= self.state.add(instr, everything)
        for (index, field), labels in summary.returned_fields.items():
            changed |= self.state.fields.add(CallResult(instr, index), field,
                                             self.map_labels(labels, inputs))
        for index, labels in summary.out_contents.items():
            target = inputs[index] if index < len(inputs) else None
            if target is not None:
                mapped = self.map_labels(labels, inputs)
                for obj in self.objects(target):
                    changed |= self.state.add_content(obj, mapped)
        for (index, field), labels in summary.out_fields.items():
            target = inputs[index] if index < len(inputs) else None
            if target is not None:
                mapped = self.map_labels(labels, inputs)
                for obj in self.objects(target):
                    changed |= self.state.fields.add(obj, field, mapped)
        return changed


def compute_taint(
    fn: Function,
    catalog: TaintCatalog,
    summaries: Optional[SummaryLookup] = None,
    seeds: Optional[Mapping[Value, Iterable[Label]]] = None,
) -> TaintState:
    """Convenience wrapper around :class:`TaintEngine`."""
    return TaintEngine(fn, catalog, summaries, seeds=seeds).run()


__all__ = [
    "SOURCE",
    "Label",
    "CallResult",
    "FieldTaintMap",
    "TaintState",
    "TaintEngine",
    "compute_taint",
]
