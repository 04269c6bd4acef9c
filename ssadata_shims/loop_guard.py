"""
ssadata_shims/loop_guard.py
===========================

Classification of loops that can block forever without observing their
context's cancellation.

Every natural loop (one per header, see
:class:`~ssadata_shims.ctrlflow_analyses.NaturalLoopDetector`) becomes a
:class:`LoopRecord`:

  classification
      BOUNDED if some exit edge leaves the loop on a condition that is not
      a cancellation check (a counter comparison, an error check, a
      ``break``); UNBOUNDED if the loop has no exits at all, or exits only
      on cancellation.

  guard
      GUARDED if some exit is taken on cancellation: the select case
      receiving from ``ctx.Done()`` was chosen, a ``ctx.Err()`` result
      was tested, or a comma-ok receive from ``ctx.Done()`` was tested.

  has_blocking
      the body contains a recognized blocking operation: a catalogued
      call (sleep, wait, network, file I/O, interface ``Read``), a
      goroutine spawn, or a ``defer`` of a blocking call or of a function
      whose own body blocks.

An UNBOUNDED, UNGUARDED loop with a blocking operation is reported once
per loop header.  ``for range ch`` loops and bare ``select`` loops are not
blocking by these rules, and only functions in which a context value is
visible are examined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .ctrlflow_analyses import NaturalLoop, NaturalLoopDetector
from .ssa_helper import (
    CONTEXT_TYPE, callee_name, context_values, is_context_type, method_name,
    receiver_type, user_callee,
)
from .ssa_ir import (
    CALL_INSTRUCTIONS, BasicBlock, BinOp, Call, CallCommon, Const, Defer,
    Extract, Function, Go, If, Instruction, Phi, Program, Select, UnOp, Value,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — BLOCKING CATALOG
# ═══════════════════════════════════════════════════════════════════════════

BLOCKING_FUNCTIONS = frozenset({
    "time.Sleep",
    "net/http.Get", "net/http.Post", "net/http.Head", "net/http.PostForm",
    "os.ReadFile", "os.WriteFile", "os.Open", "os.OpenFile", "os.Create", "os.ReadDir",
    "io.ReadAll", "io.Copy", "io.CopyN", "io.ReadFull",
    "net.Dial", "net.DialTimeout",
})

BLOCKING_METHODS = frozenset(
    {"(*sync.WaitGroup).Wait", "(*sync.Cond).Wait"}
    | {f"(*net/http.Client).{m}" for m in ("Do", "Get", "Post", "Head", "PostForm")}
    | {f"(*database/sql.{h}).{m}"
       for h in ("DB", "Tx", "Conn", "Stmt")
       for m in ("Query", "QueryRow", "Exec", "QueryContext", "QueryRowContext",
                 "ExecContext", "Ping", "PingContext")}
)

BLOCKING_INTERFACE_METHODS = frozenset({"Read", "ReadAt", "ReadFrom"})


@dataclass
class BlockingCatalog:
    """
    Attributes:
        functions: Full names of blocking functions and methods
        interface_methods: Method names that block when invoked through an
            interface
    """
    functions: Set[str] = field(
        default_factory=lambda: set(BLOCKING_FUNCTIONS | BLOCKING_METHODS))
    interface_methods: Set[str] = field(
        default_factory=lambda: set(BLOCKING_INTERFACE_METHODS))

    def is_blocking_call(self, common: CallCommon) -> bool:
        if common.method is not None:
            return common.method in self.interface_methods
        return callee_name(common) in self.functions


def create_default_blocking_catalog() -> BlockingCatalog:
    return BlockingCatalog()


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — LOOP RECORDS
# ═══════════════════════════════════════════════════════════════════════════

class LoopKind(Enum):
    BOUNDED = "bounded"
    UNBOUNDED = "unbounded"


class GuardKind(Enum):
    GUARDED = "guarded"
    UNGUARDED = "unguarded"


@dataclass(eq=False)
class LoopRecord:
    """
    Attributes:
        function: The function containing the loop
        header: The loop header block
        loop: The natural loop
        classification: Whether a non-cancellation exit exists
        guard: Whether a cancellation exit exists
        blocking: The first blocking instruction of the body, if any
    """
    function: Function
    header: BasicBlock
    loop: NaturalLoop
    classification: LoopKind
    guard: GuardKind
    blocking: Optional[Instruction] = None

    @property
    def has_blocking(self) -> bool:
        return self.blocking is not None

    @property
    def is_unguarded_blocking(self) -> bool:
        return (self.classification is LoopKind.UNBOUNDED
                and self.guard is GuardKind.UNGUARDED
                and self.has_blocking)

    def __repr__(self) -> str:
        return (f"LoopRecord({self.function.full_name}, b{self.header.index}, "
                f"{self.classification.value}, {self.guard.value}, "
                f"blocking={self.has_blocking})")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════

def is_done_channel(value: Value) -> bool:
    """Is *value* the result of ``ctx.Done()`` on a ``context.Context``?"""
    if not isinstance(value, Call):
        return False
    common = value.call
    return method_name(common) == "Done" and is_context_type(receiver_type(common))


def is_err_check(value: Value) -> bool:
    if not isinstance(value, Call):
        return False
    common = value.call
    return method_name(common) == "Err" and receiver_type(common) == CONTEXT_TYPE


def _select_done_index(select: Select, index: int) -> bool:
    if not 0 <= index < len(select.states):
        return False
    state = select.states[index]
    return state.dir == "recv" and is_done_channel(state.chan)


def observes_cancellation(cond: Value, _seen: Optional[Set[int]] = None) -> bool:
    """
    Does branching on *cond* test the context's cancellation signal?

    Recognized shapes:
        ``extract(select, 0) == k`` where case ``k`` receives from ``ctx.Done()``
        ``ctx.Err() != nil``
        ``_, ok := <-ctx.Done()`` tested through ``ok``
    """
    seen = _seen if _seen is not None else set()
    if id(cond) in seen:
        return False
    seen.add(id(cond))

    if isinstance(cond, UnOp) and cond.op == "!":
        return observes_cancellation(cond.x, seen)
    if isinstance(cond, Phi):
        return any(observes_cancellation(e, seen) for e in cond.edges)
    if isinstance(cond, BinOp) and cond.op in ("==", "!="):
        for a, b in ((cond.x, cond.y), (cond.y, cond.x)):
            if is_err_check(a):
                return True
            if (isinstance(a, Extract) and a.index == 0 and isinstance(a.tuple, Select)
                    and isinstance(b, Const) and isinstance(b.value, int)
                    and not isinstance(b.value, bool)):
                return _select_done_index(a.tuple, b.value)
        return False
    if isinstance(cond, Extract) and cond.index == 1:
        src = cond.tuple
        return isinstance(src, UnOp) and src.op == "<-" and is_done_channel(src.x)
    return False


class LoopGuardClassifier:
    """
    Usage:
        records = LoopGuardClassifier(fn).classify()
        bad = [r for r in records if r.is_unguarded_blocking]
    """

    def __init__(self, fn: Function, catalog: Optional[BlockingCatalog] = None):
        self.fn = fn
        self.catalog = catalog or BlockingCatalog()
        self._blocks: Dict[int, BasicBlock] = {b.index: b for b in fn.blocks}

    def classify(self) -> List[LoopRecord]:
        if not self.fn.blocks:
            return []
        records = [self._classify_loop(loop)
                   for loop in NaturalLoopDetector(self.fn).detect()]
        for rec in records:
            logger.debug("%r", rec)
        return records

    def _classify_loop(self, loop: NaturalLoop) -> LoopRecord:
        guarded = False
        bounded = False
        for src, _dst in loop.exit_edges:
            term = self._blocks[src].terminator
            if isinstance(term, If) and observes_cancellation(term.cond):
                guarded = True
            else:
                bounded = True
        return LoopRecord(
            function=self.fn,
            header=self._blocks[loop.header],
            loop=loop,
            classification=LoopKind.BOUNDED if bounded else LoopKind.UNBOUNDED,
            guard=GuardKind.GUARDED if guarded else GuardKind.UNGUARDED,
            blocking=self._first_blocking(loop),
        )

    def _first_blocking(self, loop: NaturalLoop) -> Optional[Instruction]:
        for index in sorted(loop.body):
            for instr in self._blocks[index].instrs:
                if self.is_blocking(instr):
                    return instr
        return None

    def is_blocking(self, instr: Instruction) -> bool:
        if isinstance(instr, Go):
            return True
        if not isinstance(instr, CALL_INSTRUCTIONS):
            return False
        if self.catalog.is_blocking_call(instr.call):
            return True
        if isinstance(instr, Defer):
            body = user_callee(instr.call)
            if body is not None:
                return any(isinstance(i, CALL_INSTRUCTIONS) and self.catalog.is_blocking_call(i.call)
                           for i in body.instructions())
        return False


def classify_loops(
    program: Program,
    catalog: Optional[BlockingCatalog] = None,
    require_context: bool = True,
) -> List[LoopRecord]:
    """
    Loop records of every function of *program*.

    With *require_context* (the default) functions in which no context value
    is visible are skipped.
    """
    catalog = catalog or BlockingCatalog()
    records: List[LoopRecord] = []
    for fn in program.all_functions():
        if fn.is_external:
            continue
        if require_context and not context_values(fn):
            continue
        records.extend(LoopGuardClassifier(fn, catalog).classify())
    return records


__all__ = [
    "BLOCKING_FUNCTIONS", "BLOCKING_METHODS", "BLOCKING_INTERFACE_METHODS",
    "BlockingCatalog", "create_default_blocking_catalog",
    "LoopKind", "GuardKind", "LoopRecord",
    "is_done_channel", "is_err_check", "observes_cancellation",
    "LoopGuardClassifier", "classify_loops",
]
