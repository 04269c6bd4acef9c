"""
ssadata_shims/cancel_scope.py
=============================

Tracking of cancelable context scopes and of goroutines that detach from
their caller's context.

Cancelable scopes
-----------------
A call such as ``ctx, cancel := context.WithTimeout(parent, d)`` creates a
scope whose *handle* (``cancel``) must be released before the function
loses track of it.  Each creation site is one :class:`CancelableScope`,
starting PENDING:

* DISCHARGED if the handle (or an alias of it) is

  - deferred, or spawned with ``go``;
  - captured by a closure whose body invokes it;
  - invoked directly on every path from the creation to a function exit.

  Aliases are copies through conversions to a func or interface type and
  phis, plus whatever reads the handle back after it was stored into a
  local, a struct field, a slice element or a global, or sent on a channel.
  Storing or sending alone releases nothing.  Passing the handle to a
  function of the program counts as invoking it at that call (or deferring
  it, for ``defer f(cancel)``) when that function's body invokes the
  parameter, directly or through further such hand-offs.  Library calls such
  as ``fmt.Println(cancel)`` never release the handle.

* ESCAPED otherwise, for one of these reasons:

  - DISCARDED: the handle is never bound (``ctx, _ := ...``);
  - RETURNED: the handle flows to a ``return``, directly or in a field or
    element of a returned object, so release depends on a caller this
    analysis does not check;
  - NEVER_INVOKED: the handle is kept but some path reaches an exit
    without releasing it.

A creation site inside a loop is still one scope.  A ``defer`` anywhere in
the function discharges it, whatever that means for the iterations at run
time.

Goroutine originations
----------------------
:func:`find_goroutine_originations` is a separate pass: in a function where a
context value is available, a goroutine body that creates a fresh root
context (``context.Background()`` / ``context.TODO()``) is reported once per
such call.  Only the spawned function's own instructions are scanned.
Goroutines spawned from inside goroutine bodies are not examined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .ctrlflow_analyses import exit_reachable_avoiding
from .ssa_helper import build_referrers, callee_name, context_values, user_callee
from .ssa_ir import (
    CALL_INSTRUCTIONS, Alloc, BasicBlock, Call, CallCommon, ChangeInterface,
    ChangeType, Defer, Extract, FieldAddr, FreeVar, Function, Global, Go,
    IndexAddr, Instruction, MakeClosure, MakeInterface, Phi, Program, Return,
    Send, Store, TypeAssert, UnOp, Value,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — CATALOG
# ═══════════════════════════════════════════════════════════════════════════

SCOPE_CREATORS = frozenset({
    "context.WithCancel",
    "context.WithTimeout",
    "context.WithDeadline",
    "context.WithCancelCause",
    "context.WithTimeoutCause",
    "context.WithDeadlineCause",
})

ROOT_CONTEXTS = frozenset({
    "context.Background",
    "context.TODO",
})


@dataclass
class CancelCatalog:
    """
    Attributes:
        creators: Functions returning ``(context, cancel handle)``
        originations: Functions returning a fresh root context
    """
    creators: Set[str] = field(default_factory=lambda: set(SCOPE_CREATORS))
    originations: Set[str] = field(default_factory=lambda: set(ROOT_CONTEXTS))

    def is_creator(self, common: CallCommon) -> bool:
        return callee_name(common) in self.creators

    def is_origination(self, common: CallCommon) -> bool:
        return callee_name(common) in self.originations


def create_default_cancel_catalog() -> CancelCatalog:
    return CancelCatalog()


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — SCOPE RECORDS
# ═══════════════════════════════════════════════════════════════════════════

class ScopeState(Enum):
    PENDING = "pending"
    DISCHARGED = "discharged"
    ESCAPED = "escaped"


class EscapeReason(Enum):
    DISCARDED = "discarded"
    RETURNED = "returned"
    NEVER_INVOKED = "never-invoked"


@dataclass(eq=False)
class CancelableScope:
    """
    One creation site of a cancelable context.

    Attributes:
        creation: The creating Call
        function: The function containing ``creation``
        state: Current state
        reason: Why the scope escaped (ESCAPED only)
        aliases: The handle and every value known to hold it
        evidence: The instruction that discharged the scope, if any
    """
    creation: Call
    function: Function
    state: ScopeState = ScopeState.PENDING
    reason: Optional[EscapeReason] = None
    aliases: List[Value] = field(default_factory=list)
    evidence: Optional[Instruction] = None

    @property
    def is_leaked(self) -> bool:
        return self.state is ScopeState.ESCAPED

    def discharge(self, evidence: Instruction) -> None:
        if self.state is ScopeState.PENDING:
            self.state = ScopeState.DISCHARGED
            self.evidence = evidence

    def escape(self, reason: EscapeReason) -> None:
        if self.state is ScopeState.PENDING:
            self.state = ScopeState.ESCAPED
            self.reason = reason

    def __repr__(self) -> str:
        extra = f", {self.reason.value}" if self.reason else ""
        return f"CancelableScope({self.function.full_name}, {self.state.value}{extra})"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — SCOPE TRACKER
# ═══════════════════════════════════════════════════════════════════════════

_COPIES = (ChangeType, ChangeInterface, MakeInterface, TypeAssert, Phi)

# Addresses whose loads read back the stored value whole
_CELLS = (Alloc, Global, FreeVar)

# Hand-offs into user functions followed when looking for an invocation
MAX_HANDOFF_DEPTH = 4


class CancelScopeTracker:
    """
    Classifies every cancelable scope created in one function.

    Usage:
        scopes = CancelScopeTracker(fn).run()
        leaked = [s for s in scopes if s.is_leaked]
    """

    def __init__(self, fn: Function, catalog: Optional[CancelCatalog] = None):
        self.fn = fn
        self.catalog = catalog or CancelCatalog()
        self.referrers = build_referrers(fn)
        self._field_addrs: List[FieldAddr] = []
        self._index_addrs: List[IndexAddr] = []
        for instr in fn.instructions():
            if isinstance(instr, FieldAddr):
                self._field_addrs.append(instr)
            elif isinstance(instr, IndexAddr):
                self._index_addrs.append(instr)

    def run(self) -> List[CancelableScope]:
        scopes = []
        for instr in self.fn.instructions():
            if isinstance(instr, Call) and self.catalog.is_creator(instr.call):
                scope = CancelableScope(instr, self.fn)
                self._classify(scope)
                scopes.append(scope)
        return scopes

    # ---- aliases ------------------------------------------------------

    def _loads(self, addr: Value) -> List[Value]:
        """Loads that read back what was stored at *addr*."""
        if isinstance(addr, FieldAddr):
            sites: List[Value] = [fa for fa in self._field_addrs
                                  if fa.x is addr.x and fa.field == addr.field]
        elif isinstance(addr, IndexAddr):
            sites = [ia for ia in self._index_addrs if ia.x is addr.x]
        else:
            sites = [addr]
        return [u for site in sites for u in self.referrers.get(site, ())
                if isinstance(u, UnOp) and u.op == "*" and u.x is site]

    def _receives(self, chan: Value) -> List[Value]:
        out: List[Value] = []
        for u in self.referrers.get(chan, ()):
            if not (isinstance(u, UnOp) and u.op == "<-" and u.x is chan):
                continue
            if u.comma_ok:
                out.extend(e for e in self.referrers.get(u, ())
                           if isinstance(e, Extract) and e.index == 0)
            else:
                out.append(u)
        return out

    def _collect_aliases(self, handles: Iterable[Value]):
        """
        Aliases of the handle, and the cells it is stored into.

        A store or a send only moves the handle: whatever later reads it back
        from the same field, element, cell or channel is another alias.
        """
        aliases: List[Value] = []
        cells: List[Value] = []
        seen: Set[int] = set()
        work = list(handles)
        while work:
            v = work.pop()
            if id(v) in seen:
                continue
            seen.add(id(v))
            aliases.append(v)
            for user in self.referrers.get(v, ()):
                if isinstance(user, _COPIES):
                    work.append(user)
                elif isinstance(user, Store) and user.val is v:
                    if isinstance(user.addr, _CELLS) and user.addr not in cells:
                        cells.append(user.addr)
                    work.extend(self._loads(user.addr))
                elif isinstance(user, Send) and user.x is v:
                    work.extend(self._receives(user.chan))
        return aliases, cells

    # ---- classification -----------------------------------------------

    def _classify(self, scope: CancelableScope) -> None:
        creation = scope.creation
        handles = [u for u in self.referrers.get(creation, ())
                   if isinstance(u, Extract) and u.tuple is creation and u.index == 1]
        if any(isinstance(u, Return) for u in self.referrers.get(creation, ())):
            scope.escape(EscapeReason.RETURNED)
            return
        if not handles:
            scope.escape(EscapeReason.DISCARDED)
            return

        aliases, cells = self._collect_aliases(handles)
        scope.aliases = aliases
        alias_ids = {id(a) for a in aliases}
        direct: List[Instruction] = []
        returned = False

        for alias in aliases:
            for user in self.referrers.get(alias, ()):
                if isinstance(user, CALL_INSTRUCTIONS):
                    common = user.call
                    invoked = common.value is alias and common.method is None
                    if invoked or self._hands_off(common, alias_ids):
                        if isinstance(user, (Defer, Go)):
                            scope.discharge(user)
                        else:
                            direct.append(user)
                elif isinstance(user, Store) and user.val is alias:
                    if isinstance(user.addr, (FieldAddr, IndexAddr)) and self._is_returned(user.addr.x):
                        returned = True
                elif isinstance(user, MakeClosure):
                    if self._closure_releases(user, alias):
                        scope.discharge(user)
                elif isinstance(user, Return):
                    returned = True

        for cell in cells:
            for user in self.referrers.get(cell, ()):
                if isinstance(user, MakeClosure) and self._closure_releases(user, cell):
                    scope.discharge(user)

        if scope.state is ScopeState.PENDING and direct and self._covers_all_paths(creation, direct):
            scope.discharge(direct[0])
        if returned:
            scope.escape(EscapeReason.RETURNED)
        scope.escape(EscapeReason.NEVER_INVOKED)
        logger.debug("%r at %s", scope, creation.pos)

    def _is_returned(self, obj: Value) -> bool:
        return any(isinstance(u, Return) for u in self.referrers.get(obj, ()))

    def _hands_off(self, common: CallCommon, held: Set[int], depth: int = 0) -> bool:
        """Does the program-function callee of *common* invoke an argument in *held*?"""
        if depth >= MAX_HANDOFF_DEPTH:
            return False
        callee = user_callee(common)
        if callee is None:
            return False
        for param, arg in zip(callee.params, common.args):
            if id(arg) in held and self._body_releases(callee, {id(param)}, depth + 1):
                return True
        return False

    def _body_releases(self, body: Function, held: Set[int], depth: int) -> bool:
        """Does *body* invoke one of the *held* values, itself or via a hand-off?"""
        held = set(held)
        instrs = list(body.instructions())
        grew = True
        while grew:
            grew = False
            for instr in instrs:
                if isinstance(instr, Store) and id(instr.val) in held:
                    key = id(instr.addr)
                elif isinstance(instr, _COPIES) and any(id(op) in held for op in instr.operands()):
                    key = id(instr)
                elif isinstance(instr, UnOp) and instr.op == "*" and id(instr.x) in held:
                    key = id(instr)
                else:
                    continue
                if key not in held:
                    held.add(key)
                    grew = True
        for instr in instrs:
            if isinstance(instr, CALL_INSTRUCTIONS):
                common = instr.call
                if common.method is None and id(common.value) in held:
                    return True
                if self._hands_off(common, held, depth):
                    return True
        return False

    def _closure_releases(self, closure: MakeClosure, captured: Value) -> bool:
        """Does the closure body invoke the captured handle?"""
        inner = {id(fv) for fv, binding in zip(closure.fn.free_vars, closure.bindings)
                 if binding is captured}
        return bool(inner) and self._body_releases(closure.fn, inner, 0)

    @staticmethod
    def _covers_all_paths(creation: Call, calls: List[Instruction]) -> bool:
        start = creation.block
        after = creation.block_index()
        if any(c.block is start and c.block_index() > after for c in calls):
            return True
        blocks = {id(c.block) for c in calls}

        def covered(block: BasicBlock) -> bool:
            return id(block) in blocks

        return not exit_reachable_avoiding(start, covered)


def track_cancel_scopes(
    program: Program, catalog: Optional[CancelCatalog] = None,
) -> List[CancelableScope]:
    """Every cancelable scope of *program*, in function order."""
    catalog = catalog or CancelCatalog()
    scopes: List[CancelableScope] = []
    for fn in program.all_functions():
        if not fn.is_external:
            scopes.extend(CancelScopeTracker(fn, catalog).run())
    logger.debug("tracked %d cancelable scopes (%d leaked)",
                 len(scopes), sum(1 for s in scopes if s.is_leaked))
    return scopes


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — GOROUTINE ORIGINATIONS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class DetachedGoroutine:
    """A root-context call inside a goroutine spawned where a context exists."""
    origination: Call
    spawn: Go
    function: Function


def goroutine_bodies(program: Program) -> Dict[str, Function]:
    """Functions started by a ``go`` statement somewhere in *program*."""
    bodies: Dict[str, Function] = {}
    for fn in program.all_functions():
        for instr in fn.instructions():
            if isinstance(instr, Go):
                body = user_callee(instr.call)
                if body is not None:
                    bodies[body.full_name] = body
    return bodies


def find_goroutine_originations(
    program: Program, catalog: Optional[CancelCatalog] = None,
) -> List[DetachedGoroutine]:
    """
    Root contexts created by goroutine bodies that could have used the
    spawning function's context.

    Functions that are themselves goroutine bodies are not inspected as
    spawners, so goroutines nested in goroutines go unreported.
    """
    catalog = catalog or CancelCatalog()
    nested = goroutine_bodies(program)
    found: List[DetachedGoroutine] = []
    seen: Set[int] = set()
    for fn in program.all_functions():
        if fn.is_external or fn.full_name in nested:
            continue
        if not context_values(fn, exclude=catalog.is_origination):
            continue
        for instr in fn.instructions():
            if not isinstance(instr, Go):
                continue
            body = user_callee(instr.call)
            if body is None:
                continue
            for inner in body.instructions():
                if (isinstance(inner, Call) and catalog.is_origination(inner.call)
                        and id(inner) not in seen):
                    seen.add(id(inner))
                    found.append(DetachedGoroutine(inner, instr, body))
    logger.debug("found %d detached goroutine contexts", len(found))
    return found


__all__ = [
    "SCOPE_CREATORS", "ROOT_CONTEXTS", "MAX_HANDOFF_DEPTH",
    "CancelCatalog", "create_default_cancel_catalog",
    "ScopeState", "EscapeReason", "CancelableScope",
    "CancelScopeTracker", "track_cancel_scopes",
    "DetachedGoroutine", "goroutine_bodies", "find_goroutine_originations",
]
