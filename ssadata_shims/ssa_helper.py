# ssadata_shims/ssa_helper.py
"""
ssadata_shims/ssa_helper.py
═══════════════════════════

Query utilities over the SSA model of :mod:`ssadata_shims.ssa_ir`.

    ┌─────────────────────────────────────────────────────────────────┐
    │  Type strings                                                   │
    │    • pointer dereference                                        │
    │    • context.Context recognition                                │
    ├─────────────────────────────────────────────────────────────────┤
    │  Traversal                                                      │
    │    • instruction and call iteration                             │
    │    • referrer (def-use) index                                   │
    ├─────────────────────────────────────────────────────────────────┤
    │  Call classification                                            │
    │    • static callee / invoked method / receiver type             │
    │    • closure bindings and callee inputs                         │
    ├─────────────────────────────────────────────────────────────────┤
    │  Locations                                                      │
    │    • best-effort source position of an instruction              │
    │    • stable site identifiers used to deduplicate findings       │
    └─────────────────────────────────────────────────────────────────┘

All helpers are read-only and tolerate missing information by returning
empty results rather than raising.
"""

from __future__ import annotations

from collections import defaultdict
from typing import (
    Callable, Dict, Iterator, List, Optional, Tuple,
)

from .ssa_ir import (
    CALL_INSTRUCTIONS, NO_POS, BasicBlock, CallCommon, Function,
    Instruction, Position, Value, ValueInstruction,
)

CONTEXT_TYPE = "context.Context"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — TYPE STRINGS
# ═══════════════════════════════════════════════════════════════════════════

def deref_type(t: str) -> str:
    """``*T`` -> ``T``; anything else unchanged."""
    return t[1:] if t.startswith("*") else t


def is_context_type(t: str) -> bool:
    return t == CONTEXT_TYPE


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — TRAVERSAL
# ═══════════════════════════════════════════════════════════════════════════

def iter_instructions(fn: Function) -> Iterator[Instruction]:
    for block in fn.blocks:
        yield from block.instrs


def iter_calls(fn: Function) -> Iterator[Tuple[Instruction, CallCommon]]:
    """Yield ``(instruction, common)`` for every Call, Go and Defer in *fn*."""
    for instr in iter_instructions(fn):
        if isinstance(instr, CALL_INSTRUCTIONS):
            yield instr, instr.call


def build_referrers(fn: Function) -> Dict[Value, List[Instruction]]:
    """
    Build the def-use index of *fn*: value -> instructions using it.

    Values defined outside *fn* (constants, globals, functions) appear too,
    keyed by identity.
    """
    refs: Dict[Value, List[Instruction]] = defaultdict(list)
    for instr in iter_instructions(fn):
        for op in instr.operands():
            users = refs[op]
            if not users or users[-1] is not instr:
                users.append(instr)
    return refs


def context_values(
    fn: Function,
    exclude: Optional[Callable[[CallCommon], bool]] = None,
) -> List[Value]:
    """
    Context-typed values visible in *fn*: parameters, free variables and
    instruction results of type ``context.Context``.

    Args:
        fn: The function to inspect
        exclude: Optional predicate; call results for which it returns True
            (e.g. ``context.Background()``) are not counted

    Returns:
        The matching values in definition order
    """
    found: List[Value] = [p for p in fn.params if is_context_type(p.type)]
    found.extend(fv for fv in fn.free_vars if is_context_type(fv.type))
    for instr in iter_instructions(fn):
        if not isinstance(instr, ValueInstruction) or not is_context_type(instr.type):
            continue
        common = getattr(instr, "call", None)
        if common is not None and exclude is not None and exclude(common):
            continue
        found.append(instr)
    return found


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — CALL CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════

def callee_name(common: CallCommon) -> str:
    """Full name of the static callee, or ``""`` for dynamic/invoke calls."""
    callee = common.static_callee()
    return callee.full_name if callee is not None else ""


def receiver_type(common: CallCommon) -> str:
    """
    The receiver type of a method call.

    For static calls this is the callee's declared receiver; for invoke-mode
    calls it is the static type of the interface value.
    """
    if common.method is not None:
        return common.value.type
    callee = common.static_callee()
    if callee is not None and callee.recv:
        return callee.recv
    return ""


def method_name(common: CallCommon) -> str:
    if common.method is not None:
        return common.method
    callee = common.static_callee()
    if callee is not None and callee.recv:
        return callee.name
    return ""


def user_callee(common: CallCommon) -> Optional[Function]:
    """The static callee if it has a body in the program."""
    callee = common.static_callee()
    if callee is None or callee.is_external:
        return None
    return callee


def closure_bindings(common: CallCommon) -> List[Value]:
    value = common.value
    return list(getattr(value, "bindings", ()) or ())


def value_params(fn: Function) -> List[Value]:
    """Parameters followed by free variables: every input of *fn*."""
    return [*fn.params, *fn.free_vars]


def call_inputs(common: CallCommon, callee: Function) -> List[Optional[Value]]:
    """
    The caller-side value of each entry of ``value_params(callee)``.

    Arguments come first, then the bindings of a ``MakeClosure`` callee.
    Positions the call does not supply are ``None``.
    """
    n = len(callee.params)
    inputs: List[Optional[Value]] = list(common.args[:n])
    inputs.extend([None] * (n - len(inputs)))
    bindings = closure_bindings(common)[:len(callee.free_vars)]
    inputs.extend(bindings)
    inputs.extend([None] * (len(callee.free_vars) - len(bindings)))
    return inputs


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — LOCATIONS
# ═══════════════════════════════════════════════════════════════════════════

def instruction_position(instr: Instruction) -> Position:
    """
    Best-effort source position of *instr*.

    Falls back to the call position, then the block position, then the
    function position.
    """
    if instr.pos.is_valid():
        return instr.pos
    common = getattr(instr, "call", None)
    if isinstance(common, CallCommon) and common.pos.is_valid():
        return common.pos
    block = instr.block
    if block is not None and block.pos.is_valid():
        return block.pos
    fn = instr.parent
    if fn is not None and fn.pos.is_valid():
        return fn.pos
    return NO_POS


def block_position(block: BasicBlock) -> Position:
    """Position of *block*: its own, else its first positioned instruction."""
    if block.pos.is_valid():
        return block.pos
    for instr in block.instrs:
        if instr.pos.is_valid():
            return instr.pos
    fn = block.parent
    return fn.pos if fn is not None else NO_POS


def site_id(instr: Instruction) -> str:
    """Stable identifier of an instruction: ``<function>@b<block>#<index>``."""
    block = instr.block
    if block is None or block.parent is None:
        return f"?@{id(instr):x}"
    return f"{block.parent.full_name}@b{block.index}#{instr.block_index()}"


def loop_site_id(fn: Function, header: BasicBlock) -> str:
    return f"{fn.full_name}@loop:b{header.index}"


__all__ = [
    "CONTEXT_TYPE",
    "deref_type",
    "is_context_type",
    "iter_instructions", "iter_calls", "build_referrers", "context_values",
    "callee_name", "receiver_type", "method_name",
    "user_callee", "closure_bindings",
    "value_params", "call_inputs",
    "instruction_position", "block_position", "site_id", "loop_site_id",
]
