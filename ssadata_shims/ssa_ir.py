# ssadata_shims/ssa_ir.py
"""
ssadata_shims.ssa_ir
====================

In-memory model of a Go program in static single-assignment form.

The analyses in this package never parse source text.  A front end (a
``go/ssa`` exporter, a test, a fixture loader) hands us a :class:`Program`
made of :class:`Function` objects, each a list of :class:`BasicBlock` s whose
instructions reference each other directly.  The shapes follow
``golang.org/x/tools/go/ssa`` closely so that an exporter can be a thin
one-to-one translation.

Values versus instructions
--------------------------
Some nodes are only *values* (:class:`Const`, :class:`Parameter`,
:class:`FreeVar`, :class:`Global`, :class:`Builtin`, :class:`Function`), some
are only *instructions* (:class:`Store`, :class:`If`, :class:`Return`, ...),
and most are both (:class:`ValueInstruction`): ``t3 = t1 + t2`` is the
instruction *and* the value ``t3``.

All nodes compare and hash by identity.

Calls
-----
:class:`Call`, :class:`Go` and :class:`Defer` share a :class:`CallCommon`.
In *call mode* ``value`` is the callee (a :class:`Function`, a
:class:`MakeClosure`, a :class:`Builtin` or any function-typed value) and a
static method call carries its receiver in ``args[0]``.  In *invoke mode*
``method`` is set and ``value`` is the interface receiver.

Types
-----
Types are plain Go type strings (``"*net/http.Request"``,
``"context.Context"``, ``"(context.Context, context.CancelFunc)"``); see
:mod:`ssadata_shims.ssa_helper` for the predicates the analyses use.

Public API
----------
    Position            - file/line/column of a node
    Value, Instruction  - abstract bases
    BasicBlock          - a straight-line sequence of instructions
    Function, Program   - functions and the compilation unit
    CallCommon          - the shared part of Call / Go / Defer
    validate_function   - structural checks for one function
    validate_program    - structural checks for a whole program
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .errors import ErrorCode, MalformedProgramError

logger = logging.getLogger(__name__)

# Every IR node hashes by identity and has a hand-written repr, since operand
# graphs are cyclic (phis in loops) and the generated repr would recurse.
_ir = functools.partial(dataclass, eq=False, repr=False)


@dataclass(frozen=True)
class Position:
    """A source position; ``line == 0`` means unknown."""

    file: str = ""
    line: int = 0
    column: int = 0

    def is_valid(self) -> bool:
        return self.line > 0

    def __str__(self) -> str:
        if not self.is_valid():
            return "-"
        return f"{self.file}:{self.line}:{self.column}"


NO_POS = Position()


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — ABSTRACT BASES
# ═══════════════════════════════════════════════════════════════════════════

@_ir(kw_only=True)
class Node:
    pos: Position = NO_POS


@_ir(kw_only=True)
class Value(Node):
    """Anything that can appear as an operand."""

    name: str = ""
    type: str = ""

    def operands(self) -> List[Value]:
        return []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name or '?'}>"


@_ir(kw_only=True)
class Instruction(Node):
    """Anything that lives inside a basic block."""

    block: Optional[BasicBlock] = None

    def operands(self) -> List[Value]:
        return []

    @property
    def parent(self) -> Optional[Function]:
        return self.block.parent if self.block is not None else None

    def block_index(self) -> int:
        """Position of this instruction inside its block."""
        if self.block is None:
            return -1
        for i, instr in enumerate(self.block.instrs):
            if instr is self:
                return i
        return -1

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


@_ir(kw_only=True)
class ValueInstruction(Value, Instruction):
    """An instruction that also defines an SSA value."""

    def __repr__(self) -> str:
        return Value.__repr__(self)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — NON-INSTRUCTION VALUES
# ═══════════════════════════════════════════════════════════════════════════

@_ir
class Const(Value):
    """A literal.  ``value is None`` is the typed nil."""

    value: Any = None

    def is_nil(self) -> bool:
        return self.value is None

    def __repr__(self) -> str:
        return f"<Const {self.value!r}>"


@_ir
class Parameter(Value):
    index: int = 0
    parent: Optional[Function] = None


@_ir
class FreeVar(Value):
    """A variable captured by a closure; bound by :class:`MakeClosure`."""

    index: int = 0
    parent: Optional[Function] = None


@_ir
class Global(Value):
    """The address of a package-level variable."""

    package: str = ""


@_ir
class Builtin(Value):
    """A Go builtin such as ``len`` or ``append``; ``name`` is its name."""


@_ir
class Function(Value):
    """
    A Go function, method or closure.

    A function without blocks is *external*: its body is not part of the
    program and the analyses fall back to the catalogs for its behaviour.
    """

    package: str = "main"
    recv: Optional[str] = None
    params: List[Parameter] = field(default_factory=list)
    free_vars: List[FreeVar] = field(default_factory=list)
    results: List[str] = field(default_factory=list)
    blocks: List[BasicBlock] = field(default_factory=list)
    parent: Optional[Function] = None
    anon_funcs: List[Function] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        if self.recv:
            return f"({self.recv}).{self.name}"
        return f"{self.package}.{self.name}"

    @property
    def is_external(self) -> bool:
        return not self.blocks

    @property
    def entry(self) -> Optional[BasicBlock]:
        return self.blocks[0] if self.blocks else None

    @property
    def nodes(self) -> List[BasicBlock]:
        return self.blocks

    def instructions(self) -> Iterator[Instruction]:
        for block in self.blocks:
            yield from block.instrs

    def matches(self, package: str, name: str, recv: Optional[str] = None) -> bool:
        """True if this is ``package.name`` (or method ``(recv).name``)."""
        if self.name != name:
            return False
        if recv is not None:
            return self.recv == recv
        return self.recv is None and self.package == package

    def __repr__(self) -> str:
        return f"<Function {self.full_name}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — BASIC BLOCKS
# ═══════════════════════════════════════════════════════════════════════════

class BasicBlock:
    """
    A maximal straight-line sequence of instructions.

    ``successors``/``predecessors``/``id`` let the control-flow analyses
    treat a :class:`Function` as a graph (``entry`` and ``nodes``).
    """

    __slots__ = ("index", "comment", "instrs", "preds", "succs", "parent", "pos")

    def __init__(
        self,
        index: int,
        comment: str = "",
        parent: Optional[Function] = None,
        pos: Position = NO_POS,
    ):
        self.index = index
        self.comment = comment
        self.instrs: List[Instruction] = []
        self.preds: List[BasicBlock] = []
        self.succs: List[BasicBlock] = []
        self.parent = parent
        self.pos = pos

    @property
    def id(self) -> int:
        return self.index

    @property
    def successors(self) -> List[BasicBlock]:
        return self.succs

    @property
    def predecessors(self) -> List[BasicBlock]:
        return self.preds

    @property
    def terminator(self) -> Optional[Instruction]:
        return self.instrs[-1] if self.instrs else None

    def append(self, instr: Instruction) -> Instruction:
        instr.block = self
        self.instrs.append(instr)
        return instr

    def phis(self) -> List[Phi]:
        return [i for i in self.instrs if isinstance(i, Phi)]

    def __repr__(self) -> str:
        label = f" {self.comment}" if self.comment else ""
        return f"<BasicBlock {self.index}{label}>"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — VALUE-PRODUCING INSTRUCTIONS
# ═══════════════════════════════════════════════════════════════════════════

@_ir
class Alloc(ValueInstruction):
    """``new(T)`` or a local whose address is taken; ``type`` is ``*T``."""

    heap: bool = False


@_ir
class CallCommon:
    value: Value
    args: List[Value] = field(default_factory=list)
    method: Optional[str] = None
    pos: Position = NO_POS

    def is_invoke(self) -> bool:
        return self.method is not None

    def static_callee(self) -> Optional[Function]:
        """The statically known callee, looking through closures."""
        if self.method is not None:
            return None
        if isinstance(self.value, Function):
            return self.value
        if isinstance(self.value, MakeClosure):
            return self.value.fn
        return None

    def operands(self) -> List[Value]:
        return [self.value, *self.args]

    def __repr__(self) -> str:
        if self.method is not None:
            return f"<invoke {self.value!r}.{self.method}>"
        return f"<call {self.value!r}>"


@_ir
class Call(ValueInstruction):
    call: CallCommon

    def operands(self) -> List[Value]:
        return self.call.operands()


@_ir
class BinOp(ValueInstruction):
    op: str
    x: Value
    y: Value

    def operands(self) -> List[Value]:
        return [self.x, self.y]


@_ir
class UnOp(ValueInstruction):
    """``*x`` (load), ``<-x`` (receive), ``-x``, ``!x``, ``^x``."""

    op: str
    x: Value
    comma_ok: bool = False

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class _UnaryConversion(ValueInstruction):
    x: Value

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class Convert(_UnaryConversion):
    """A value-changing conversion, e.g. ``string(b)`` or ``int64(i)``."""


@_ir
class ChangeType(_UnaryConversion):
    """A conversion between types with identical underlying types."""


@_ir
class ChangeInterface(_UnaryConversion):
    pass


@_ir
class MakeInterface(_UnaryConversion):
    """Boxes a concrete value into an interface."""


@_ir
class TypeAssert(ValueInstruction):
    x: Value
    asserted_type: str = ""
    comma_ok: bool = False

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class Phi(ValueInstruction):
    """``edges[i]`` flows in from ``block.preds[i]``."""

    edges: List[Value] = field(default_factory=list)
    comment: str = ""

    def operands(self) -> List[Value]:
        return list(self.edges)


@_ir
class Extract(ValueInstruction):
    tuple: Value
    index: int = 0

    def operands(self) -> List[Value]:
        return [self.tuple]


@_ir
class FieldAddr(ValueInstruction):
    """``&x.field`` where ``x`` is a pointer to a struct."""

    x: Value
    field: str

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class Field(ValueInstruction):
    """``x.field`` where ``x`` is a struct value."""

    x: Value
    field: str

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class IndexAddr(ValueInstruction):
    x: Value
    index: Value

    def operands(self) -> List[Value]:
        return [self.x, self.index]


@_ir
class Index(ValueInstruction):
    x: Value
    index: Value

    def operands(self) -> List[Value]:
        return [self.x, self.index]


@_ir
class Slice(ValueInstruction):
    x: Value
    low: Optional[Value] = None
    high: Optional[Value] = None
    max: Optional[Value] = None

    def operands(self) -> List[Value]:
        return [v for v in (self.x, self.low, self.high, self.max) if v is not None]


@_ir
class Lookup(ValueInstruction):
    """``m[k]`` on a map (or a string)."""

    x: Value
    index: Value
    comma_ok: bool = False

    def operands(self) -> List[Value]:
        return [self.x, self.index]


@_ir
class MakeMap(ValueInstruction):
    reserve: Optional[Value] = None

    def operands(self) -> List[Value]:
        return [self.reserve] if self.reserve is not None else []


@_ir
class MakeSlice(ValueInstruction):
    len: Optional[Value] = None
    cap: Optional[Value] = None

    def operands(self) -> List[Value]:
        return [v for v in (self.len, self.cap) if v is not None]


@_ir
class MakeChan(ValueInstruction):
    size: Optional[Value] = None

    def operands(self) -> List[Value]:
        return [self.size] if self.size is not None else []


@_ir
class MakeClosure(ValueInstruction):
    """``bindings[i]`` is the value captured for ``fn.free_vars[i]``."""

    fn: Function
    bindings: List[Value] = field(default_factory=list)

    def operands(self) -> List[Value]:
        return [self.fn, *self.bindings]


@dataclass(eq=False)
class SelectState:
    """One case of a select: ``dir`` is ``"recv"`` or ``"send"``."""

    dir: str
    chan: Value
    send: Optional[Value] = None
    pos: Position = NO_POS


@_ir
class Select(ValueInstruction):
    """
    A select statement.  The result is a tuple ``(index, recvOk, r_0, ...)``;
    ``index`` is the chosen state, or -1 for the default case of a
    non-blocking select.
    """

    states: List[SelectState] = field(default_factory=list)
    blocking: bool = True

    def operands(self) -> List[Value]:
        ops: List[Value] = []
        for st in self.states:
            ops.append(st.chan)
            if st.send is not None:
                ops.append(st.send)
        return ops


@_ir
class Range(ValueInstruction):
    x: Value

    def operands(self) -> List[Value]:
        return [self.x]


@_ir
class Next(ValueInstruction):
    iter: Value
    is_string: bool = False

    def operands(self) -> List[Value]:
        return [self.iter]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 5 — OTHER INSTRUCTIONS
# ═══════════════════════════════════════════════════════════════════════════

@_ir
class Store(Instruction):
    addr: Value
    val: Value

    def operands(self) -> List[Value]:
        return [self.addr, self.val]


@_ir
class MapUpdate(Instruction):
    map: Value
    key: Value
    value: Value

    def operands(self) -> List[Value]:
        return [self.map, self.key, self.value]


@_ir
class Send(Instruction):
    chan: Value
    x: Value

    def operands(self) -> List[Value]:
        return [self.chan, self.x]


@_ir
class Go(Instruction):
    call: CallCommon

    def operands(self) -> List[Value]:
        return self.call.operands()


@_ir
class Defer(Instruction):
    call: CallCommon

    def operands(self) -> List[Value]:
        return self.call.operands()


@_ir
class RunDefers(Instruction):
    pass


@_ir
class If(Instruction):
    """Branches to ``block.succs[0]`` if ``cond`` holds, else ``succs[1]``."""

    cond: Value

    def operands(self) -> List[Value]:
        return [self.cond]


@_ir
class Jump(Instruction):
    pass


@_ir
class Return(Instruction):
    results: List[Value] = field(default_factory=list)

    def operands(self) -> List[Value]:
        return list(self.results)


@_ir
class Panic(Instruction):
    x: Optional[Value] = None

    def operands(self) -> List[Value]:
        return [self.x] if self.x is not None else []


CALL_INSTRUCTIONS = (Call, Go, Defer)

# terminator type -> number of successors it requires
_TERMINATOR_ARITY = {If: 2, Jump: 1, Return: 0, Panic: 0}


# ═══════════════════════════════════════════════════════════════════════════
#  PART 6 — PROGRAM
# ═══════════════════════════════════════════════════════════════════════════

class Program:
    """
    One compilation unit: the top-level functions of a package.

    Closures are reachable through ``Function.anon_funcs`` and are included
    by :meth:`all_functions`.
    """

    def __init__(self, functions: Sequence[Function] = (), name: str = "main"):
        self.name = name
        self.functions: List[Function] = list(functions)

    def add(self, fn: Function) -> Function:
        self.functions.append(fn)
        return fn

    def all_functions(self) -> Iterator[Function]:
        """Every function with a body, enclosing functions before closures."""
        stack = list(reversed(self.functions))
        while stack:
            fn = stack.pop()
            yield fn
            stack.extend(reversed(fn.anon_funcs))

    def function_index(self) -> Dict[str, Function]:
        return {fn.full_name: fn for fn in self.all_functions()}

    def lookup(self, full_name: str) -> Optional[Function]:
        return self.function_index().get(full_name)

    def __iter__(self) -> Iterator[Function]:
        return self.all_functions()

    def __len__(self) -> int:
        return sum(1 for _ in self.all_functions())

    def __repr__(self) -> str:
        return f"<Program {self.name}: {len(self.functions)} functions>"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 7 — STRUCTURAL VALIDATION
# ═══════════════════════════════════════════════════════════════════════════

def _fail(code: ErrorCode, message: str, fn: Function, pos: Position = NO_POS):
    raise MalformedProgramError(message, code=code, function=fn.full_name, position=pos)


def _check_operand(
    fn: Function,
    instr: Instruction,
    op: Value,
    blocks: set,
    known: Optional[Mapping[str, Function]],
) -> None:
    if isinstance(op, (Const, Global, Builtin)):
        return
    if isinstance(op, Function):
        if op.is_external or known is None:
            return
        if known.get(op.full_name) is not op:
            _fail(ErrorCode.UNKNOWN_FUNCTION,
                  f"{instr!r} refers to {op.full_name}, which is not part of the program",
                  fn, instr.pos)
        return
    if isinstance(op, Parameter):
        if op.parent is fn and op in fn.params:
            return
    elif isinstance(op, FreeVar):
        if op in fn.free_vars:
            return
    elif isinstance(op, ValueInstruction):
        if op.block is not None and op.block in blocks and op.block.parent is fn:
            return
    _fail(ErrorCode.DANGLING_OPERAND,
          f"{instr!r} uses {op!r}, which is not defined in this function",
          fn, instr.pos)


def validate_function(
    fn: Function,
    known_functions: Optional[Mapping[str, Function]] = None,
) -> None:
    """
    Check the structural invariants of *fn*.

    Raises MalformedProgramError on the first violation: a block owned by
    another function, asymmetric pred/succ lists, a missing terminator, a phi
    whose arity differs from its block's predecessor count, or an operand
    that is not defined in *fn*.
    """
    if fn.is_external:
        return
    blocks = set(fn.blocks)
    for block in fn.blocks:
        if block.parent is not fn:
            _fail(ErrorCode.FOREIGN_BLOCK, f"{block!r} is not owned by this function", fn)
        for succ in block.succs:
            if succ not in blocks or block not in succ.preds:
                _fail(ErrorCode.BROKEN_EDGE, f"edge {block!r} -> {succ!r} is one-sided", fn)
        for pred in block.preds:
            if pred not in blocks or block not in pred.succs:
                _fail(ErrorCode.BROKEN_EDGE, f"edge {pred!r} -> {block!r} is one-sided", fn)

        term = block.terminator
        arity = _TERMINATOR_ARITY.get(type(term))
        if arity is None:
            _fail(ErrorCode.MISSING_TERMINATOR, f"{block!r} does not end in a terminator", fn)
        if arity != len(block.succs):
            _fail(ErrorCode.BROKEN_EDGE,
                  f"{block!r} ends in {term!r} but has {len(block.succs)} successors",
                  fn, term.pos)

        for instr in block.instrs:
            if instr.block is not block:
                _fail(ErrorCode.FOREIGN_BLOCK, f"{instr!r} is not owned by {block!r}", fn, instr.pos)
            if isinstance(instr, Phi) and len(instr.edges) != len(block.preds):
                _fail(ErrorCode.PHI_ARITY,
                      f"{instr!r} has {len(instr.edges)} edges but {block!r} "
                      f"has {len(block.preds)} predecessors",
                      fn, instr.pos)
            for op in instr.operands():
                _check_operand(fn, instr, op, blocks, known_functions)


def validate_program(program: Program) -> None:
    """Validate every function of *program*; see :func:`validate_function`."""
    known: Dict[str, Function] = {}
    for fn in program.all_functions():
        if fn.full_name in known:
            _fail(ErrorCode.DUPLICATE_FUNCTION, f"{fn.full_name} is defined twice", fn)
        known[fn.full_name] = fn
    for fn in known.values():
        validate_function(fn, known)
    logger.debug("validated %d functions of %s", len(known), program.name)


__all__ = [
    "Position", "NO_POS",
    "Value", "Instruction", "ValueInstruction",
    "Const", "Parameter", "FreeVar", "Global", "Builtin", "Function",
    "BasicBlock",
    "Alloc", "CallCommon", "Call", "BinOp", "UnOp",
    "Convert", "ChangeType", "ChangeInterface", "MakeInterface", "TypeAssert",
    "Phi", "Extract", "FieldAddr", "Field", "IndexAddr", "Index", "Slice",
    "Lookup", "MakeMap", "MakeSlice", "MakeChan", "MakeClosure",
    "SelectState", "Select", "Range", "Next",
    "Store", "MapUpdate", "Send", "Go", "Defer", "RunDefers",
    "If", "Jump", "Return", "Panic",
    "CALL_INSTRUCTIONS",
    "Program",
    "validate_function", "validate_program",
]
