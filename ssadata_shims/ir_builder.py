# ssadata_shims/ir_builder.py
"""
Fluent construction of well-formed SSA functions.

Front ends that do not map one-to-one onto :mod:`ssadata_shims.ssa_ir` and the
test-suite build functions through :class:`FunctionBuilder`, which takes care
of the bookkeeping that is easy to get wrong by hand: block indices,
symmetric pred/succ lists, phi edge ordering, value naming and the variadic
argument packing Go performs for ``f(args...)``.

Usage example
-------------
::

    from ssadata_shims.ir_builder import FunctionBuilder, external_method

    FORM_VALUE = external_method("*net/http.Request", "FormValue", results=["string"])
    DB_QUERY = external_method("*database/sql.DB", "Query",
                               results=["*database/sql.Rows", "error"])

    b = FunctionBuilder("handler", [("db", "*database/sql.DB"),
                                    ("r", "*net/http.Request")])
    db, r = b.params
    name = b.call(FORM_VALUE, r, b.const("name"), line=10)
    query = b.concat("SELECT * FROM users WHERE name = '", name, "'")
    b.call(DB_QUERY, db, query, line=11)
    b.ret()
    handler = b.build()
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ErrorCode, MalformedProgramError
from .ssa_ir import (
    NO_POS, Alloc, BasicBlock, BinOp, Call, CallCommon, ChangeInterface,
    ChangeType, Const, Convert, Defer, Extract, Field, FieldAddr, FreeVar,
    Function, Go, If, Index, IndexAddr, Instruction, Jump, Lookup, MakeChan,
    MakeClosure, MakeInterface, MakeMap, MakeSlice, MapUpdate, Next, Panic,
    Parameter, Phi, Position, Range, Return, RunDefers, Select, SelectState,
    Send, Slice, Store, TypeAssert, UnOp, Value, ValueInstruction,
    validate_function,
)

Operand = Union[Value, str, int, bool, None]


def _signature(params: Iterable[str], results: Sequence[str]) -> str:
    sig = f"func({', '.join(params)})"
    if len(results) == 1:
        return f"{sig} {results[0]}"
    if results:
        return f"{sig} ({', '.join(results)})"
    return sig


def result_type(results: Sequence[str]) -> str:
    """The type of a call returning *results*: a tuple type for 2+ results."""
    if not results:
        return ""
    if len(results) == 1:
        return results[0]
    return f"({', '.join(results)})"


def external_function(
    package: str,
    name: str,
    params: Sequence[str] = (),
    results: Sequence[str] = (),
) -> Function:
    """A body-less package-level function such as ``context.Background``."""
    return Function(name=name, package=package, results=list(results),
                    type=_signature(params, results))


def external_method(
    recv: str,
    name: str,
    params: Sequence[str] = (),
    results: Sequence[str] = (),
) -> Function:
    """A body-less method such as ``(*database/sql.DB).Query``."""
    package = recv.lstrip("*").rsplit(".", 1)[0]
    return Function(name=name, package=package, recv=recv, results=list(results),
                    type=_signature([recv, *params], results))


class FunctionBuilder:
    """
    Incrementally assembles one :class:`Function`.

    Instructions are appended to :attr:`current`; terminators (:meth:`jump`,
    :meth:`if_`, :meth:`ret`, :meth:`panic`) wire up the block edges.  Every
    emitting method accepts ``line``/``column`` keywords for the position.
    """

    def __init__(
        self,
        name: str,
        params: Sequence[Tuple[str, str]] = (),
        results: Sequence[str] = (),
        *,
        package: str = "main",
        recv: Optional[str] = None,
        free_vars: Sequence[Tuple[str, str]] = (),
        file: str = "main.go",
        line: int = 0,
        parent: Optional[Function] = None,
    ):
        self.file = file
        self.fn = Function(
            name=name,
            package=package,
            recv=recv,
            results=list(results),
            parent=parent,
            type=_signature([t for _, t in params], results),
            pos=self._pos(line, 1),
        )
        self.params: List[Parameter] = [
            Parameter(name=n, type=t, index=i, parent=self.fn)
            for i, (n, t) in enumerate(params)
        ]
        self.free_vars: List[FreeVar] = [
            FreeVar(name=n, type=t, index=i, parent=self.fn)
            for i, (n, t) in enumerate(free_vars)
        ]
        self.fn.params = self.params
        self.fn.free_vars = self.free_vars
        self._counter = 0
        self._incoming: Dict[Phi, List[Tuple[BasicBlock, Value]]] = {}
        self._children: List[FunctionBuilder] = []
        self._built = False
        self.current = self.new_block("entry")

    # ---- lookup ---------------------------------------------------------

    def param(self, name: str) -> Parameter:
        for p in self.params:
            if p.name == name:
                return p
        raise KeyError(name)

    def free_var(self, name: str) -> FreeVar:
        for fv in self.free_vars:
            if fv.name == name:
                return fv
        raise KeyError(name)

    # ---- blocks ---------------------------------------------------------

    def new_block(self, comment: str = "", line: int = 0) -> BasicBlock:
        block = BasicBlock(len(self.fn.blocks), comment, self.fn, self._pos(line, 1))
        self.fn.blocks.append(block)
        return block

    def set_block(self, block: BasicBlock) -> BasicBlock:
        self.current = block
        return block

    # ---- internals ------------------------------------------------------

    def _pos(self, line: int, column: int) -> Position:
        if not line:
            return NO_POS
        return Position(self.file, line, column)

    def _name(self) -> str:
        self._counter += 1
        return f"t{self._counter - 1}"

    def _value(self, v: Operand, type: str = "string") -> Value:
        if isinstance(v, Value):
            return v
        if isinstance(v, bool):
            return Const(value=v, type="bool", name=repr(v))
        if isinstance(v, int):
            return Const(value=v, type="int", name=repr(v))
        return Const(value=v, type=type, name=repr(v))

    def _emit(self, instr: Instruction, line: int = 0, column: int = 0) -> Any:
        if line:
            instr.pos = self._pos(line, column or 1)
        if isinstance(instr, ValueInstruction) and not instr.name:
            instr.name = self._name()
        self.current.append(instr)
        return instr

    def _link(self, *targets: BasicBlock) -> None:
        for t in targets:
            self.current.succs.append(t)
            t.preds.append(self.current)

    # ---- constants ------------------------------------------------------

    def const(self, value: Any, type: str = "string") -> Const:
        return self._value(value, type)

    def nil(self, type: str) -> Const:
        return Const(value=None, type=type, name="nil")

    # ---- memory ---------------------------------------------------------

    def alloc(self, elem_type: str, *, heap: bool = True, name: str = "",
              line: int = 0, column: int = 0) -> Alloc:
        return self._emit(Alloc(heap=heap, name=name, type=f"*{elem_type}"), line, column)

    def store(self, addr: Value, val: Operand, *, line: int = 0, column: int = 0) -> Store:
        return self._emit(Store(addr, self._value(val)), line, column)

    def load(self, addr: Value, *, line: int = 0, column: int = 0) -> UnOp:
        elem = addr.type[1:] if addr.type.startswith("*") else ""
        return self._emit(UnOp("*", addr, type=elem), line, column)

    def field_addr(self, x: Value, field: str, type: str = "string", *,
                   line: int = 0, column: int = 0) -> FieldAddr:
        return self._emit(FieldAddr(x, field, type=f"*{type}"), line, column)

    def field(self, x: Value, field: str, type: str = "string", *,
              line: int = 0, column: int = 0) -> Field:
        return self._emit(Field(x, field, type=type), line, column)

    def load_field(self, x: Value, field: str, type: str = "string", *,
                   line: int = 0, column: int = 0) -> UnOp:
        """``x.field`` through a pointer: FieldAddr followed by a load."""
        return self.load(self.field_addr(x, field, type), line=line, column=column)

    def store_field(self, x: Value, field: str, val: Operand, type: str = "string", *,
                    line: int = 0, column: int = 0) -> Store:
        return self.store(self.field_addr(x, field, type), val, line=line, column=column)

    def composite(self, type: str, fields: Optional[Dict[str, Operand]] = None, *,
                  line: int = 0, column: int = 0) -> Alloc:
        """``&T{f: v, ...}``: a heap Alloc plus one field store per entry."""
        obj = self.alloc(type, line=line, column=column)
        for fname, fval in (fields or {}).items():
            val = self._value(fval)
            self.store_field(obj, fname, val, val.type or "string")
        return obj

    def index_addr(self, x: Value, index: Operand, elem: str = "string", *,
                   line: int = 0, column: int = 0) -> IndexAddr:
        return self._emit(IndexAddr(x, self._value(index), type=f"*{elem}"), line, column)

    def index(self, x: Value, index: Operand, elem: str = "string", *,
              line: int = 0, column: int = 0) -> Index:
        return self._emit(Index(x, self._value(index), type=elem), line, column)

    def slice(self, x: Value, low: Operand = None, high: Operand = None, *,
              type: str = "", line: int = 0, column: int = 0) -> Slice:
        lo = self._value(low) if low is not None else None
        hi = self._value(high) if high is not None else None
        if not type:
            elem = x.type.lstrip("*")
            type = "[]" + elem.split("]", 1)[1] if elem.startswith("[") else x.type
        return self._emit(Slice(x, lo, hi, type=type), line, column)

    def array(self, values: Sequence[Operand], elem: str = "string", *,
              line: int = 0, column: int = 0) -> Slice:
        """``[]elem{v0, v1, ...}``: an array Alloc, element stores and a Slice."""
        arr = self.alloc(f"[{len(values)}]{elem}", line=line, column=column)
        for i, v in enumerate(values):
            self.store(self.index_addr(arr, i, elem), v)
        return self.slice(arr)

    def varargs(self, *values: Operand, elem: str = "any") -> Slice:
        """Pack the trailing arguments of a variadic call, boxing as Go does."""
        arr = self.alloc(f"[{len(values)}]{elem}", heap=False)
        for i, v in enumerate(values):
            val = self._value(v)
            if elem in ("any", "interface{}") and val.type not in ("any", "interface{}"):
                val = self.make_interface(val, elem)
            self.store(self.index_addr(arr, i, elem), val)
        return self.slice(arr)

    # ---- maps and channels ---------------------------------------------

    def make_map(self, type: str = "map[string]string", *, line: int = 0) -> MakeMap:
        return self._emit(MakeMap(type=type), line)

    def map_update(self, m: Value, key: Operand, val: Operand, *, line: int = 0) -> MapUpdate:
        return self._emit(MapUpdate(m, self._value(key), self._value(val)), line)

    def lookup(self, m: Value, key: Operand, type: str = "string", *,
               comma_ok: bool = False, line: int = 0) -> Lookup:
        if comma_ok:
            type = f"({type}, bool)"
        return self._emit(Lookup(m, self._value(key), comma_ok, type=type), line)

    def make_slice(self, type: str, length: Operand = 0, cap: Operand = None, *,
                   line: int = 0) -> MakeSlice:
        c = self._value(cap) if cap is not None else None
        return self._emit(MakeSlice(self._value(length), c, type=type), line)

    def make_chan(self, type: str = "chan int", size: Operand = None, *,
                  line: int = 0) -> MakeChan:
        s = self._value(size) if size is not None else None
        return self._emit(MakeChan(s, type=type), line)

    def send(self, ch: Value, x: Operand, *, line: int = 0) -> Send:
        return self._emit(Send(ch, self._value(x)), line)

    def recv(self, ch: Value, type: str = "", *, comma_ok: bool = False,
             line: int = 0, column: int = 0) -> UnOp:
        if not type:
            type = ch.type.split(" ", 1)[-1]
        if comma_ok:
            type = f"({type}, bool)"
        return self._emit(UnOp("<-", ch, comma_ok, type=type), line, column)

    def select(self, states: Sequence[Union[SelectState, Tuple]], *, blocking: bool = True,
               line: int = 0, column: int = 0) -> Select:
        """``states`` holds ``("recv", ch)`` / ``("send", ch, v)`` tuples."""
        built = []
        for st in states:
            if isinstance(st, SelectState):
                built.append(st)
            elif st[0] == "send":
                built.append(SelectState("send", st[1], self._value(st[2])))
            else:
                built.append(SelectState("recv", st[1]))
        return self._emit(Select(built, blocking, type="(int, bool)"), line, column)

    def range_(self, x: Value, *, line: int = 0) -> Range:
        return self._emit(Range(x, type="iter"), line)

    def next_(self, it: Value, *, is_string: bool = False, line: int = 0) -> Next:
        return self._emit(Next(it, is_string, type="(bool, any, any)"), line)

    # ---- operators and conversions -------------------------------------

    def binop(self, op: str, x: Operand, y: Operand, type: Optional[str] = None, *,
              line: int = 0, column: int = 0) -> BinOp:
        xv, yv = self._value(x), self._value(y)
        if type is None:
            type = "bool" if op in ("==", "!=", "<", "<=", ">", ">=") else xv.type
        return self._emit(BinOp(op, xv, yv, type=type), line, column)

    def concat(self, *parts: Operand, line: int = 0, column: int = 0) -> Value:
        """Left-folded string ``+`` over *parts*."""
        acc = self._value(parts[0])
        for p in parts[1:]:
            acc = self.binop("+", acc, p, "string", line=line, column=column)
        return acc

    def unop(self, op: str, x: Value, type: Optional[str] = None, *,
             line: int = 0) -> UnOp:
        return self._emit(UnOp(op, x, type=type if type is not None else x.type), line)

    def convert(self, x: Operand, type: str, *, line: int = 0) -> Convert:
        return self._emit(Convert(self._value(x), type=type), line)

    def change_type(self, x: Value, type: str, *, line: int = 0) -> ChangeType:
        return self._emit(ChangeType(x, type=type), line)

    def change_interface(self, x: Value, type: str, *, line: int = 0) -> ChangeInterface:
        return self._emit(ChangeInterface(x, type=type), line)

    def make_interface(self, x: Operand, type: str = "any", *, line: int = 0) -> MakeInterface:
        return self._emit(MakeInterface(self._value(x), type=type), line)

    def type_assert(self, x: Value, type: str, *, comma_ok: bool = False,
                    line: int = 0) -> TypeAssert:
        result = f"({type}, bool)" if comma_ok else type
        return self._emit(TypeAssert(x, type, comma_ok, type=result), line)

    def extract(self, tup: Value, index: int, type: str = "", *, line: int = 0) -> Extract:
        if not type and tup.type.startswith("("):
            elems = [e.strip() for e in tup.type[1:-1].split(",")]
            if index < len(elems):
                type = elems[index]
        return self._emit(Extract(tup, index, type=type), line)

    def phi(self, type: str = "string", incoming: Sequence[Tuple[BasicBlock, Operand]] = (), *,
            comment: str = "") -> Phi:
        """
        A phi at the head of the current block.  Incoming values are keyed by
        predecessor and ordered against ``block.preds`` in :meth:`build`.
        """
        phi = Phi(type=type, comment=comment, name=self._name())
        block = self.current
        at = len(block.phis())
        phi.block = block
        block.instrs.insert(at, phi)
        self._incoming[phi] = []
        for pred, val in incoming:
            self.add_incoming(phi, pred, val)
        return phi

    def add_incoming(self, phi: Phi, pred: BasicBlock, val: Operand) -> None:
        self._incoming[phi].append((pred, self._value(val, phi.type)))

    # ---- calls ----------------------------------------------------------

    def _common(self, callee: Value, args: Sequence[Operand], method: Optional[str] = None,
                line: int = 0, column: int = 0) -> CallCommon:
        return CallCommon(callee, [self._value(a) for a in args], method,
                          self._pos(line, column or 1))

    def call(self, callee: Value, *args: Operand, type: Optional[str] = None,
             line: int = 0, column: int = 0) -> Call:
        if type is None:
            fn = callee.fn if isinstance(callee, MakeClosure) else callee
            type = result_type(fn.results) if isinstance(fn, Function) else ""
        common = self._common(callee, args, None, line, column)
        return self._emit(Call(common, type=type), line, column)

    def invoke(self, recv: Value, method: str, *args: Operand, type: str = "",
               line: int = 0, column: int = 0) -> Call:
        """An interface method call, e.g. ``ctx.Done()`` or ``r.Read(buf)``."""
        common = self._common(recv, args, method, line, column)
        return self._emit(Call(common, type=type), line, column)

    def go(self, callee: Value, *args: Operand, line: int = 0, column: int = 0) -> Go:
        return self._emit(Go(self._common(callee, args, None, line, column)), line, column)

    def defer(self, callee: Value, *args: Operand, line: int = 0, column: int = 0) -> Defer:
        return self._emit(Defer(self._common(callee, args, None, line, column)), line, column)

    def defer_invoke(self, recv: Value, method: str, *args: Operand, line: int = 0) -> Defer:
        return self._emit(Defer(self._common(recv, args, method, line)), line)

    def run_defers(self) -> RunDefers:
        return self._emit(RunDefers())

    # ---- closures -------------------------------------------------------

    def closure(
        self,
        params: Sequence[Tuple[str, str]] = (),
        results: Sequence[str] = (),
        free_vars: Sequence[Tuple[str, str]] = (),
        *,
        line: int = 0,
    ) -> FunctionBuilder:
        """A builder for an anonymous function nested in this one."""
        child = FunctionBuilder(
            f"{self.fn.name}${len(self.fn.anon_funcs) + 1}",
            params, results,
            package=self.fn.package, free_vars=free_vars,
            file=self.file, line=line, parent=self.fn,
        )
        self.fn.anon_funcs.append(child.fn)
        self._children.append(child)
        return child

    def make_closure(self, fn: Union[Function, FunctionBuilder], *bindings: Value,
                     line: int = 0) -> Union[MakeClosure, Function]:
        """Bind free variables; a closure that captures nothing is the Function itself."""
        target = fn.fn if isinstance(fn, FunctionBuilder) else fn
        if not bindings:
            return target
        return self._emit(MakeClosure(target, list(bindings), type=target.type), line)

    # ---- terminators ----------------------------------------------------

    def jump(self, target: BasicBlock, *, line: int = 0) -> Jump:
        instr = self._emit(Jump(), line)
        self._link(target)
        return instr

    def if_(self, cond: Value, then: BasicBlock, else_: BasicBlock, *, line: int = 0) -> If:
        instr = self._emit(If(cond), line)
        self._link(then, else_)
        return instr

    def ret(self, *values: Operand, line: int = 0) -> Return:
        return self._emit(Return([self._value(v) for v in values]), line)

    def panic(self, x: Operand = None, *, line: int = 0) -> Panic:
        return self._emit(Panic(self._value(x) if x is not None else None), line)

    # ---- finish ---------------------------------------------------------

    def build(self, *, validate: bool = True) -> Function:
        """Order phi edges against their block's predecessors and return the function."""
        for phi, incoming in self._incoming.items():
            edges = []
            for pred in phi.block.preds:
                match = [v for b, v in incoming if b is pred]
                if not match:
                    raise MalformedProgramError(
                        f"{phi!r} has no incoming value from {pred!r}",
                        code=ErrorCode.PHI_ARITY, function=self.fn.full_name,
                    )
                edges.append(match[0])
            phi.edges = edges
        self._incoming = {}
        self._built = True
        for child in self._children:
            if not child._built:
                child.build(validate=validate)
        if validate:
            validate_function(self.fn)
        return self.fn


__all__ = [
    "FunctionBuilder",
    "external_function",
    "external_method",
    "result_type",
]
