# tests/conftest.py
"""
Shared library externals and program builders for the test-suite.

Library functions are body-less :class:`Function` objects, exactly as a
``go/ssa`` exporter would hand them over for callees outside the program.
"""

from typing import Sequence, Tuple

import pytest

from ssadata_shims.ir_builder import (
    FunctionBuilder, external_function, external_method,
)
from ssadata_shims.ssa_ir import Function, Program
from ssadata_shims.taint_catalog import create_default_catalog

# ── types ────────────────────────────────────────────────────────────────

REQUEST = "*net/http.Request"
WRITER = "net/http.ResponseWriter"
DB = "*database/sql.DB"
ROWS = "*database/sql.Rows"
CTX = "context.Context"
CANCEL = "context.CancelFunc"
DURATION = "time.Duration"
DONE_CHAN = "<-chan struct{}"

# ── net/http ─────────────────────────────────────────────────────────────

FORM_VALUE = external_method(REQUEST, "FormValue", ["string"], ["string"])
USER_AGENT = external_method(REQUEST, "UserAgent", [], ["string"])
HTTP_GET = external_function("net/http", "Get", ["string"],
                             ["*net/http.Response", "error"])

# ── database/sql ─────────────────────────────────────────────────────────

DB_QUERY = external_method(DB, "Query", ["string", "...any"], [ROWS, "error"])
DB_QUERY_CONTEXT = external_method(DB, "QueryContext", [CTX, "string", "...any"],
                                   [ROWS, "error"])
DB_EXEC = external_method(DB, "Exec", ["string", "...any"],
                          ["database/sql.Result", "error"])

# ── fmt / strconv / strings ──────────────────────────────────────────────

SPRINTF = external_function("fmt", "Sprintf", ["string", "...any"], ["string"])
PRINTLN = external_function("fmt", "Println", ["...any"], ["int", "error"])
ATOI = external_function("strconv", "Atoi", ["string"], ["int", "error"])
QUOTE = external_function("strconv", "Quote", ["string"], ["string"])
TO_LOWER = external_function("strings", "ToLower", ["string"], ["string"])

# ── context ──────────────────────────────────────────────────────────────

WITH_CANCEL = external_function("context", "WithCancel", [CTX], [CTX, CANCEL])
WITH_TIMEOUT = external_function("context", "WithTimeout", [CTX, DURATION], [CTX, CANCEL])
WITH_DEADLINE = external_function("context", "WithDeadline", [CTX, "time.Time"],
                                  [CTX, CANCEL])
BACKGROUND = external_function("context", "Background", [], [CTX])
TODO = external_function("context", "TODO", [], [CTX])

# ── blocking and misc ────────────────────────────────────────────────────

SLEEP = external_function("time", "Sleep", [DURATION])
TIME_AFTER = external_function("time", "After", [DURATION], ["<-chan time.Time"])
WG_WAIT = external_method("*sync.WaitGroup", "Wait")
READ_FILE = external_function("os", "ReadFile", ["string"], ["[]byte", "error"])
RUN_JOB = external_function("example.com/jobs", "Run", [CTX])
LOG_PRINT = external_function("log", "Print", ["...any"])


# ── builders ─────────────────────────────────────────────────────────────

def handler_builder(name: str = "handler", *extra: Tuple[str, str],
                    file: str = "handler.go") -> FunctionBuilder:
    """``func name(w http.ResponseWriter, r *http.Request, db *sql.DB, extra...)``"""
    return FunctionBuilder(name, [("w", WRITER), ("r", REQUEST), ("db", DB), *extra],
                           file=file, line=1)


def make_program(*functions: Function, name: str = "main") -> Program:
    return Program(list(functions), name=name)


def form_value(b: FunctionBuilder, key: str = "name", line: int = 0):
    """``r.FormValue(key)`` in a builder made by :func:`handler_builder`."""
    return b.call(FORM_VALUE, b.param("r"), key, line=line)


def cancel_pair(b: FunctionBuilder, parent, creator: Function = WITH_CANCEL,
                *extra, line: int = 0):
    """``ctx2, cancel := creator(parent, extra...)``; returns (call, ctx2, cancel)."""
    pair = b.call(creator, parent, *extra, line=line)
    return pair, b.extract(pair, 0), b.extract(pair, 1)


def forever(b: FunctionBuilder, line: int = 0):
    """Open ``for { ... }``: jump into a fresh header block and return it."""
    head = b.new_block("for.body", line=line)
    b.jump(head)
    b.set_block(head)
    return head


@pytest.fixture
def catalog():
    return create_default_catalog()


__all__: Sequence[str] = [
    "REQUEST", "WRITER", "DB", "ROWS", "CTX", "CANCEL", "DURATION", "DONE_CHAN",
    "FORM_VALUE", "USER_AGENT", "HTTP_GET",
    "DB_QUERY", "DB_QUERY_CONTEXT", "DB_EXEC",
    "SPRINTF", "PRINTLN", "ATOI", "QUOTE", "TO_LOWER",
    "WITH_CANCEL", "WITH_TIMEOUT", "WITH_DEADLINE", "BACKGROUND", "TODO",
    "SLEEP", "TIME_AFTER", "WG_WAIT", "READ_FILE", "RUN_JOB", "LOG_PRINT",
    "handler_builder", "make_program", "form_value", "cancel_pair", "forever",
]
