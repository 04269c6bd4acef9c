# ssadata_shims/taint_catalog.py
"""
Source/Sink catalog for the SQL-injection taint analysis.

The catalog is the only place that knows which library calls introduce
externally-controlled data and which calls execute query text.  It is keyed
by the full SSA name of the callee, e.g. ``(*net/http.Request).FormValue``
or ``(*database/sql.DB).QueryContext``.

Sources
-------
Only accessors on the inbound request are sources: methods such as
``FormValue`` and loads of request fields such as ``URL`` or ``Header``.
Literals and constants are never tainted.

Sinks
-----
Query/statement execution methods on ``*sql.DB``, ``*sql.Tx`` and
``*sql.Conn``.  ``argument_index`` counts the receiver as argument 0, so the
query text of ``db.Query(q, args...)`` is argument 1 and that of
``db.QueryContext(ctx, q, args...)`` is argument 2.  Every later argument is
a bind parameter and is never checked.

Usage
-----
    catalog = create_default_catalog()
    catalog.add_source(TaintSource("github.com/gorilla/mux.Vars"))
    catalog.add_sink(TaintSink("(*github.com/jmoiron/sqlx.DB).Select", 2))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterable, Optional, Set, Tuple

from .ssa_helper import callee_name, deref_type
from .ssa_ir import CallCommon, FieldAddr, Value


class SourceKind(Enum):
    """Classification of taint sources."""
    RETURN_VALUE = auto()      # The call result is tainted
    FIELD_READ = auto()        # Loading a field of a request object


class SinkKind(Enum):
    """Classification of taint sinks."""
    SQL_INJECTION = auto()     # CWE-89


@dataclass(frozen=True)
class TaintSource:
    """
    A call whose result carries externally-controlled data.

    Attributes:
        function: Full SSA name of the callee
        kind: How the taint is introduced
        description: Human-readable description
    """
    function: str
    kind: SourceKind = SourceKind.RETURN_VALUE
    description: str = ""


@dataclass(frozen=True)
class SourceField:
    """A struct field whose loads are tainted, e.g. ``net/http.Request.URL``."""
    struct_type: str
    field: str


@dataclass(frozen=True)
class TaintSink:
    """
    A call that must not receive tainted data at ``argument_index``.

    Attributes:
        function: Full SSA name of the callee
        argument_index: Index into the call arguments (receiver is 0)
        kind: The type of vulnerability this represents
        cwe: Associated CWE identifier
    """
    function: str
    argument_index: int = 1
    kind: SinkKind = SinkKind.SQL_INJECTION
    cwe: int = 89
    description: str = ""


@dataclass(frozen=True)
class TaintSanitizer:
    """A call whose result is never tainted, whatever its arguments."""
    function: str
    description: str = ""


@dataclass
class TaintCatalog:
    """
    The complete classification used by the taint analysis.

    Attributes:
        sources: Full callee name -> source
        source_fields: Tainted request fields
        sinks: Full callee name -> sink
        sanitizers: Full callee name -> sanitizer
    """
    sources: Dict[str, TaintSource] = field(default_factory=dict)
    source_fields: Set[SourceField] = field(default_factory=set)
    sinks: Dict[str, TaintSink] = field(default_factory=dict)
    sanitizers: Dict[str, TaintSanitizer] = field(default_factory=dict)

    # ─────────────────────────────────────────────────────────────────
    #  Registration methods
    # ─────────────────────────────────────────────────────────────────

    def add_source(self, source: TaintSource) -> "TaintCatalog":
        self.sources[source.function] = source
        return self

    def add_source_field(self, struct_type: str, field_name: str) -> "TaintCatalog":
        self.source_fields.add(SourceField(struct_type, field_name))
        return self

    def add_sink(self, sink: TaintSink) -> "TaintCatalog":
        self.sinks[sink.function] = sink
        return self

    def add_sanitizer(self, sanitizer: TaintSanitizer) -> "TaintCatalog":
        self.sanitizers[sanitizer.function] = sanitizer
        return self

    def merge(self, other: "TaintCatalog") -> "TaintCatalog":
        """Return a new catalog with the entries of both; *other* wins on conflicts."""
        return TaintCatalog(
            sources={**self.sources, **other.sources},
            source_fields=self.source_fields | other.source_fields,
            sinks={**self.sinks, **other.sinks},
            sanitizers={**self.sanitizers, **other.sanitizers},
        )

    # ─────────────────────────────────────────────────────────────────
    #  Query methods
    # ─────────────────────────────────────────────────────────────────

    def is_source_call(self, common: CallCommon) -> bool:
        return callee_name(common) in self.sources

    def is_sanitizer_call(self, common: CallCommon) -> bool:
        return callee_name(common) in self.sanitizers

    def sink_for_call(self, common: CallCommon) -> Optional[TaintSink]:
        return self.sinks.get(callee_name(common))

    def query_argument(self, common: CallCommon) -> Optional[Value]:
        """The argument a sink checks, or None if *common* is not a sink."""
        sink = self.sink_for_call(common)
        if sink is None or sink.argument_index >= len(common.args):
            return None
        return common.args[sink.argument_index]

    def is_source_field(self, addr: FieldAddr) -> bool:
        return SourceField(deref_type(addr.x.type), addr.field) in self.source_fields

    def __len__(self) -> int:
        return len(self.sources) + len(self.source_fields) + len(self.sinks)


# ═══════════════════════════════════════════════════════════════════════════
#  PREDEFINED CATALOG
# ═══════════════════════════════════════════════════════════════════════════

HTTP_REQUEST = "net/http.Request"

REQUEST_SOURCE_METHODS: Tuple[str, ...] = (
    "FormValue", "PostFormValue", "FormFile", "Referer", "UserAgent",
    "Cookie", "Cookies", "MultipartReader", "BasicAuth",
)

REQUEST_SOURCE_FIELDS: Tuple[str, ...] = (
    "URL", "Header", "Form", "PostForm", "MultipartForm", "Body",
    "RequestURI", "Host", "Trailer",
)

SQL_HANDLES: Tuple[str, ...] = (
    "*database/sql.DB", "*database/sql.Tx", "*database/sql.Conn",
)

# method name -> index of the query text (receiver is argument 0)
SQL_QUERY_METHODS: Dict[str, int] = {
    "Query": 1, "QueryRow": 1, "Exec": 1, "Prepare": 1,
    "QueryContext": 2, "QueryRowContext": 2, "ExecContext": 2, "PrepareContext": 2,
}


def method_key(recv: str, method: str) -> str:
    return f"({recv}).{method}"


def create_default_catalog() -> TaintCatalog:
    """The fixed catalog: ``net/http`` request accessors and ``database/sql`` sinks."""
    catalog = TaintCatalog()
    for name in REQUEST_SOURCE_METHODS:
        catalog.add_source(TaintSource(
            method_key(f"*{HTTP_REQUEST}", name),
            description=f"http.Request.{name}",
        ))
    for name in REQUEST_SOURCE_FIELDS:
        catalog.add_source_field(HTTP_REQUEST, name)
    for recv in SQL_HANDLES:
        for name, index in SQL_QUERY_METHODS.items():
            catalog.add_sink(TaintSink(
                method_key(recv, name),
                argument_index=index,
                description=f"SQL query text passed to {recv.lstrip('*')}.{name}",
            ))
    return catalog


def catalog_from_entries(
    sources: Iterable[str] = (),
    sinks: Iterable[Tuple[str, int]] = (),
    sanitizers: Iterable[str] = (),
) -> TaintCatalog:
    """Build a catalog from plain names, e.g. for project-specific wrappers."""
    catalog = TaintCatalog()
    for name in sources:
        catalog.add_source(TaintSource(name))
    for name, index in sinks:
        catalog.add_sink(TaintSink(name, index))
    for name in sanitizers:
        catalog.add_sanitizer(TaintSanitizer(name))
    return catalog


__all__ = [
    "SourceKind", "SinkKind",
    "TaintSource", "SourceField", "TaintSink", "TaintSanitizer",
    "TaintCatalog",
    "REQUEST_SOURCE_METHODS", "REQUEST_SOURCE_FIELDS",
    "SQL_HANDLES", "SQL_QUERY_METHODS",
    "method_key", "create_default_catalog", "catalog_from_entries",
]
