"""
ssadata_shims/checkers.py
═════════════════════════

Checker framework that turns the analyses of this package into findings.

Architecture
────────────

  ┌─────────────────────────────────────────────────────────┐
  │                   CheckerRunner                         │
  │  validate_program ─► call graph ─► summaries (once)     │
  │  ┌──────────────┐  ┌──────────────┐  ┌──────────────┐   │
  │  │ SqlInjection │  │ CancelScope  │  │ LoopGuard    │   │
  │  │   Checker    │  │ / Goroutine  │  │  Checker     │   │
  │  └──────┬───────┘  └──────┬───────┘  └──────┬───────┘   │
  │         │                 │                 │           │
  │  ┌──────▼─────────────────▼─────────────────▼────────┐  │
  │  │   taint_analysis │ interproc_analysis │ callgraph │  │
  │  │   cancel_scope   │ loop_guard │ ctrlflow_analyses │  │
  │  └──────────────────────────┬────────────────────────┘  │
  │                             │                           │
  │  ┌──────────────────────────▼────────────────────────┐  │
  │  │  Findings: deduplicated by (kind, site), sorted   │  │
  │  └───────────────────────────────────────────────────┘  │
  └─────────────────────────────────────────────────────────┘

Each Checker follows a four-phase lifecycle:

  1. **configure()**        — read options
  2. **collect_evidence()** — run analyses, gather suspicious sites
  3. **diagnose()**         — turn evidence into findings
  4. **report()**           — hand back the findings

A malformed program aborts the run with
:class:`~ssadata_shims.errors.MalformedProgramError`; nothing is reported
for it.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Set, Tuple, Type

from .callgraph import CallGraph, build_callgraph, verify_callgraph
from .cancel_scope import (
    CancelCatalog, EscapeReason, find_goroutine_originations, track_cancel_scopes,
)
from .interproc_analysis import SummaryBuilder, SummaryCache
from .loop_guard import BlockingCatalog, classify_loops
from .sql_injection import InjectionSite, SqlInjectionDetector
from .ssa_helper import (
    block_position, callee_name, instruction_position, loop_site_id, site_id,
)
from .ssa_ir import Position, Program, validate_program
from .taint_catalog import TaintCatalog, create_default_catalog

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — FINDING MODEL
# ═════════════════════════════════════════════════════════════════════════

class FindingKind(Enum):
    INJECTION = "Injection"
    UNCONTROLLED_CANCEL = "UncontrolledCancel"
    UNGUARDED_LOOP = "UnguardedLoop"


@dataclass(frozen=True)
class SourceLocation:
    """A specific point in source code."""
    file: str = ""
    line: int = 0
    column: int = 0

    @classmethod
    def from_position(cls, pos: Position) -> "SourceLocation":
        return cls(pos.file, pos.line, pos.column)

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


@dataclass(frozen=True)
class Finding:
    """
    A single finding.

    Attributes
    ----------
    location     : Primary source location
    kind         : FindingKind
    site         : Stable identifier of the call site or loop
                   (``<function>@b<block>#<index>`` / ``<function>@loop:b<header>``)
    rule_id      : Rule identifier (``G701``, ``G118``)
    cwe          : CWE identifier (0 = none)
    message      : Human-readable description
    function     : Full name of the function containing the site
    checker_name : Name of the checker that produced this
    """
    location: SourceLocation
    kind: FindingKind
    site: str
    rule_id: str = ""
    cwe: int = 0
    message: str = ""
    function: str = ""
    checker_name: str = ""

    @property
    def sort_key(self) -> Tuple[str, int, int, str, str]:
        loc = self.location
        return (loc.file, loc.line, loc.column, self.kind.value, self.site)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.location.file,
            "line": self.location.line,
            "column": self.location.column,
            "kind": self.kind.value,
            "site": self.site,
            "rule": self.rule_id,
            "cwe": self.cwe,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"{self.location}: {self.rule_id}: {self.message} [{self.kind.value}]"


def sort_findings(findings: Sequence[Finding]) -> List[Finding]:
    """Drop repeated (kind, site) pairs and order by location."""
    unique: Dict[Tuple[FindingKind, str], Finding] = {}
    for f in findings:
        unique.setdefault((f.kind, f.site), f)
    return sorted(unique.values(), key=lambda f: f.sort_key)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — CHECKER BASE CLASS
# ═════════════════════════════════════════════════════════════════════════

class Checker(ABC):
    """
    Abstract base class for all checkers.

    Subclass Contract
    ─────────────────
      - Override ``name``, ``description``, ``rule_id``, ``kind``, ``cwe``
      - Implement ``collect_evidence()`` and ``diagnose()``
      - Optionally override ``configure()``
    """

    name: ClassVar[str] = "base-checker"
    description: ClassVar[str] = ""
    rule_id: ClassVar[str] = ""
    kind: ClassVar[FindingKind] = FindingKind.INJECTION
    cwe: ClassVar[int] = 0

    def __init__(self) -> None:
        self._findings: List[Finding] = []
        self._sites: Set[str] = set()
        self._config: Dict[str, Any] = {}

    @property
    def findings(self) -> List[Finding]:
        return list(self._findings)

    def configure(self, ctx: CheckerContext) -> None:
        """Called before evidence collection.  Default does nothing."""
        pass

    @abstractmethod
    def collect_evidence(self, ctx: CheckerContext) -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: CheckerContext) -> None:
        ...

    def report(self, ctx: CheckerContext) -> List[Finding]:
        return list(self._findings)

    def _emit(self, site: str, pos: Position, message: str, function: str = "") -> None:
        """Record a finding unless *site* was already reported."""
        if site in self._sites:
            return
        self._sites.add(site)
        self._findings.append(Finding(
            location=SourceLocation.from_position(pos),
            kind=self.kind,
            site=site,
            rule_id=self.rule_id,
            cwe=self.cwe,
            message=message,
            function=function,
            checker_name=self.name,
        ))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


@dataclass
class CheckerContext:
    """
    Shared context passed to every checker during execution.

    Attributes
    ----------
    program          : the validated Program
    callgraph        : its CallGraph
    catalog          : sources / sinks / sanitizers
    cancel_catalog   : scope creators and root-context functions
    blocking_catalog : blocking calls
    analyses         : shared analysis results (keyed by name)
    options          : user-provided options dict
    stats            : mutable dict for timing / counting statistics
    """
    program: Program
    callgraph: CallGraph
    catalog: TaintCatalog = field(default_factory=create_default_catalog)
    cancel_catalog: CancelCatalog = field(default_factory=CancelCatalog)
    blocking_catalog: BlockingCatalog = field(default_factory=BlockingCatalog)
    analyses: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)

    def get_analysis(self, name: str) -> Any:
        return self.analyses.get(name)

    def set_analysis(self, name: str, result: Any) -> None:
        self.analyses[name] = result

    def get_option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    @property
    def summaries(self) -> SummaryCache:
        """Taint summaries, built on first use and shared afterwards."""
        cache = self.analyses.get("summaries")
        if cache is None:
            t0 = time.monotonic()
            cache = SummaryBuilder(self.program, self.callgraph, self.catalog).build()
            self.stats["summaries_elapsed_ms"] = (time.monotonic() - t0) * 1000.0
            self.stats["summaries"] = len(cache)
            self.analyses["summaries"] = cache
        return cache


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — CHECKER REGISTRY
# ═════════════════════════════════════════════════════════════════════════

class CheckerRegistry:
    """
    Registry of available checkers.

    Usage
    -----
    >>> registry = CheckerRegistry()
    >>> registry.register(SqlInjectionChecker)
    >>> registry.disable("loop-guard")
    >>> checkers = registry.get_enabled()
    """

    def __init__(self) -> None:
        self._checkers: Dict[str, Type[Checker]] = {}
        self._disabled: Set[str] = set()

    def register(self, checker_cls: Type[Checker]) -> None:
        self._checkers[checker_cls.name] = checker_cls

    def unregister(self, name: str) -> None:
        self._checkers.pop(name, None)

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def enable(self, name: str) -> None:
        self._disabled.discard(name)

    def get_all(self) -> List[Type[Checker]]:
        return list(self._checkers.values())

    def get_enabled(self) -> List[Type[Checker]]:
        return [cls for name, cls in self._checkers.items()
                if name not in self._disabled]

    def get_by_name(self, name: str) -> Optional[Type[Checker]]:
        return self._checkers.get(name)

    def filter_by_rule(self, rule_id: str) -> List[Type[Checker]]:
        return [cls for cls in self._checkers.values() if cls.rule_id == rule_id]

    @property
    def names(self) -> List[str]:
        return sorted(self._checkers.keys())


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — CHECKERS
# ═════════════════════════════════════════════════════════════════════════

# ─────────────────────────────────────────────────────────────────────────
#  4.1  SQL Injection (CWE-89)
# ─────────────────────────────────────────────────────────────────────────

class SqlInjectionChecker(Checker):
    """Request data reaching the query text of a ``database/sql`` call."""

    name: ClassVar[str] = "sql-injection"
    description: ClassVar[str] = "SQL string built from request data"
    rule_id: ClassVar[str] = "G701"
    kind: ClassVar[FindingKind] = FindingKind.INJECTION
    cwe: ClassVar[int] = 89

    def __init__(self) -> None:
        super().__init__()
        self._evidence: List[InjectionSite] = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        detector = SqlInjectionDetector(ctx.program, ctx.catalog, ctx.summaries)
        self._evidence = detector.run()

    def diagnose(self, ctx: CheckerContext) -> None:
        for ev in self._evidence:
            target = ev.sink.description if ev.sink and ev.sink.description else callee_name(ev.call.call)
            message = f"SQL string formatting: request data reaches {target}"
            if ev.via is not None:
                message += f" (passed in from {ev.via.parent.full_name})"
            self._emit(site_id(ev.call), instruction_position(ev.call), message,
                       ev.function.full_name)


# ─────────────────────────────────────────────────────────────────────────
#  4.2  Uncontrolled cancellation (CWE-400)
# ─────────────────────────────────────────────────────────────────────────

_ESCAPE_MESSAGES = {
    EscapeReason.DISCARDED: "the cancel function returned by {call} is discarded",
    EscapeReason.RETURNED: "the cancel function returned by {call} is returned to the caller",
    EscapeReason.NEVER_INVOKED: "the cancel function returned by {call} is not called on all paths",
}


class CancelScopeChecker(Checker):
    """Cancel functions of derived contexts that are never released."""

    name: ClassVar[str] = "cancel-scope"
    description: ClassVar[str] = "Cancelable context whose cancel function is lost"
    rule_id: ClassVar[str] = "G118"
    kind: ClassVar[FindingKind] = FindingKind.UNCONTROLLED_CANCEL
    cwe: ClassVar[int] = 400

    def __init__(self) -> None:
        super().__init__()
        self._leaked = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        scopes = track_cancel_scopes(ctx.program, ctx.cancel_catalog)
        ctx.set_analysis("cancel_scopes", scopes)
        self._leaked = [s for s in scopes if s.is_leaked]

    def diagnose(self, ctx: CheckerContext) -> None:
        for scope in self._leaked:
            template = _ESCAPE_MESSAGES[scope.reason]
            call = callee_name(scope.creation.call)
            self._emit(site_id(scope.creation), instruction_position(scope.creation),
                       template.format(call=call), scope.function.full_name)


class GoroutineContextChecker(Checker):
    """Goroutines that start a fresh root context instead of using the caller's."""

    name: ClassVar[str] = "goroutine-context"
    description: ClassVar[str] = "Goroutine detaches from the available context"
    rule_id: ClassVar[str] = "G118"
    kind: ClassVar[FindingKind] = FindingKind.UNCONTROLLED_CANCEL
    cwe: ClassVar[int] = 400

    def __init__(self) -> None:
        super().__init__()
        self._detached = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        self._detached = find_goroutine_originations(ctx.program, ctx.cancel_catalog)

    def diagnose(self, ctx: CheckerContext) -> None:
        for d in self._detached:
            call = callee_name(d.origination.call)
            spawner = d.spawn.parent.full_name if d.spawn.parent else "?"
            self._emit(site_id(d.origination), instruction_position(d.origination),
                       f"goroutine started in {spawner} calls {call} instead of "
                       f"using the available context", d.function.full_name)


# ─────────────────────────────────────────────────────────────────────────
#  4.3  Unguarded blocking loops (CWE-835)
# ─────────────────────────────────────────────────────────────────────────

class LoopGuardChecker(Checker):
    """Unbounded loops that block without observing ``ctx.Done()``."""

    name: ClassVar[str] = "loop-guard"
    description: ClassVar[str] = "Blocking loop without a cancellation check"
    rule_id: ClassVar[str] = "G118"
    kind: ClassVar[FindingKind] = FindingKind.UNGUARDED_LOOP
    cwe: ClassVar[int] = 835

    def __init__(self) -> None:
        super().__init__()
        self._records = []

    def configure(self, ctx: CheckerContext) -> None:
        self._config["require_context"] = ctx.get_option("loop_guard.require_context", True)

    def collect_evidence(self, ctx: CheckerContext) -> None:
        records = classify_loops(ctx.program, ctx.blocking_catalog,
                                 require_context=self._config.get("require_context", True))
        ctx.set_analysis("loops", records)
        self._records = [r for r in records if r.is_unguarded_blocking]

    def diagnose(self, ctx: CheckerContext) -> None:
        for rec in self._records:
            fn = rec.function
            self._emit(loop_site_id(fn, rec.header), block_position(rec.header),
                       "loop blocks without checking ctx.Done() and has no other exit",
                       fn.full_name)


# ═════════════════════════════════════════════════════════════════════════
#  PART 5 — CHECKER RUNNER
# ═════════════════════════════════════════════════════════════════════════

_DEFAULT_REGISTRY = CheckerRegistry()
_DEFAULT_REGISTRY.register(SqlInjectionChecker)
_DEFAULT_REGISTRY.register(CancelScopeChecker)
_DEFAULT_REGISTRY.register(GoroutineContextChecker)
_DEFAULT_REGISTRY.register(LoopGuardChecker)


def default_registry() -> CheckerRegistry:
    """A fresh registry holding the built-in checkers."""
    registry = CheckerRegistry()
    for cls in _DEFAULT_REGISTRY.get_all():
        registry.register(cls)
    return registry


@dataclass
class CheckerRunResults:
    """
    Aggregate results from running a suite of checkers.

    Attributes
    ----------
    findings             : All findings, deduplicated and sorted
    findings_by_checker  : Findings grouped by checker name
    stats                : Timing and counting statistics
    checker_names        : Names of checkers that were run
    """
    findings: List[Finding] = field(default_factory=list)
    findings_by_checker: Dict[str, List[Finding]] = field(
        default_factory=lambda: defaultdict(list)
    )
    stats: Dict[str, Any] = field(default_factory=dict)
    checker_names: List[str] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.findings)

    def by_kind(self, kind: FindingKind) -> List[Finding]:
        return [f for f in self.findings if f.kind == kind]

    def by_rule(self, rule_id: str) -> List[Finding]:
        return [f for f in self.findings if f.rule_id == rule_id]

    def by_file(self, file: str) -> List[Finding]:
        return [f for f in self.findings if f.location.file == file]

    def summary(self) -> str:
        lines = [f"Checker run complete: {self.total_count} findings"]
        for name in self.checker_names:
            count = len(self.findings_by_checker.get(name, []))
            elapsed = self.stats.get(f"{name}_elapsed_ms", 0)
            lines.append(f"  {name}: {count} findings ({elapsed:.1f}ms)")
        return "\n".join(lines)


class CheckerRunner:
    """
    Runs a suite of checkers over one program.

    Usage
    -----
    >>> runner = CheckerRunner()
    >>> results = runner.run(program)
    >>> print(results.summary())

    >>> results = runner.run(program, checkers=["sql-injection"])
    """

    def __init__(
        self,
        registry: Optional[CheckerRegistry] = None,
        options: Optional[Dict[str, Any]] = None,
        catalog: Optional[TaintCatalog] = None,
        cancel_catalog: Optional[CancelCatalog] = None,
        blocking_catalog: Optional[BlockingCatalog] = None,
    ) -> None:
        self.registry = registry if registry is not None else default_registry()
        self.options = options or {}
        self.catalog = catalog
        self.cancel_catalog = cancel_catalog
        self.blocking_catalog = blocking_catalog

    def run(
        self,
        program: Program,
        callgraph: Optional[CallGraph] = None,
        checkers: Optional[Sequence[str]] = None,
    ) -> CheckerRunResults:
        """
        Run checkers against *program*.

        Parameters
        ----------
        program   : Program
        callgraph : a supplied call graph, verified against *program*;
                    built when omitted
        checkers  : list of checker names to run (None = all enabled)

        Raises
        ------
        MalformedProgramError
            If the program or the supplied call graph is inconsistent.
        """
        validate_program(program)
        if callgraph is None:
            callgraph = build_callgraph(program)
        else:
            verify_callgraph(callgraph, program)

        ctx = CheckerContext(program=program, callgraph=callgraph, options=self.options)
        if self.catalog is not None:
            ctx.catalog = self.catalog
        if self.cancel_catalog is not None:
            ctx.cancel_catalog = self.cancel_catalog
        if self.blocking_catalog is not None:
            ctx.blocking_catalog = self.blocking_catalog

        if checkers is not None:
            checker_classes: List[Type[Checker]] = []
            for name in checkers:
                cls = self.registry.get_by_name(name)
                if cls is None:
                    logger.warning("unknown checker %r ignored", name)
                    continue
                checker_classes.append(cls)
        else:
            checker_classes = self.registry.get_enabled()

        results = CheckerRunResults()
        collected: List[Finding] = []
        for cls in checker_classes:
            checker = cls()
            results.checker_names.append(cls.name)

            t0 = time.monotonic()
            checker.configure(ctx)
            checker.collect_evidence(ctx)
            checker.diagnose(ctx)
            found = checker.report(ctx)
            elapsed_ms = (time.monotonic() - t0) * 1000.0

            collected.extend(found)
            results.findings_by_checker[cls.name] = found
            results.stats[f"{cls.name}_elapsed_ms"] = elapsed_ms
            logger.debug("%s: %d findings in %.1fms", cls.name, len(found), elapsed_ms)

        results.findings = sort_findings(collected)
        results.stats.update({k: v for k, v in ctx.stats.items() if k not in results.stats})
        return results


def analyze_program(
    program: Program,
    callgraph: Optional[CallGraph] = None,
    *,
    catalog: Optional[TaintCatalog] = None,
    checkers: Optional[Sequence[str]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> List[Finding]:
    """
    Run every enabled checker over *program* and return the findings.

    Repeated runs over the same program return equal lists.
    """
    runner = CheckerRunner(options=options, catalog=catalog)
    return runner.run(program, callgraph, checkers=checkers).findings


__all__ = [
    # Finding model
    "FindingKind",
    "SourceLocation",
    "Finding",
    "sort_findings",
    # Checker framework
    "Checker",
    "CheckerContext",
    "CheckerRegistry",
    "default_registry",
    # Checkers
    "SqlInjectionChecker",
    "CancelScopeChecker",
    "GoroutineContextChecker",
    "LoopGuardChecker",
    # Runner
    "CheckerRunner",
    "CheckerRunResults",
    "analyze_program",
]
