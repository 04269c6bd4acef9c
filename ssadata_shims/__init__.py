"""
ssadata_shims — Taint and Cancellation Analyses over Go SSA
============================================================

This package analyses Go programs that a front end has already lowered to
static single-assignment form (the shape of ``golang.org/x/tools/go/ssa``)
and reports three kinds of findings:

* ``Injection`` — request data reaching the query text of a
  ``database/sql`` call (rule G701, CWE-89);
* ``UncontrolledCancel`` — a cancelable context whose cancel function is
  lost, or a goroutine that starts a fresh root context although the
  spawning function has one (rule G118);
* ``UnguardedLoop`` — an unbounded loop that blocks without observing
  ``ctx.Done()`` (rule G118).

Core modules
------------
ssa_ir
    The SSA data model and its structural validation.
ir_builder
    ``FunctionBuilder`` for assembling functions by hand or from an exporter.
ssa_helper
    Type-string predicates, call matching, positions and site identifiers.
callgraph
    Call graph with Tarjan SCCs and bottom-up ordering.
ctrlflow_analyses
    Dominators, natural loops, path reachability.
taint_catalog / taint_analysis / interproc_analysis
    Sources and sinks, the per-function taint engine, and summaries.
sql_injection / cancel_scope / loop_guard
    The three detectors.
checkers
    Findings, the checker lifecycle and ``analyze_program``.

Quick start
-----------
>>> from ssadata_shims import FunctionBuilder, Program, analyze_program
>>> b = FunctionBuilder("handler", [("w", "net/http.ResponseWriter"),
...                                  ("r", "*net/http.Request")])
>>> ...
>>> findings = analyze_program(Program([b.build()]))

Package layout
--------------
::

    ssadata_shims/
    ├── __init__.py            ← this file
    ├── errors.py
    ├── ssa_ir.py
    ├── ir_builder.py
    ├── ssa_helper.py
    ├── callgraph.py
    ├── ctrlflow_analyses.py
    ├── taint_catalog.py
    ├── taint_analysis.py
    ├── interproc_analysis.py
    ├── sql_injection.py
    ├── cancel_scope.py
    ├── loop_guard.py
    └── checkers.py
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__author__ = "ssadata-shims contributors"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: module_name -> names re-exported at package level
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "ErrorCode",
        "AnalysisError",
        "MalformedProgramError",
        "CallGraphError",
        "InternalAnalysisError",
    ],
    "ssa_ir": [
        "Position",
        "Function",
        "BasicBlock",
        "Program",
        "CallCommon",
        "validate_function",
        "validate_program",
    ],
    "ir_builder": [
        "FunctionBuilder",
        "external_function",
        "external_method",
    ],
    "callgraph": [
        "CallGraph",
        "build_callgraph",
        "verify_callgraph",
    ],
    "ctrlflow_analyses": [
        "DominatorTree",
        "NaturalLoop",
        "NaturalLoopDetector",
    ],
    "taint_catalog": [
        "TaintCatalog",
        "TaintSource",
        "TaintSink",
        "TaintSanitizer",
        "create_default_catalog",
    ],
    "taint_analysis": [
        "SOURCE",
        "TaintState",
        "FieldTaintMap",
        "TaintEngine",
    ],
    "interproc_analysis": [
        "FunctionSummary",
        "SummaryCache",
        "SummaryBuilder",
    ],
    "sql_injection": [
        "SqlInjectionDetector",
    ],
    "cancel_scope": [
        "CancelCatalog",
        "CancelableScope",
        "ScopeState",
        "CancelScopeTracker",
        "find_goroutine_originations",
    ],
    "loop_guard": [
        "BlockingCatalog",
        "LoopRecord",
        "LoopKind",
        "GuardKind",
        "LoopGuardClassifier",
    ],
    "checkers": [
        "Finding",
        "FindingKind",
        "SourceLocation",
        "CheckerRunner",
        "CheckerRunResults",
        "analyze_program",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    mod = importlib.import_module(fq_name)

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"ssadata_shims.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    # ssadata_shims.checkers.Finding works as well as ssadata_shims.Finding
    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names

__all__ += ["__version__"]

# ---------------------------------------------------------------------------
# TYPE_CHECKING block: names visible to IDEs and type checkers only
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        ErrorCode as ErrorCode,
        AnalysisError as AnalysisError,
        MalformedProgramError as MalformedProgramError,
        CallGraphError as CallGraphError,
        InternalAnalysisError as InternalAnalysisError,
    )
    from .ssa_ir import (
        Position as Position,
        Function as Function,
        BasicBlock as BasicBlock,
        Program as Program,
        CallCommon as CallCommon,
        validate_function as validate_function,
        validate_program as validate_program,
    )
    from .ir_builder import (
        FunctionBuilder as FunctionBuilder,
        external_function as external_function,
        external_method as external_method,
    )
    from .callgraph import (
        CallGraph as CallGraph,
        build_callgraph as build_callgraph,
        verify_callgraph as verify_callgraph,
    )
    from .ctrlflow_analyses import (
        DominatorTree as DominatorTree,
        NaturalLoop as NaturalLoop,
        NaturalLoopDetector as NaturalLoopDetector,
    )
    from .taint_catalog import (
        TaintCatalog as TaintCatalog,
        TaintSource as TaintSource,
        TaintSink as TaintSink,
        TaintSanitizer as TaintSanitizer,
        create_default_catalog as create_default_catalog,
    )
    from .taint_analysis import (
        SOURCE as SOURCE,
        TaintState as TaintState,
        FieldTaintMap as FieldTaintMap,
        TaintEngine as TaintEngine,
    )
    from .interproc_analysis import (
        FunctionSummary as FunctionSummary,
        SummaryCache as SummaryCache,
        SummaryBuilder as SummaryBuilder,
    )
    from .sql_injection import SqlInjectionDetector as SqlInjectionDetector
    from .cancel_scope import (
        CancelCatalog as CancelCatalog,
        CancelableScope as CancelableScope,
        ScopeState as ScopeState,
        CancelScopeTracker as CancelScopeTracker,
        find_goroutine_originations as find_goroutine_originations,
    )
    from .loop_guard import (
        BlockingCatalog as BlockingCatalog,
        LoopRecord as LoopRecord,
        LoopKind as LoopKind,
        GuardKind as GuardKind,
        LoopGuardClassifier as LoopGuardClassifier,
    )
    from .checkers import (
        Finding as Finding,
        FindingKind as FindingKind,
        SourceLocation as SourceLocation,
        CheckerRunner as CheckerRunner,
        CheckerRunResults as CheckerRunResults,
        analyze_program as analyze_program,
    )
