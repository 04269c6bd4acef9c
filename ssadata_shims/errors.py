# ssadata_shims/errors.py
"""
Error types raised by ssadata-shims.

The analyses themselves are total over well-formed input: constructs they do
not recognise degrade to "untainted" or "no finding".  Errors are reserved for
input that is structurally broken (the representation handed to us by the
front end is inconsistent) and for violated internal invariants.

Error Hierarchy:
────────────────
  AnalysisError (base)
  ├── MalformedProgramError   - dangling operands, broken block edges, ...
  │   └── CallGraphError      - missing or inconsistent call-graph edges
  └── InternalAnalysisError   - analysis bugs (should never happen)

Error Codes:
────────────
Each error carries a stable code of the form SSA-XXXX:
  - 1000-1999: representation errors
  - 2000-2999: call-graph errors
  - 9000-9999: internal errors

Example Usage:
──────────────
    from ssadata_shims.errors import MalformedProgramError, ErrorCode

    try:
        findings = analyze_program(program)
    except MalformedProgramError as exc:
        print(exc.code.value, exc)
"""

from __future__ import annotations

from enum import Enum, unique
from typing import Any, Optional


@unique
class ErrorCode(Enum):
    """Stable identifiers for every error the package raises."""

    # Representation (1000-1999)
    DANGLING_OPERAND = "SSA-1001"
    FOREIGN_BLOCK = "SSA-1002"
    BROKEN_EDGE = "SSA-1003"
    PHI_ARITY = "SSA-1004"
    MISSING_TERMINATOR = "SSA-1005"
    UNKNOWN_FUNCTION = "SSA-1006"
    DUPLICATE_FUNCTION = "SSA-1007"

    # Call graph (2000-2999)
    MISSING_CALL_EDGE = "SSA-2001"
    FOREIGN_CALL_EDGE = "SSA-2002"

    # Internal (9000-9999)
    SUMMARY_REWRITE = "SSA-9001"
    INTERNAL = "SSA-9999"

    @property
    def is_internal(self) -> bool:
        return self.value >= "SSA-9000"


class AnalysisError(Exception):
    """
    Base class for all ssadata-shims errors.

    Attributes:
        code: The ErrorCode identifying the failure
        message: Human-readable description
        function: Full name of the function being processed, if known
        position: Source position (anything with file/line/column), if known
    """

    default_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        function: Optional[str] = None,
        position: Any = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.function = function
        self.position = position
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = []
        pos = self.position
        if pos is not None and getattr(pos, "line", 0):
            parts.append(f"{pos.file}:{pos.line}:{pos.column}: ")
        parts.append(f"[{self.code.value}] {self.message}")
        if self.function:
            parts.append(f" (in {self.function})")
        return "".join(parts)


class MalformedProgramError(AnalysisError):
    """The supplied representation is structurally inconsistent."""

    default_code = ErrorCode.DANGLING_OPERAND


class CallGraphError(MalformedProgramError):
    """The supplied call graph disagrees with the call sites in the program."""

    default_code = ErrorCode.MISSING_CALL_EDGE


class InternalAnalysisError(AnalysisError):
    """An internal invariant of the analysis was violated."""

    default_code = ErrorCode.INTERNAL


__all__ = [
    "ErrorCode",
    "AnalysisError",
    "MalformedProgramError",
    "CallGraphError",
    "InternalAnalysisError",
]
