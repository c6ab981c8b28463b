"""
Error taxonomy with actionable diagnostics for aggregation.

Errors carry structured information about what went wrong, what was
expected, and what was found, so a failed call can be diagnosed without
re-running it. Error codes enable programmatic handling.

Error Codes:
    E101_MISSING_COLUMN: Required metadata column not found
    E102_MISSING_COORDINATES: Spatial coordinate columns not found
    E103_MISSING_GENES: Requested genes not in the expression matrix
    E104_METADATA_MISMATCH: Matrix units without a metadata record
    E201_INSUFFICIENT_UNITS: Group has no usable units for metaspots
    E202_EMPTY_PARTITION: Pseudobulk partition has no units
    E301_UNKNOWN_FIELD: Stratification field cannot be resolved
    E302_PARSE: Malformed stratification token or lookup
    E401_HANDOFF: Matrix violates the network hand-off contract
    E501_RUN_EXISTS / E502_UNKNOWN_RUN: Run store key errors
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any, Dict, Iterable, List, Optional


class PseudorepError(Exception):
    """Base class for all pseudorep errors.

    Parameters
    ----------
    message : str
        Human-readable error description
    expected : Any
        What the caller was expected to provide
    found : Any
        What was actually found
    suggestion : str
        Actionable suggestion for fixing the error
    context : Dict[str, Any]
        Additional context for debugging (group key, counts, ...)
    """

    error_code = "E000_UNKNOWN"

    def __init__(
        self,
        message: str,
        expected: Any = None,
        found: Any = None,
        suggestion: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.expected = expected
        self.found = found
        self.suggestion = suggestion
        self.context = context or {}

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.expected is not None:
            parts.append(f"  Expected: {self.expected}")
        if self.found is not None:
            parts.append(f"  Found: {self.found}")
        if self.suggestion:
            parts.append(f"  Suggestion: {self.suggestion}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "expected": str(self.expected) if self.expected is not None else None,
            "found": str(self.found) if self.found is not None else None,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Configuration errors: detected before computation, always fatal
# ---------------------------------------------------------------------------


class ConfigurationError(PseudorepError, ValueError):
    """Raised when inputs do not match the configured column roles."""

    error_code = "E100_CONFIGURATION"


class MissingColumnError(ConfigurationError):
    """A required metadata column is absent.

    Suggests close matches from the available columns using difflib.
    """

    error_code = "E101_MISSING_COLUMN"
    role = "required"

    def __init__(self, column: str, available: Iterable[str] = (), **kwargs):
        available = [str(c) for c in available]
        suggestion = kwargs.pop("suggestion", "")
        if not suggestion and available:
            matches = get_close_matches(str(column), available, n=3, cutoff=0.4)
            if matches:
                suggestion = f"Did you mean: {', '.join(matches)}?"
        super().__init__(
            f"{self.role.capitalize()} column '{column}' not found in unit metadata",
            expected=column,
            found=available[:10] if available else None,
            suggestion=suggestion,
            **kwargs,
        )
        self.column = column
        self.available = available


class MissingGroupColumnError(MissingColumnError):
    """Group-by column is absent from unit metadata."""

    role = "group"


class MissingReplicateColumnError(MissingColumnError):
    """Replicate column is absent from unit metadata."""

    role = "replicate"


class MissingLabelColumnError(MissingColumnError):
    """Label column is absent from unit metadata."""

    role = "label"


class MissingCoordinatesError(MissingColumnError):
    """Spatial coordinate columns are absent from unit metadata."""

    error_code = "E102_MISSING_COORDINATES"
    role = "coordinate"


class MissingGenesError(ConfigurationError):
    """Requested genes are not present in the expression matrix."""

    error_code = "E103_MISSING_GENES"

    def __init__(self, missing: List[str], n_requested: int):
        super().__init__(
            f"{len(missing)} of {n_requested} requested genes not in the expression matrix",
            found=missing[:10],
            context={"n_missing": len(missing), "n_requested": n_requested},
        )
        self.missing = missing


class MetadataMismatchError(ConfigurationError):
    """Expression matrix units lack a metadata record."""

    error_code = "E104_METADATA_MISMATCH"


# ---------------------------------------------------------------------------
# Data-sufficiency errors
# ---------------------------------------------------------------------------


class DataSufficiencyError(PseudorepError):
    """Raised when a partition holds too few units to aggregate."""

    error_code = "E200_DATA_SUFFICIENCY"

    def __init__(
        self,
        message: str,
        group_key: Optional[str] = None,
        observed: Optional[int] = None,
        required: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context.update({"group_key": group_key, "observed": observed, "required": required})
        super().__init__(
            message,
            expected=f">= {required} units" if required is not None else None,
            found=f"{observed} units" if observed is not None else None,
            context=context,
            **kwargs,
        )
        self.group_key = group_key
        self.observed = observed
        self.required = required


class InsufficientUnitsError(DataSufficiencyError):
    """A metaspot group has zero usable units after filtering."""

    error_code = "E201_INSUFFICIENT_UNITS"


class EmptyPartitionError(DataSufficiencyError):
    """No units remain for a requested pseudobulk partition."""

    error_code = "E202_EMPTY_PARTITION"


# ---------------------------------------------------------------------------
# Stratification errors
# ---------------------------------------------------------------------------


class StratificationError(PseudorepError):
    """Base class for splitter errors."""

    error_code = "E300_STRATIFICATION"


class UnknownStratificationFieldError(StratificationError):
    """The stratification field cannot be resolved from available metadata."""

    error_code = "E301_UNKNOWN_FIELD"

    def __init__(self, field: str, available: Iterable[str] = ()):
        available = [str(a) for a in available]
        suggestion = ""
        matches = get_close_matches(str(field), available, n=3, cutoff=0.4)
        if matches:
            suggestion = f"Did you mean: {', '.join(matches)}?"
        super().__init__(
            f"Stratification field '{field}' cannot be resolved",
            expected=field,
            found=available or None,
            suggestion=suggestion,
        )
        self.field = field


class StratificationParseError(StratificationError):
    """A row identifier or lookup cannot be mapped to exactly one label."""

    error_code = "E302_PARSE"

    def __init__(self, message: str, row_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        context["row_id"] = row_id
        super().__init__(message, context=context, **kwargs)
        self.row_id = row_id


# ---------------------------------------------------------------------------
# Hand-off and store errors
# ---------------------------------------------------------------------------


class ValidationError(PseudorepError):
    """Raised when data validation fails."""

    error_code = "E400_VALIDATION"


class HandoffError(ValidationError):
    """Matrix violates the contract of the network-analysis library."""

    error_code = "E401_HANDOFF"


class StoreError(PseudorepError, KeyError):
    """Base class for run store errors."""

    error_code = "E500_STORE"

    def __str__(self) -> str:
        return PseudorepError.__str__(self)


class RunExistsError(StoreError):
    """A run with this name is already stored."""

    error_code = "E501_RUN_EXISTS"


class UnknownRunError(StoreError):
    """No run with this name is stored."""

    error_code = "E502_UNKNOWN_RUN"


class LowReplicateWarning(UserWarning):
    """Fewer distinct replicates than the configured minimum."""
