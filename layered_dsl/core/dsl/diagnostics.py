"""
Diagnostic Helpers
==================

Builders, path handling, suggestions and ordering for diagnostics.
"""

import difflib
from typing import Dict, Iterable, List, Optional, Union

from layered_dsl.models.schemas import (
    Diagnostic,
    DiagnosticCategory,
    DiagnosticLocation,
    Severity,
)

# Deterministic layer processing order; also the primary diagnostic sort key.
LAYER_ORDER = (
    "project",
    "domain",
    "logic",
    "components",
    "workflow",
    "ui",
    "security",
    "infrastructure",
    "integrations",
    "mapping",
    "metadata",
)


def join_path(base: str, *parts: Union[str, int]) -> str:
    """Join path segments; integers become ``[n]`` index suffixes."""
    path = base
    for part in parts:
        if isinstance(part, int) and not isinstance(part, bool):
            path = f"{path}[{part}]"
        elif path:
            path = f"{path}.{part}"
        else:
            path = str(part)
    return path


def parent_paths(path: str) -> Iterable[str]:
    """Yield the path followed by each of its ancestors, nearest first."""
    current = path
    while current:
        yield current
        cut = max(current.rfind("."), current.rfind("["))
        if cut <= 0:
            break
        current = current[:cut]


def make_diagnostic(
    category: DiagnosticCategory,
    severity: Severity,
    path: str,
    message: str,
    suggestion: Optional[str] = None,
    line: Optional[int] = None,
    column: Optional[int] = None,
) -> Diagnostic:
    """Create a diagnostic record."""
    return Diagnostic(
        category=category,
        severity=severity,
        location=DiagnosticLocation(line=line, column=column, path=path),
        message=message,
        suggestion=suggestion,
    )


def syntax_error(path: str, message: str, suggestion: Optional[str] = None, **kwargs) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.SYNTAX, Severity.ERROR, path, message, suggestion, **kwargs)


def schema_error(path: str, message: str, suggestion: Optional[str] = None, **kwargs) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.SCHEMA, Severity.ERROR, path, message, suggestion, **kwargs)


def schema_warning(path: str, message: str, suggestion: Optional[str] = None, **kwargs) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.SCHEMA, Severity.WARNING, path, message, suggestion, **kwargs)


def reference_error(path: str, message: str, suggestion: Optional[str] = None) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.REFERENCE, Severity.ERROR, path, message, suggestion)


def consistency_error(path: str, message: str, suggestion: Optional[str] = None) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.CONSISTENCY, Severity.ERROR, path, message, suggestion)


def consistency_warning(path: str, message: str, suggestion: Optional[str] = None) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.CONSISTENCY, Severity.WARNING, path, message, suggestion)


def fatal_syntax(message: str, path: str = "", **kwargs) -> Diagnostic:
    return make_diagnostic(DiagnosticCategory.SYNTAX, Severity.FATAL, path, message, **kwargs)


def suggest_name(name: str, candidates: Iterable[str]) -> Optional[str]:
    """Return a "did you mean" hint for the closest candidate, if any."""
    matches = difflib.get_close_matches(name, list(candidates), n=1, cutoff=0.6)
    if not matches:
        return None
    return f"Did you mean '{matches[0]}'?"


def layer_rank(path: str) -> int:
    """Position of the path's layer in the processing order."""
    head = path.split(".", 1)[0].split("[", 1)[0]
    try:
        return LAYER_ORDER.index(head)
    except ValueError:
        return -1 if not head else len(LAYER_ORDER)


def sort_diagnostics(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
    """Order diagnostics by (layer order, path, category, message).

    The result does not depend on declaration order within a layer or on the
    order in which independent loaders completed.
    """
    return sorted(
        diagnostics,
        key=lambda d: (layer_rank(d.location.path), d.location.path, d.category.value, d.message),
    )


def count_by_severity(diagnostics: Iterable[Diagnostic]) -> Dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for diagnostic in diagnostics:
        counts[diagnostic.severity.value] += 1
    return counts


def has_blocking(diagnostics: Iterable[Diagnostic]) -> bool:
    """Whether any fatal or error diagnostic is present."""
    return any(d.severity.is_blocking for d in diagnostics)
