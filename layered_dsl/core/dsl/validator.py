"""
DSL Validator
=============

Orchestrates layer loading, reference resolution, relationship inference,
cycle detection and the remaining consistency rules, producing a resolved
DocumentModel and an order-stable diagnostics list. The validator never raises
for document problems; everything surfaces as diagnostics.
"""

import time
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from layered_dsl.config.logging import get_logger
from layered_dsl.config.settings import Settings, get_settings
from layered_dsl.core.dsl.diagnostics import (
    LAYER_ORDER,
    consistency_error,
    consistency_warning,
    count_by_severity,
    fatal_syntax,
    join_path,
    make_diagnostic,
    parent_paths,
    schema_warning,
    sort_diagnostics,
    suggest_name,
    syntax_error,
)
from layered_dsl.core.dsl.graph import component_graph, required_reference_graph, role_graph
from layered_dsl.core.dsl.loaders import BaseLayerLoader, default_loaders
from layered_dsl.core.dsl.resolver import ReferenceResolver, infer_relationships
from layered_dsl.core.dsl.shapes import ShapeChecker
from layered_dsl.core.dsl.symbols import SymbolTable
from layered_dsl.models.schemas import (
    DeferredReference,
    Diagnostic,
    DiagnosticCategory,
    DiagnosticLocation,
    DocumentModel,
    SecurityPolicy,
    Severity,
    ValidationResult,
)

logger = get_logger(__name__)

# Logical path -> (1-based line, 1-based column)
Positions = Dict[str, Tuple[int, int]]


def _children(node: Any, path: str) -> Iterator[Tuple[Any, str]]:
    if isinstance(node, dict):
        return ((value, join_path(path, str(key))) for key, value in node.items())
    return ((value, join_path(path, index)) for index, value in enumerate(node))


def find_recursion(raw: Any) -> Optional[str]:
    """
    Find a container that contains itself.

    YAML anchors can build self-referencing documents; loaders walk the raw
    tree recursively and would never finish on one. Shared subtrees are
    walked once.

    Args:
        raw: Raw document

    Returns:
        Path at which the document refers back to an enclosing container,
        or None
    """
    if not isinstance(raw, (dict, list)):
        return None
    active: Set[int] = {id(raw)}
    finished: Set[int] = set()
    stack: List[Tuple[Any, Iterator[Tuple[Any, str]]]] = [(raw, _children(raw, ""))]
    while stack:
        node, children = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            active.discard(id(node))
            finished.add(id(node))
            continue
        value, path = child
        if not isinstance(value, (dict, list)) or id(value) in finished:
            continue
        if id(value) in active:
            return path
        active.add(id(value))
        stack.append((value, _children(value, path)))
    return None


class DSLValidator:
    """Validate raw LayeredDSL documents into resolved document models."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.logger: Any = logger.bind(component="validator")  # structlog.BoundLoggerBase
        self.shapes = ShapeChecker()
        self.loaders: List[BaseLayerLoader] = default_loaders(self.shapes, self.settings)

    def validate(self, raw: Any, positions: Optional[Positions] = None) -> ValidationResult:
        """
        Validate a raw document.

        Args:
            raw: Raw document as produced by the YAML/JSON loader
            positions: Optional logical path -> (line, column) map used to
                locate diagnostics in the source text

        Returns:
            ValidationResult with the document model and sorted diagnostics
        """
        start_time = time.time()

        if raw is None or (isinstance(raw, dict) and not raw):
            return self._fatal("document is empty", positions)
        if not isinstance(raw, dict):
            return self._fatal(
                f"document root must be a mapping of layers, got {type(raw).__name__}", positions
            )
        recursive_path = find_recursion(raw)
        if recursive_path is not None:
            return self._fatal(f"document refers to itself at '{recursive_path}'", positions)

        diagnostics: List[Diagnostic] = []
        for key in raw:
            if str(key) not in LAYER_ORDER:
                diagnostics.append(
                    schema_warning(
                        str(key),
                        f"unknown top-level section '{key}'",
                        suggest_name(str(key), LAYER_ORDER),
                    )
                )

        symbols = SymbolTable()
        data: Dict[str, Any] = {}
        references: List[DeferredReference] = []
        item_paths: Dict[str, Dict[str, str]] = {}

        for loader in self.loaders:
            layer_result = loader.load(raw.get(loader.layer), symbols)
            data.update(layer_result.data)
            diagnostics.extend(layer_result.diagnostics)
            references.extend(layer_result.references)
            item_paths[loader.layer] = layer_result.item_paths

        metadata = raw.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            diagnostics.append(syntax_error("metadata", f"metadata must be a mapping, got {type(metadata).__name__}"))
        elif metadata:
            data["metadata"] = metadata

        symbols.freeze()

        records, reference_diagnostics = ReferenceResolver(symbols).resolve(references)
        diagnostics.extend(reference_diagnostics)

        entities = data.get("entities", {})
        relationships, relationship_diagnostics = infer_relationships(entities, symbols, item_paths["domain"])
        diagnostics.extend(relationship_diagnostics)

        components = data.get("components", {})
        security: SecurityPolicy = data.get("security", SecurityPolicy())

        components_graph = component_graph(components.values())
        diagnostics.extend(
            components_graph.cycle_diagnostics(self._path_lookup(item_paths["components"], "components"))
        )
        roles_graph = role_graph(security.roles.values())
        diagnostics.extend(
            roles_graph.cycle_diagnostics(self._path_lookup(item_paths["security"], "security.roles"))
        )
        if self.settings.detect_entity_cycles:
            entities_graph = required_reference_graph(entities, relationships)
            diagnostics.extend(
                entities_graph.cycle_diagnostics(
                    self._path_lookup(item_paths["domain"], "domain"), warning=True
                )
            )

        diagnostics.extend(self._check_unmapped_operations(data, item_paths["logic"]))
        diagnostics.extend(self._check_mapping_entries(raw, data, item_paths["logic"]))
        diagnostics.extend(self._check_routes(data, item_paths["ui"]))

        document = DocumentModel(
            **data,
            relationships=relationships,
            references=records,
            component_graph=components_graph.adjacency(),
            role_graph=roles_graph.adjacency(),
        )

        if positions:
            diagnostics = [self._locate(diagnostic, positions) for diagnostic in diagnostics]
        diagnostics = sort_diagnostics(diagnostics)

        self.logger.info(
            "Document validated",
            entities=len(document.entities),
            operations=len(document.operations),
            references=len(records),
            diagnostics=count_by_severity(diagnostics),
            processing_time=round(time.time() - start_time, 4),
        )
        return ValidationResult(document=document, diagnostics=diagnostics)

    def _fatal(self, message: str, positions: Optional[Positions]) -> ValidationResult:
        self.logger.warning("Document rejected", reason=message)
        line, column = (positions or {}).get("", (None, None))
        return ValidationResult(
            document=DocumentModel(),
            diagnostics=[fatal_syntax(message, line=line, column=column)],
        )

    @staticmethod
    def _path_lookup(paths: Dict[str, str], base: str):
        return lambda name: paths.get(name, join_path(base, name))

    def _check_unmapped_operations(self, data: Dict[str, Any], paths: Dict[str, str]) -> List[Diagnostic]:
        """Every operation should be the responsibility of at least one component."""
        responsibilities = {
            name for component in data.get("components", {}).values() for name in component.responsibilities
        }
        severity = Severity(self.settings.unmapped_operation_severity)
        return [
            make_diagnostic(
                DiagnosticCategory.CONSISTENCY,
                severity,
                paths.get(name, join_path("logic", name)),
                f"unmapped operation: {name}",
                "List the operation under a component's responsibilities",
            )
            for name in data.get("operations", {})
            if name not in responsibilities
        ]

    def _check_mapping_entries(self, raw: Dict[str, Any], data: Dict[str, Any], paths: Dict[str, str]) -> List[Diagnostic]:
        """With a mapping layer present, every operation needs an entry."""
        if not self.settings.require_mapping_entries or raw.get("mapping") is None:
            return []
        mapping = data.get("mapping", {})
        return [
            consistency_warning(
                paths.get(name, join_path("logic", name)),
                f"operation '{name}' has no mapping entry",
                f"Add 'mapping.{name}' (use null to accept it as unmapped)",
            )
            for name in data.get("operations", {})
            if name not in mapping
        ]

    def _check_routes(self, data: Dict[str, Any], paths: Dict[str, str]) -> List[Diagnostic]:
        diagnostics: List[Diagnostic] = []
        seen: Dict[str, str] = {}
        for page in data.get("pages", {}).values():
            if page.route is None:
                continue
            if page.route in seen:
                diagnostics.append(
                    consistency_error(
                        join_path(paths.get(page.name, join_path("ui", page.name)), "route"),
                        f"duplicate route '{page.route}' (already used by page '{seen[page.route]}')",
                    )
                )
            else:
                seen[page.route] = page.name
        return diagnostics

    def _locate(self, diagnostic: Diagnostic, positions: Positions) -> Diagnostic:
        """Attach the source line/column of the nearest located path."""
        if diagnostic.location.line is not None:
            return diagnostic
        for candidate in parent_paths(diagnostic.path):
            if candidate not in positions:
                continue
            line, column = positions[candidate]
            if candidate == diagnostic.path and diagnostic.location.column is not None:
                # Type-expression diagnostics carry a column relative to the type string
                column = column + diagnostic.location.column - 1
            return diagnostic.model_copy(
                update={"location": DiagnosticLocation(line=line, column=column, path=diagnostic.path)}
            )
        return diagnostic


def validate_document(raw: Any, settings: Optional[Settings] = None) -> ValidationResult:
    """
    Validate a raw document with a fresh validator.

    Args:
        raw: Raw document mapping
        settings: Optional settings override

    Returns:
        ValidationResult with the document model and diagnostics
    """
    return DSLValidator(settings).validate(raw)
