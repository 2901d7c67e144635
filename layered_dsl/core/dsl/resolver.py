"""
Reference Resolver
==================

Resolves the deferred references recorded by the layer loaders against the
frozen symbol table and derives entity relationships from referencing fields.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from layered_dsl.config.logging import get_logger
from layered_dsl.core.dsl.diagnostics import (
    consistency_error,
    join_path,
    reference_error,
    schema_error,
    suggest_name,
)
from layered_dsl.core.dsl.symbols import NAMESPACE_LABELS, SymbolTable
from layered_dsl.models.schemas import (
    ArrayType,
    CustomTypeRef,
    DeferredReference,
    Diagnostic,
    Entity,
    Namespace,
    OptionalType,
    ReferenceKind,
    ReferenceRecord,
    ReferenceStatus,
    ReferenceType,
    Relationship,
    RelationshipKind,
    TypeExpression,
)

logger = get_logger(__name__)

REFERENCE_LABELS = {
    ReferenceKind.TYPE: "type",
    ReferenceKind.RELATION: "entity",
    ReferenceKind.MODIFIES: "entity",
    ReferenceKind.ERROR: "error",
    ReferenceKind.CALL: "operation",
    ReferenceKind.ON_ERROR: "on_error operation",
    ReferenceKind.ON_TIMEOUT: "on_timeout operation",
    ReferenceKind.RESPONSIBILITY: "operation",
    ReferenceKind.DEPENDENCY: "component",
    ReferenceKind.RESOURCE: "infrastructure resource",
    ReferenceKind.ROLE: "role",
    ReferenceKind.INHERITS: "role",
    ReferenceKind.ACTION: "operation",
    ReferenceKind.DISPLAY: "entity",
    ReferenceKind.FIELD: "entity field",
    ReferenceKind.MAPPING_KEY: "operation",
    ReferenceKind.MAPPING_TARGET: "component or integration",
}

MAPPING_PREFIXES = {
    "components": (Namespace.COMPONENT,),
    "integrations": (Namespace.INTEGRATION,),
}

RELATION_KINDS = tuple(kind.value for kind in RelationshipKind)


@dataclass
class _Resolution:
    namespace: Optional[Namespace] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None


class ReferenceResolver:
    """Resolve deferred references against a frozen symbol table."""

    def __init__(self, symbols: SymbolTable) -> None:
        if not symbols.frozen:
            raise RuntimeError("References can only be resolved against a frozen symbol table")
        self.symbols = symbols
        self.logger: Any = logger.bind(component="resolver")  # structlog.BoundLoggerBase

    def resolve(self, references: Iterable[DeferredReference]) -> Tuple[List[ReferenceRecord], List[Diagnostic]]:
        """
        Resolve every deferred reference.

        Args:
            references: Deferred references from all loaders

        Returns:
            Tuple of (reference records sorted by path, diagnostics). Each
            dangling reference yields exactly one Reference diagnostic.
        """
        records: List[ReferenceRecord] = []
        diagnostics: List[Diagnostic] = []

        for reference in references:
            if reference.kind == ReferenceKind.FIELD:
                resolution = self._resolve_field(reference)
            elif reference.kind == ReferenceKind.MAPPING_TARGET:
                resolution = self._resolve_mapping_target(reference)
            else:
                resolution = self._resolve_name(reference)

            dangling = resolution.message is not None
            records.append(
                ReferenceRecord(
                    path=reference.source_path,
                    name=reference.name,
                    kind=reference.kind,
                    namespaces=reference.namespaces,
                    status=ReferenceStatus.DANGLING if dangling else ReferenceStatus.RESOLVED,
                    resolved_namespace=resolution.namespace,
                )
            )
            if dangling:
                diagnostics.append(
                    reference_error(reference.source_path, resolution.message, resolution.suggestion)
                )

        diagnostics.extend(self._check_error_names())
        records.sort(key=lambda r: (r.path, r.name, r.kind.value))

        self.logger.debug(
            "References resolved",
            total=len(records),
            dangling=sum(1 for r in records if r.is_dangling),
        )
        return records, diagnostics

    def _find(self, name: str, namespaces: Iterable[Namespace]) -> Optional[Namespace]:
        for namespace in namespaces:
            if self.symbols.contains(namespace, name):
                return namespace
        return None

    def _resolve_name(self, reference: DeferredReference) -> _Resolution:
        namespace = self._find(reference.name, reference.namespaces)
        if namespace is not None:
            return _Resolution(namespace=namespace)

        label = REFERENCE_LABELS[reference.kind]
        if reference.kind == ReferenceKind.TYPE:
            message = f"undefined type '{reference.name}' (not a primitive, entity or custom type)"
        else:
            message = f"reference to undefined {label} '{reference.name}'"
        return _Resolution(
            message=message,
            suggestion=suggest_name(reference.name, self.symbols.names(*reference.namespaces)),
        )

    def _resolve_field(self, reference: DeferredReference) -> _Resolution:
        entity_name, _, field_name = reference.name.partition(".")
        entity = self.symbols.lookup(Namespace.ENTITY, entity_name)
        if not isinstance(entity, Entity):
            return _Resolution(
                message=f"reference to undefined entity '{entity_name}'",
                suggestion=suggest_name(entity_name, self.symbols.names(Namespace.ENTITY)),
            )
        if field_name not in entity.fields:
            return _Resolution(
                message=f"entity '{entity_name}' has no field '{field_name}'",
                suggestion=suggest_name(field_name, entity.fields),
            )
        return _Resolution(namespace=Namespace.ENTITY)

    def _resolve_mapping_target(self, reference: DeferredReference) -> _Resolution:
        """Walk ``[components.|integrations.]<id>(.<member>)*`` through the member trees."""
        target = reference.name
        segments = target.split(".")
        namespaces: Tuple[Namespace, ...] = (Namespace.COMPONENT, Namespace.INTEGRATION)
        if len(segments) > 1 and segments[0] in MAPPING_PREFIXES:
            namespaces = MAPPING_PREFIXES[segments[0]]
            segments = segments[1:]

        head = segments[0]
        namespace = self._find(head, namespaces)
        if namespace is None:
            labels = " or ".join(NAMESPACE_LABELS[ns] for ns in namespaces)
            return _Resolution(
                message=f"mapping target '{target}': undefined {labels} '{head}'",
                suggestion=suggest_name(head, self.symbols.names(*namespaces)),
            )

        definition = self.symbols.lookup(namespace, head)
        tree: Any = definition.exposes if namespace == Namespace.COMPONENT else definition.operations
        walked = head
        for segment in segments[1:]:
            if not isinstance(tree, dict) or segment not in tree:
                candidates = tree.keys() if isinstance(tree, dict) else []
                return _Resolution(
                    namespace=namespace,
                    message=f"mapping target '{target}': '{walked}' has no member '{segment}'",
                    suggestion=suggest_name(segment, candidates),
                )
            tree = tree[segment]
            walked = f"{walked}.{segment}"
        return _Resolution(namespace=namespace)

    def _check_error_names(self) -> List[Diagnostic]:
        """Error names must not collide with entities, custom types or operations."""
        diagnostics: List[Diagnostic] = []
        for name in self.symbols.names(Namespace.ERROR):
            clash = self._find(name, (Namespace.ENTITY, Namespace.CUSTOM_TYPE, Namespace.OPERATION))
            if clash is None:
                continue
            diagnostics.append(
                consistency_error(
                    self.symbols.path_of(Namespace.ERROR, name) or "",
                    f"error '{name}' is also declared as {NAMESPACE_LABELS[clash]} "
                    f"(at '{self.symbols.path_of(clash, name)}')",
                    "Give the error a distinct name",
                )
            )
        return diagnostics


@dataclass
class _Candidate:
    source: str
    field: str
    target: str
    optional: bool
    collection: bool
    explicit_kind: Optional[RelationshipKind]


def _reference_shape(
    expression: TypeExpression, symbols: SymbolTable
) -> Tuple[Optional[str], bool, bool, Dict[str, Any]]:
    """Unwrap optional/array wrappers down to a referenced entity.

    Returns (target or None, optional, collection, merged constraints).
    """
    optional = False
    collection = False
    constraints: Dict[str, Any] = {}
    node: Any = expression
    while True:
        for key, value in node.constraints.items():
            constraints.setdefault(key, value)
        if isinstance(node, OptionalType):
            optional = True
            node = node.inner
        elif isinstance(node, ArrayType):
            collection = True
            node = node.element
        elif isinstance(node, ReferenceType):
            return node.target, optional, collection, constraints
        elif isinstance(node, CustomTypeRef) and symbols.contains(Namespace.ENTITY, node.name):
            return node.name, optional, collection, constraints
        else:
            return None, optional, collection, constraints


def infer_relationships(
    entities: Dict[str, Entity],
    symbols: SymbolTable,
    item_paths: Optional[Dict[str, str]] = None,
) -> Tuple[List[Relationship], List[Diagnostic]]:
    """
    Derive relationships from referencing entity fields.

    An explicit ``relation`` constraint wins; otherwise an array of references
    is one-to-many (many-to-many when the target holds an array back-reference)
    and a single reference is many-to-one.

    Args:
        entities: Entities by name
        symbols: Frozen symbol table
        item_paths: Document path of each entity, for diagnostics

    Returns:
        Tuple of (relationships sorted by source and field, diagnostics)
    """
    item_paths = item_paths or {}
    candidates: List[_Candidate] = []
    diagnostics: List[Diagnostic] = []

    for entity in entities.values():
        entity_path = item_paths.get(entity.name, join_path("domain", entity.name))
        for entity_field in entity.fields.values():
            if entity_field.type is None:
                continue
            target, optional, collection, constraints = _reference_shape(entity_field.type, symbols)

            explicit_kind: Optional[RelationshipKind] = None
            relation = constraints.get("relation")
            if relation is not None:
                if relation in RELATION_KINDS:
                    explicit_kind = RelationshipKind(relation)
                    if isinstance(constraints.get("target"), str):
                        target = constraints["target"]
                else:
                    diagnostics.append(
                        schema_error(
                            join_path(entity_path, entity_field.name),
                            f"unknown relation kind '{relation}'",
                            f"Use one of: {', '.join(RELATION_KINDS)}",
                        )
                    )

            if target is None or not symbols.contains(Namespace.ENTITY, target):
                continue
            candidates.append(
                _Candidate(entity.name, entity_field.name, target, optional, collection, explicit_kind)
            )

    collection_pairs: Set[Tuple[str, str]] = {(c.source, c.target) for c in candidates if c.collection}

    relationships: List[Relationship] = []
    for candidate in candidates:
        if candidate.explicit_kind is not None:
            kind = candidate.explicit_kind
        elif candidate.collection:
            reverse = (candidate.target, candidate.source) in collection_pairs
            kind = RelationshipKind.MANY_TO_MANY if reverse else RelationshipKind.ONE_TO_MANY
        else:
            kind = RelationshipKind.MANY_TO_ONE

        junction = None
        if kind == RelationshipKind.MANY_TO_MANY:
            junction = "".join(sorted((candidate.source, candidate.target)))

        relationships.append(
            Relationship(
                source=candidate.source,
                field=candidate.field,
                target=candidate.target,
                kind=kind,
                required=not candidate.optional and not candidate.collection,
                explicit=candidate.explicit_kind is not None,
                junction=junction,
            )
        )

    relationships.sort(key=lambda r: (r.source, r.field))
    return relationships, diagnostics
