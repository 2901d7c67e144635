"""
Symbol Table
============

Namespaced registry of every named definition in a document, built while the
layers load and frozen before references are resolved.
"""

from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from layered_dsl.core.dsl.diagnostics import consistency_error
from layered_dsl.core.dsl.type_parser import is_primitive
from layered_dsl.models.schemas import Diagnostic, Namespace

# Namespaces whose names cannot be told apart where they are referenced.
SHARED_SPACES: Tuple[FrozenSet[Namespace], ...] = (
    frozenset({Namespace.ENTITY, Namespace.CUSTOM_TYPE}),
    frozenset({Namespace.COMPONENT, Namespace.INTEGRATION}),
)

NAMESPACE_LABELS = {
    Namespace.ENTITY: "entity",
    Namespace.CUSTOM_TYPE: "custom type",
    Namespace.OPERATION: "operation",
    Namespace.COMPONENT: "component",
    Namespace.ROLE: "role",
    Namespace.INTEGRATION: "integration",
    Namespace.RESOURCE: "infrastructure resource",
    Namespace.ERROR: "error",
    Namespace.WORKFLOW: "workflow",
    Namespace.PAGE: "page",
}


class SymbolTableFrozenError(RuntimeError):
    """Raised when the symbol table is written after it was frozen."""

    pass


class SymbolTable:
    """Mapping from (namespace, name) to declared definitions."""

    def __init__(self) -> None:
        self._symbols: Dict[Namespace, Dict[str, Any]] = {ns: {} for ns in Namespace}
        self._paths: Dict[Tuple[Namespace, str], str] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Make the table read-only."""
        self._frozen = True

    def _ensure_writable(self) -> None:
        if self._frozen:
            raise SymbolTableFrozenError("Symbol table is frozen; definitions can no longer be added")

    def define(self, namespace: Namespace, name: str, definition: Any, path: str) -> Optional[Diagnostic]:
        """
        Register a definition.

        Args:
            namespace: Target namespace
            name: Declared name
            definition: The typed definition
            path: Document path of the declaration

        Returns:
            None when registered, otherwise a Consistency diagnostic. The first
            definition always wins.
        """
        self._ensure_writable()
        label = NAMESPACE_LABELS[namespace]

        if name in self._symbols[namespace]:
            first = self._paths.get((namespace, name), "unknown")
            return consistency_error(
                path,
                f"duplicate {label} '{name}' (first defined at '{first}')",
                "Rename or remove one of the definitions",
            )

        for other in self._shared_with(namespace):
            if name in self._symbols[other]:
                first = self._paths.get((other, name), "unknown")
                return consistency_error(
                    path,
                    f"'{name}' is declared as both {NAMESPACE_LABELS[other]} ('{first}') and {label}",
                    "Use distinct names; references cannot tell these declarations apart",
                )

        if namespace in (Namespace.ENTITY, Namespace.CUSTOM_TYPE) and is_primitive(name):
            return consistency_error(
                path,
                f"{label} '{name}' clashes with the built-in primitive type '{name.lower()}'",
                "Rename the declaration",
            )

        self._symbols[namespace][name] = definition
        self._paths[(namespace, name)] = path
        return None

    def declare_implicit(self, namespace: Namespace, name: str, path: str) -> None:
        """Declare a name on first use; later uses are no-ops."""
        self._ensure_writable()
        if name not in self._symbols[namespace]:
            self._symbols[namespace][name] = name
            self._paths[(namespace, name)] = path

    def lookup(self, namespace: Namespace, name: str) -> Optional[Any]:
        """Return the definition, or None when undefined."""
        return self._symbols[namespace].get(name)

    def contains(self, namespace: Namespace, name: str) -> bool:
        return name in self._symbols[namespace]

    def names(self, *namespaces: Namespace) -> List[str]:
        """Declared names across the given namespaces, in declaration order."""
        result: List[str] = []
        for namespace in namespaces:
            result.extend(self._symbols[namespace])
        return result

    def path_of(self, namespace: Namespace, name: str) -> Optional[str]:
        return self._paths.get((namespace, name))

    def _shared_with(self, namespace: Namespace) -> List[Namespace]:
        for space in SHARED_SPACES:
            if namespace in space:
                return sorted(space - {namespace}, key=lambda ns: ns.value)
        return []

    def __len__(self) -> int:
        return sum(len(names) for names in self._symbols.values())
