"""
Shape Rules
===========

Cerberus schemas describing the raw shape of each layer item. Shape problems
are reported as Schema diagnostics; unknown keys are always allowed.
"""

from typing import Any, Dict, Iterator, List, Tuple

from cerberus import Validator  # type: ignore[import-untyped]

from layered_dsl.config.logging import get_logger
from layered_dsl.core.dsl.diagnostics import join_path, schema_error
from layered_dsl.models.schemas import ComponentKind, Diagnostic

logger = get_logger(__name__)

STRING_LIST = {"type": ["string", "list"], "nullable": True, "schema": {"type": "string"}}
DURATION = {"type": ["string", "integer", "float"], "nullable": True}
TEXT = {"type": "string", "nullable": True}
TEXT_OR_LIST = {"type": ["string", "list"], "nullable": True}


class ShapeChecker:
    """Validate raw layer items against Cerberus schemas."""

    def __init__(self) -> None:
        self.logger: Any = logger.bind(component="shapes")  # structlog.BoundLoggerBase
        self._setup_schemas()

    def _setup_schemas(self) -> None:
        """Setup validation schemas."""
        self.project_schema = {
            "name": {"type": "string", "required": True, "empty": False},
            "version": {"type": ["string", "integer", "float"], "nullable": True},
            "description": TEXT,
            "language": TEXT,
        }

        self.entity_schema = {
            "description": TEXT,
            "fields": {"type": "dict", "required": True},
            "validation": {"type": "list", "nullable": True},
        }

        self.validation_rule_schema = {
            "rule": TEXT,
            "description": TEXT,
            "expression": {"type": "string", "required": True, "empty": False},
        }

        self.operation_schema = {
            "description": TEXT,
            "input": {"type": ["dict", "list"], "nullable": True},
            "inputs": {"type": ["dict", "list"], "nullable": True},
            "output": {"type": ["string", "dict"], "nullable": True},
            "modifies": STRING_LIST,
            "errors": STRING_LIST,
            "preconditions": TEXT_OR_LIST,
            "postconditions": TEXT_OR_LIST,
            "async": {"type": "boolean"},
            "idempotent": {"type": "boolean"},
            "retryable": {"type": "boolean"},
        }

        self.component_schema = {
            "type": {"type": "string", "required": True, "allowed": [k.value for k in ComponentKind]},
            "description": TEXT,
            "responsibilities": STRING_LIST,
            "dependencies": STRING_LIST,
            "resources": STRING_LIST,
            "exposes": {"type": ["dict", "list"], "nullable": True},
        }

        self.retry_schema = {
            "max_attempts": {"type": "integer", "min": 1},
            "backoff": {"type": "string", "allowed": ["fixed", "linear", "exponential"]},
            "delay": DURATION,
        }

        self.loop_schema = {
            "over": TEXT,
            "collection": TEXT,
            "while": TEXT,
            "condition": TEXT,
            "max_iterations": {"type": "integer", "min": 1, "nullable": True},
            "timeout": DURATION,
        }

        self.wait_schema = {
            "duration": DURATION,
            "until": TEXT,
            "condition": TEXT,
            "timeout": DURATION,
        }

        self.page_schema = {
            "route": {"type": "string", "nullable": True, "regex": "^/.*"},
            "description": TEXT,
            "displays": STRING_LIST,
            "actions": STRING_LIST,
            "roles": STRING_LIST,
        }

        self.role_schema = {
            "description": TEXT,
            "inherits": STRING_LIST,
        }

        self.permission_schema = {
            "action": {"type": "string", "required": True, "empty": False},
            "roles": STRING_LIST,
            "allowed_roles": STRING_LIST,
            "rate_limit": {"type": ["string", "integer"], "nullable": True},
            "filter": TEXT,
            "data_filter": TEXT,
        }

        self.field_access_schema = {
            "entity": {"type": "string", "required": True, "empty": False},
            "field": {"type": "string", "required": True, "empty": False},
            "read": STRING_LIST,
            "write": STRING_LIST,
        }

        self.integration_schema = {
            "type": TEXT,
            "base_url": TEXT,
            "operations": {"type": ["dict", "list"], "nullable": True},
        }

        self.mapping_entry_schema = {
            "operation": {"type": "string", "required": True, "empty": False},
            "target": TEXT,
        }

    def check(self, document: Dict[str, Any], schema: Dict[str, Any], path: str) -> List[Diagnostic]:
        """
        Validate one raw item.

        Args:
            document: Raw mapping to validate
            schema: Cerberus schema
            path: Document path of the item

        Returns:
            Schema diagnostics, one per failing field
        """
        validator = Validator(schema)  # type: ignore[misc]
        validator.allow_unknown = True  # type: ignore[attr-defined]

        if validator.validate(document):  # type: ignore[misc]
            return []

        diagnostics = [
            schema_error(join_path(path, *segments), f"'{segments[-1]}': {message}")
            for segments, message in self._flatten_errors(validator.errors)  # type: ignore[attr-defined]
        ]
        self.logger.debug("Shape check failed", path=path, error_count=len(diagnostics))
        return diagnostics

    def _flatten_errors(self, errors: Dict[Any, Any], prefix: Tuple[Any, ...] = ()) -> Iterator[Tuple[Tuple[Any, ...], str]]:
        """Flatten Cerberus' nested error tree into (path segments, message) pairs."""
        for field in sorted(errors, key=str):
            for entry in errors[field]:
                if isinstance(entry, dict):
                    yield from self._flatten_errors(entry, prefix + (field,))
                else:
                    yield prefix + (field,), str(entry)

    def schemas(self) -> Dict[str, Dict[str, Any]]:
        """All item schemas keyed by item kind, for documentation and tooling."""
        return {
            "project": self.project_schema,
            "entity": self.entity_schema,
            "validation_rule": self.validation_rule_schema,
            "operation": self.operation_schema,
            "component": self.component_schema,
            "retry": self.retry_schema,
            "loop": self.loop_schema,
            "wait": self.wait_schema,
            "page": self.page_schema,
            "role": self.role_schema,
            "permission": self.permission_schema,
            "field_access": self.field_access_schema,
            "integration": self.integration_schema,
            "mapping_entry": self.mapping_entry_schema,
        }
