"""
Layer Loaders
=============

One loader per document layer. Each loader converts its raw YAML subtree into
typed entities, registers declarations in the symbol table and records every
cross-reference as a deferred reference. Loaders never resolve references.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from layered_dsl.config.logging import get_logger
from layered_dsl.config.settings import Settings
from layered_dsl.core.dsl.diagnostics import (
    consistency_error,
    consistency_warning,
    join_path,
    reference_error,
    schema_error,
    schema_warning,
    syntax_error,
)
from layered_dsl.core.dsl.shapes import ShapeChecker
from layered_dsl.core.dsl.symbols import SymbolTable
from layered_dsl.core.dsl.type_parser import iter_type_names, parse_type_expression
from layered_dsl.models.schemas import (
    ArrayType,
    BranchCase,
    BranchStep,
    CallStep,
    Component,
    ComponentKind,
    CustomTypeDefinition,
    DeferredReference,
    Diagnostic,
    Entity,
    EntityField,
    FieldAccess,
    InfrastructureResource,
    Integration,
    LoopStep,
    MapType,
    MappingEntry,
    Namespace,
    ObjectType,
    Operation,
    OptionalType,
    Page,
    ParallelStep,
    Parameter,
    Permission,
    ProjectInfo,
    ReferenceKind,
    RetryPolicy,
    Role,
    SecurityPolicy,
    TypeExpression,
    ValidationRule,
    WaitStep,
    WorkflowDefinition,
    WorkflowStep,
)

logger = get_logger(__name__)

STEP_KEYWORDS = ("call", "loop", "parallel", "branch", "wait")
COMPONENT_KINDS = tuple(kind.value for kind in ComponentKind)

StepTarget = Union[str, List[WorkflowStep]]


@dataclass
class LayerResult:
    """Output of one loader: typed entities, diagnostics and deferred references."""

    layer: str
    data: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    references: List[DeferredReference] = field(default_factory=list)
    item_paths: Dict[str, str] = field(default_factory=dict)

    def report(self, diagnostic: Optional[Diagnostic]) -> None:
        if diagnostic is not None:
            self.diagnostics.append(diagnostic)

    def defer(self, path: str, name: str, kind: ReferenceKind, *namespaces: Namespace) -> None:
        self.references.append(
            DeferredReference(source_path=path, name=name, namespaces=list(namespaces), kind=kind)
        )


def member_tree(raw: Any) -> Dict[str, Any]:
    """Normalize an ``exposes`` / ``operations`` declaration into a nested mapping."""
    tree: Dict[str, Any] = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            tree[str(key)] = member_tree(value) if isinstance(value, (dict, list)) else value
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, str):
                tree[item] = None
            elif isinstance(item, dict):
                tree.update(member_tree(item))
    return tree


def _is_balanced(expression: str) -> bool:
    pairs = {")": "(", "]": "[", "}": "{"}
    stack: List[str] = []
    quote: Optional[str] = None
    for char in expression:
        if quote:
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char in "([{":
            stack.append(char)
        elif char in pairs:
            if not stack or stack.pop() != pairs[char]:
                return False
    return not stack and quote is None


class BaseLayerLoader(ABC):
    """Abstract base class for layer loaders."""

    layer: str = ""

    def __init__(self, shapes: ShapeChecker, settings: Settings) -> None:
        self.shapes = shapes
        self.settings = settings
        self.logger: Any = logger.bind(loader=self.layer)  # structlog.BoundLoggerBase

    def load(self, raw: Any, symbols: SymbolTable) -> LayerResult:
        """
        Load one layer.

        Args:
            raw: Raw YAML subtree of the layer (None when absent)
            symbols: Symbol table populated by the layers loaded so far

        Returns:
            LayerResult with typed entities, diagnostics and deferred references
        """
        result = LayerResult(layer=self.layer)
        if raw is None:
            return result
        self._load(raw, symbols, result)
        self.logger.debug(
            "Layer loaded",
            diagnostics=len(result.diagnostics),
            references=len(result.references),
        )
        return result

    @abstractmethod
    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        """Populate the result from the raw layer."""
        pass

    # Shared helpers
    def _require_mapping(self, raw: Any, path: str, result: LayerResult, what: str) -> Optional[Dict[str, Any]]:
        if isinstance(raw, dict):
            return raw
        result.report(syntax_error(path, f"{what} must be a mapping, got {type(raw).__name__}"))
        return None

    def _collection(self, raw: Any, path: str, key: str) -> Tuple[Any, str]:
        """Unwrap an optional ``key:`` level, e.g. ``logic.operations``."""
        if isinstance(raw, dict) and key in raw:
            return raw[key], join_path(path, key)
        return raw, path

    def _named_items(self, raw: Any, path: str, result: LayerResult) -> Iterator[Tuple[str, Any, str]]:
        """Yield (name, body, path) from mapping form or list-of-mappings form."""
        if raw is None:
            return
        if isinstance(raw, dict):
            for name, body in raw.items():
                yield str(name), body, join_path(path, str(name))
        elif isinstance(raw, list):
            for index, item in enumerate(raw):
                key = next((k for k in ("name", "id") if isinstance(item, dict) and k in item), None)
                name = item[key] if key else None
                if not isinstance(name, str) or not name:
                    result.report(
                        syntax_error(
                            join_path(path, index),
                            "list items must be mappings with a 'name' or 'id'",
                        )
                    )
                    continue
                yield name, {k: v for k, v in item.items() if k != key}, join_path(path, name)
        else:
            result.report(
                syntax_error(path, f"expected a mapping or a list, got {type(raw).__name__}")
            )

    def _check_shape(self, body: Dict[str, Any], schema: Dict[str, Any], path: str, result: LayerResult) -> None:
        result.diagnostics.extend(self.shapes.check(body, schema, path))

    def _text(self, value: Any, path: str, result: LayerResult) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        result.report(schema_error(path, f"expected a text value, got {type(value).__name__}"))
        return None

    def _text_list(self, value: Any, path: str, result: LayerResult) -> List[str]:
        if value is None:
            return []
        if isinstance(value, list):
            texts = [self._text(item, join_path(path, i), result) for i, item in enumerate(value)]
            return [text for text in texts if text is not None]
        text = self._text(value, path, result)
        return [text] if text is not None else []

    def _string_items(self, value: Any, path: str, result: LayerResult) -> List[Tuple[str, str]]:
        """Names from a string or list of strings, paired with their paths."""
        if value is None:
            return []
        if isinstance(value, str):
            return [(value, path)] if value else []
        if not isinstance(value, list):
            result.report(schema_error(path, f"expected a name or a list of names, got {type(value).__name__}"))
            return []
        items: List[Tuple[str, str]] = []
        for index, item in enumerate(value):
            item_path = join_path(path, index)
            if isinstance(item, str) and item:
                items.append((item, item_path))
            else:
                result.report(schema_error(item_path, f"expected a name, got {item!r}"))
        return items

    def _defer_names(
        self,
        value: Any,
        path: str,
        result: LayerResult,
        kind: ReferenceKind,
        *namespaces: Namespace,
    ) -> List[str]:
        names: List[str] = []
        for name, item_path in self._string_items(value, path, result):
            result.defer(item_path, name, kind, *namespaces)
            names.append(name)
        return names

    def _parse_type(self, text: str, path: str, result: LayerResult) -> Optional[TypeExpression]:
        parsed = parse_type_expression(text, path, max_depth=self.settings.max_type_nesting)
        result.diagnostics.extend(parsed.diagnostics)
        if parsed.expression is not None:
            self._record_type_references(parsed.expression, path, result)
        return parsed.expression

    def _type_from_raw(self, raw: Any, path: str, result: LayerResult) -> Tuple[Optional[TypeExpression], Optional[str]]:
        """Build a type from a type string or an inline ``{field: type}`` mapping."""
        if isinstance(raw, str):
            return self._parse_type(raw, path, result), raw
        if isinstance(raw, dict):
            fields: Dict[str, TypeExpression] = {}
            for name, member in raw.items():
                member_type, _ = self._type_from_raw(member, join_path(path, str(name)), result)
                if member_type is not None:
                    fields[str(name)] = member_type
            return ObjectType(fields=fields), None
        result.report(
            schema_error(
                path,
                f"expected a type string, got {type(raw).__name__}",
                "Write the type as a string, e.g. 'string' or 'optional[reference[User]]'",
            )
        )
        return None, None

    def _record_type_references(self, expression: TypeExpression, path: str, result: LayerResult) -> None:
        for kind, name in iter_type_names(expression):
            if kind == "reference":
                result.defer(path, name, ReferenceKind.RELATION, Namespace.ENTITY)
            else:
                result.defer(path, name, ReferenceKind.TYPE, Namespace.ENTITY, Namespace.CUSTOM_TYPE)
        for node in _iter_nodes(expression):
            target = node.constraints.get("target")
            if "relation" in node.constraints and isinstance(target, str):
                result.defer(path, target, ReferenceKind.RELATION, Namespace.ENTITY)


def _iter_nodes(expression: TypeExpression) -> Iterator[TypeExpression]:
    yield expression
    if isinstance(expression, ArrayType):
        yield from _iter_nodes(expression.element)
    elif isinstance(expression, OptionalType):
        yield from _iter_nodes(expression.inner)
    elif isinstance(expression, MapType):
        yield from _iter_nodes(expression.key)
        yield from _iter_nodes(expression.value)
    elif isinstance(expression, ObjectType):
        for member in expression.fields.values():
            yield from _iter_nodes(member)


class ProjectLoader(BaseLayerLoader):
    """Project metadata layer."""

    layer = "project"
    KNOWN_KEYS = ("name", "version", "description", "language")

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        body = self._require_mapping(raw, "project", result, "project section")
        if body is None:
            return
        self._check_shape(body, self.shapes.project_schema, "project", result)
        result.data["project"] = ProjectInfo(
            name=self._text(body.get("name"), "project.name", result),
            version=self._text(body.get("version"), "project.version", result),
            description=self._text(body.get("description"), "project.description", result),
            language=self._text(body.get("language"), "project.language", result),
            extra={str(k): v for k, v in body.items() if k not in self.KNOWN_KEYS},
        )


class DomainLoader(BaseLayerLoader):
    """Entities and custom types."""

    layer = "domain"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        types_raw: Any = None
        if isinstance(raw, dict):
            types_raw = raw.get("types")
            if "entities" in raw:
                entities_raw, entities_path = raw["entities"], "domain.entities"
            else:
                entities_raw = {k: v for k, v in raw.items() if k != "types"}
                entities_path = "domain"
        elif isinstance(raw, list):
            entities_raw, entities_path = raw, "domain"
        else:
            result.report(syntax_error("domain", f"domain section must be a mapping, got {type(raw).__name__}"))
            return

        custom_types: Dict[str, CustomTypeDefinition] = {}
        for name, body, path in self._named_items(types_raw, "domain.types", result):
            if isinstance(body, dict) and "type" in body and isinstance(body["type"], str):
                body = body["type"]
            expression, raw_type = self._type_from_raw(body, path, result)
            definition = CustomTypeDefinition(name=name, type=expression, raw_type=raw_type)
            diagnostic = symbols.define(Namespace.CUSTOM_TYPE, name, definition, path)
            result.report(diagnostic)
            if diagnostic is None:
                custom_types[name] = definition
                result.item_paths[name] = path

        entities: Dict[str, Entity] = {}
        for name, body, path in self._named_items(entities_raw, entities_path, result):
            entity = self._load_entity(name, body, path, result)
            if entity is None:
                continue
            diagnostic = symbols.define(Namespace.ENTITY, name, entity, path)
            result.report(diagnostic)
            if diagnostic is None:
                entities[name] = entity
                result.item_paths[name] = path

        result.data["custom_types"] = custom_types
        result.data["entities"] = entities

    def _load_entity(self, name: str, body: Any, path: str, result: LayerResult) -> Optional[Entity]:
        if body is None:
            body = {}
        if not isinstance(body, dict):
            result.report(syntax_error(path, f"entity '{name}' must be a mapping of fields"))
            return None

        description: Optional[str] = None
        validation_raw: Any = None
        if isinstance(body.get("fields"), dict):
            self._check_shape(body, self.shapes.entity_schema, path, result)
            fields_raw = body["fields"]
            fields_path = join_path(path, "fields")
            description = self._text(body.get("description"), join_path(path, "description"), result)
            validation_raw = body.get("validation")
        else:
            fields_raw = body
            fields_path = path

        fields: Dict[str, EntityField] = {}
        for field_name, field_raw in fields_raw.items():
            field_path = join_path(fields_path, str(field_name))
            expression, raw_type = self._type_from_raw(field_raw, field_path, result)
            fields[str(field_name)] = EntityField(name=str(field_name), type=expression, raw_type=raw_type)

        if not fields:
            result.report(schema_warning(path, f"entity '{name}' declares no fields"))

        return Entity(
            name=name,
            description=description,
            fields=fields,
            validation=self._load_validation_rules(validation_raw, join_path(path, "validation"), result),
        )

    def _load_validation_rules(self, raw: Any, path: str, result: LayerResult) -> List[ValidationRule]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            result.report(schema_error(path, "validation must be a list of rules"))
            return []

        rules: List[ValidationRule] = []
        for index, rule in enumerate(raw):
            rule_path = join_path(path, index)
            description: Optional[str] = None
            if isinstance(rule, str):
                expression = rule
            elif isinstance(rule, dict):
                problems = self.shapes.check(rule, self.shapes.validation_rule_schema, rule_path)
                if problems:
                    result.diagnostics.extend(problems)
                    continue
                expression = rule["expression"]
                description = self._text(rule.get("rule", rule.get("description")), rule_path, result)
            else:
                result.report(schema_warning(rule_path, f"malformed validation rule {rule!r}"))
                continue

            if not _is_balanced(expression):
                result.report(
                    schema_warning(
                        rule_path,
                        f"malformed validation expression '{expression}': unbalanced brackets or quotes",
                    )
                )
            rules.append(ValidationRule(description=description, expression=expression))
        return rules


class LogicLoader(BaseLayerLoader):
    """Operations of the logic layer."""

    layer = "logic"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        items_raw, items_path = self._collection(raw, "logic", "operations")
        operations: Dict[str, Operation] = {}
        for name, body, path in self._named_items(items_raw, items_path, result):
            if body is None:
                body = {}
            if not isinstance(body, dict):
                result.report(syntax_error(path, f"operation '{name}' must be a mapping"))
                continue
            operation = self._load_operation(name, body, path, symbols, result)
            diagnostic = symbols.define(Namespace.OPERATION, name, operation, path)
            result.report(diagnostic)
            if diagnostic is None:
                operations[name] = operation
                result.item_paths[name] = path
        result.data["operations"] = operations

    def _load_operation(
        self, name: str, body: Dict[str, Any], path: str, symbols: SymbolTable, result: LayerResult
    ) -> Operation:
        self._check_shape(body, self.shapes.operation_schema, path, result)

        input_key = "input" if "input" in body else "inputs"
        inputs = self._load_parameters(body.get(input_key), join_path(path, input_key), result)

        output: Optional[TypeExpression] = None
        raw_output: Optional[str] = None
        if body.get("output") is not None:
            output, raw_output = self._type_from_raw(body["output"], join_path(path, "output"), result)

        modifies = self._defer_names(
            body.get("modifies"), join_path(path, "modifies"), result, ReferenceKind.MODIFIES, Namespace.ENTITY
        )

        errors: List[str] = []
        for error_name, error_path in self._string_items(body.get("errors"), join_path(path, "errors"), result):
            symbols.declare_implicit(Namespace.ERROR, error_name, error_path)
            result.defer(error_path, error_name, ReferenceKind.ERROR, Namespace.ERROR)
            errors.append(error_name)

        return Operation(
            name=name,
            description=self._text(body.get("description"), join_path(path, "description"), result),
            inputs=inputs,
            output=output,
            raw_output=raw_output,
            modifies=modifies,
            errors=errors,
            preconditions=self._text_list(body.get("preconditions"), join_path(path, "preconditions"), result),
            postconditions=self._text_list(body.get("postconditions"), join_path(path, "postconditions"), result),
            is_async=body.get("async") is True,
            idempotent=body.get("idempotent") is True,
            retryable=body.get("retryable") is True,
        )

    def _load_parameters(self, raw: Any, path: str, result: LayerResult) -> List[Parameter]:
        if raw is None:
            return []
        pairs: List[Tuple[str, Any, str]] = []
        if isinstance(raw, dict):
            pairs = [(str(k), v, join_path(path, str(k))) for k, v in raw.items()]
        elif isinstance(raw, list):
            for index, item in enumerate(raw):
                item_path = join_path(path, index)
                if isinstance(item, dict) and "name" in item and "type" in item:
                    pairs.append((str(item["name"]), item["type"], join_path(path, str(item["name"]))))
                elif isinstance(item, dict) and len(item) == 1:
                    key, value = next(iter(item.items()))
                    pairs.append((str(key), value, join_path(path, str(key))))
                else:
                    result.report(syntax_error(item_path, "parameters must be 'name: type' mappings"))

        parameters: List[Parameter] = []
        seen: Dict[str, str] = {}
        for name, type_raw, param_path in pairs:
            if name in seen:
                result.report(consistency_error(param_path, f"duplicate parameter '{name}'"))
                continue
            seen[name] = param_path
            expression, raw_type = self._type_from_raw(type_raw, param_path, result)
            parameters.append(Parameter(name=name, type=expression, raw_type=raw_type))
        return parameters


class ComponentsLoader(BaseLayerLoader):
    """Components and their dependencies."""

    layer = "components"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        components: Dict[str, Component] = {}
        for component_id, body, path in self._named_items(raw, "components", result):
            if body is None:
                body = {}
            if not isinstance(body, dict):
                result.report(syntax_error(path, f"component '{component_id}' must be a mapping"))
                continue
            self._check_shape(body, self.shapes.component_schema, path, result)

            kind_raw = body.get("type")
            # Shape errors for a non-string type are already reported
            kind = ComponentKind(kind_raw) if isinstance(kind_raw, str) and kind_raw in COMPONENT_KINDS else None

            component = Component(
                id=component_id,
                kind=kind,
                description=self._text(body.get("description"), join_path(path, "description"), result),
                responsibilities=self._defer_names(
                    body.get("responsibilities"),
                    join_path(path, "responsibilities"),
                    result,
                    ReferenceKind.RESPONSIBILITY,
                    Namespace.OPERATION,
                ),
                dependencies=self._defer_names(
                    body.get("dependencies"),
                    join_path(path, "dependencies"),
                    result,
                    ReferenceKind.DEPENDENCY,
                    Namespace.COMPONENT,
                ),
                resources=self._defer_names(
                    body.get("resources"),
                    join_path(path, "resources"),
                    result,
                    ReferenceKind.RESOURCE,
                    Namespace.RESOURCE,
                ),
                exposes=member_tree(body.get("exposes")),
            )
            diagnostic = symbols.define(Namespace.COMPONENT, component_id, component, path)
            result.report(diagnostic)
            if diagnostic is None:
                components[component_id] = component
                result.item_paths[component_id] = path
        result.data["components"] = components


class WorkflowLoader(BaseLayerLoader):
    """Workflow definitions with recursively nested steps."""

    layer = "workflow"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        workflows: Dict[str, WorkflowDefinition] = {}
        for name, body, path in self._named_items(raw, "workflow", result):
            trigger: Optional[str] = None
            description: Optional[str] = None
            if isinstance(body, list):
                steps = self._load_steps(body, path, result)
            elif isinstance(body, dict):
                trigger = self._text(body.get("trigger"), join_path(path, "trigger"), result)
                description = self._text(body.get("description"), join_path(path, "description"), result)
                steps = self._load_steps(body.get("steps"), join_path(path, "steps"), result)
            else:
                result.report(syntax_error(path, f"workflow '{name}' must be a mapping or a list of steps"))
                continue

            if not steps:
                result.report(schema_warning(path, f"workflow '{name}' has no steps"))

            workflow = WorkflowDefinition(name=name, description=description, trigger=trigger, steps=steps)
            diagnostic = symbols.define(Namespace.WORKFLOW, name, workflow, path)
            result.report(diagnostic)
            if diagnostic is None:
                workflows[name] = workflow
                result.item_paths[name] = path
        result.data["workflows"] = workflows

    def _load_steps(self, raw: Any, path: str, result: LayerResult) -> List[WorkflowStep]:
        if raw is None:
            return []
        if isinstance(raw, dict):
            step = self._load_step(raw, path, result)
            return [step] if step is not None else []
        if not isinstance(raw, list):
            result.report(syntax_error(path, "steps must be a list of steps"))
            return []
        steps: List[WorkflowStep] = []
        for index, item in enumerate(raw):
            step = self._load_step(item, join_path(path, index), result)
            if step is not None:
                steps.append(step)
        return steps

    def _load_step(self, raw: Any, path: str, result: LayerResult) -> Optional[WorkflowStep]:
        if isinstance(raw, str) and raw:
            result.defer(path, raw, ReferenceKind.CALL, Namespace.OPERATION)
            return CallStep(operation=raw)
        if not isinstance(raw, dict):
            result.report(syntax_error(path, "a step must be a mapping or an operation name"))
            return None

        present = [keyword for keyword in STEP_KEYWORDS if keyword in raw]
        if len(present) != 1:
            found = ", ".join(present) if present else "none"
            result.report(
                syntax_error(
                    path,
                    f"a step must declare exactly one of {', '.join(STEP_KEYWORDS)} (found {found})",
                )
            )
            return None

        step_loaders = {
            "call": self._load_call,
            "loop": self._load_loop,
            "parallel": self._load_parallel,
            "branch": self._load_branch,
            "wait": self._load_wait,
        }
        return step_loaders[present[0]](raw, path, result)

    def _load_call(self, raw: Dict[str, Any], path: str, result: LayerResult) -> Optional[WorkflowStep]:
        call_path = join_path(path, "call")
        operation = raw["call"]
        if not isinstance(operation, str) or not operation:
            result.report(syntax_error(call_path, "call target must be an operation name"))
            return None
        result.defer(call_path, operation, ReferenceKind.CALL, Namespace.OPERATION)
        return CallStep(
            operation=operation,
            condition=self._text(raw.get("condition"), join_path(path, "condition"), result),
            retry=self._load_retry(raw.get("retry"), join_path(path, "retry"), result),
            on_error=self._load_target(raw.get("on_error"), join_path(path, "on_error"), ReferenceKind.ON_ERROR, result),
        )

    def _load_retry(self, raw: Any, path: str, result: LayerResult) -> Optional[RetryPolicy]:
        if raw is None:
            return None
        if isinstance(raw, int) and not isinstance(raw, bool):
            return RetryPolicy(max_attempts=raw)
        if not isinstance(raw, dict):
            result.report(schema_error(path, "retry must be a mapping or a number of attempts"))
            return None
        self._check_shape(raw, self.shapes.retry_schema, path, result)
        attempts = raw.get("max_attempts")
        return RetryPolicy(
            max_attempts=attempts if isinstance(attempts, int) and not isinstance(attempts, bool) else None,
            backoff=self._text(raw.get("backoff"), join_path(path, "backoff"), result),
            delay=self._text(raw.get("delay"), join_path(path, "delay"), result),
        )

    def _load_loop(self, raw: Dict[str, Any], path: str, result: LayerResult) -> Optional[WorkflowStep]:
        loop_path = join_path(path, "loop")
        spec = raw["loop"]
        if not isinstance(spec, dict):
            result.report(syntax_error(loop_path, "loop must be a mapping"))
            return None
        self._check_shape(spec, self.shapes.loop_schema, loop_path, result)

        collection = self._text(spec.get("over", spec.get("collection")), join_path(loop_path, "over"), result)
        condition = self._text(spec.get("while", spec.get("condition")), join_path(loop_path, "while"), result)
        if collection is None and condition is None:
            result.report(schema_error(loop_path, "loop needs a collection ('over') or a condition ('while')"))

        body_key = next((key for key in ("steps", "body", "do") if key in spec), "steps")
        body = self._load_steps(spec.get(body_key), join_path(loop_path, body_key), result)
        if not body:
            result.report(schema_warning(loop_path, "loop has an empty body"))

        iterations = spec.get("max_iterations")
        return LoopStep(
            collection=collection,
            condition=condition,
            body=body,
            max_iterations=iterations if isinstance(iterations, int) and not isinstance(iterations, bool) else None,
            timeout=self._text(spec.get("timeout"), join_path(loop_path, "timeout"), result),
            on_timeout=self._load_target(
                spec.get("on_timeout"), join_path(loop_path, "on_timeout"), ReferenceKind.ON_TIMEOUT, result
            ),
        )

    def _load_parallel(self, raw: Dict[str, Any], path: str, result: LayerResult) -> Optional[WorkflowStep]:
        parallel_path = join_path(path, "parallel")
        spec = raw["parallel"]
        if isinstance(spec, dict) and "steps" in spec:
            spec = spec["steps"]
            parallel_path = join_path(parallel_path, "steps")
        if not isinstance(spec, list):
            result.report(syntax_error(parallel_path, "parallel must list its steps"))
            return None
        body = self._load_steps(spec, parallel_path, result)
        if len(body) < 2:
            result.report(schema_warning(parallel_path, "parallel block with fewer than two steps"))
        return ParallelStep(body=body)

    def _load_branch(self, raw: Dict[str, Any], path: str, result: LayerResult) -> Optional[WorkflowStep]:
        branch_path = join_path(path, "branch")
        spec = raw["branch"]
        if not isinstance(spec, list) or not spec:
            result.report(syntax_error(branch_path, "branch must be a non-empty list of cases"))
            return None

        cases: List[BranchCase] = []
        fallthrough_seen = False
        for index, case in enumerate(spec):
            case_path = join_path(branch_path, index)
            if not isinstance(case, dict):
                result.report(syntax_error(case_path, "a branch case must be a mapping"))
                continue
            if "else" in case:
                condition = None
                body_raw = case["else"]
                body_path = join_path(case_path, "else")
            elif "if" in case:
                condition = self._text(case["if"], join_path(case_path, "if"), result)
                body_raw = case.get("then")
                body_path = join_path(case_path, "then")
                if body_raw is None:
                    result.report(schema_error(case_path, "branch case has no 'then' body"))
            else:
                result.report(syntax_error(case_path, "a branch case needs 'if' and 'then', or 'else'"))
                continue

            if fallthrough_seen:
                result.report(consistency_warning(case_path, "unreachable branch case after 'else'"))
            if condition is None:
                fallthrough_seen = True
            cases.append(BranchCase(condition=condition, body=self._load_steps(body_raw, body_path, result)))
        return BranchStep(cases=cases)

    def _load_wait(self, raw: Dict[str, Any], path: str, result: LayerResult) -> Optional[WorkflowStep]:
        wait_path = join_path(path, "wait")
        spec = raw["wait"]
        if isinstance(spec, (str, int, float)) and not isinstance(spec, bool):
            return WaitStep(duration=str(spec))
        if not isinstance(spec, dict):
            result.report(syntax_error(wait_path, "wait must be a duration or a mapping"))
            return None
        self._check_shape(spec, self.shapes.wait_schema, wait_path, result)

        duration = self._text(spec.get("duration"), join_path(wait_path, "duration"), result)
        condition = self._text(spec.get("until", spec.get("condition")), join_path(wait_path, "until"), result)
        if duration is None and condition is None:
            result.report(schema_error(wait_path, "wait needs a 'duration' or an 'until' condition"))
        return WaitStep(
            duration=duration,
            condition=condition,
            timeout=self._text(spec.get("timeout"), join_path(wait_path, "timeout"), result),
            on_timeout=self._load_target(
                spec.get("on_timeout"), join_path(wait_path, "on_timeout"), ReferenceKind.ON_TIMEOUT, result
            ),
        )

    def _load_target(self, raw: Any, path: str, kind: ReferenceKind, result: LayerResult) -> Optional[StepTarget]:
        """An on_error / on_timeout target: operation name or nested step(s)."""
        if raw is None:
            return None
        if isinstance(raw, str) and raw:
            result.defer(path, raw, kind, Namespace.OPERATION)
            return raw
        if isinstance(raw, dict) and sum(keyword in raw for keyword in STEP_KEYWORDS) == 1:
            return self._load_steps(raw, path, result)
        if isinstance(raw, list) and raw:
            return self._load_steps(raw, path, result)
        result.report(
            reference_error(path, f"{kind.value} target {raw!r} is neither an operation name nor a nested step")
        )
        return None


class UILoader(BaseLayerLoader):
    """Pages of the UI layer."""

    layer = "ui"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        items_raw, items_path = self._collection(raw, "ui", "pages")
        pages: Dict[str, Page] = {}
        for name, body, path in self._named_items(items_raw, items_path, result):
            if body is None:
                body = {}
            if not isinstance(body, dict):
                result.report(syntax_error(path, f"page '{name}' must be a mapping"))
                continue
            self._check_shape(body, self.shapes.page_schema, path, result)

            route = body.get("route")
            page = Page(
                name=name,
                route=route if isinstance(route, str) else None,
                description=self._text(body.get("description"), join_path(path, "description"), result),
                displays=self._defer_names(
                    body.get("displays"), join_path(path, "displays"), result, ReferenceKind.DISPLAY, Namespace.ENTITY
                ),
                actions=self._defer_names(
                    body.get("actions"), join_path(path, "actions"), result, ReferenceKind.ACTION, Namespace.OPERATION
                ),
                roles=self._defer_names(
                    body.get("roles"), join_path(path, "roles"), result, ReferenceKind.ROLE, Namespace.ROLE
                ),
            )
            diagnostic = symbols.define(Namespace.PAGE, name, page, path)
            result.report(diagnostic)
            if diagnostic is None:
                pages[name] = page
                result.item_paths[name] = path
        result.data["pages"] = pages


class SecurityLoader(BaseLayerLoader):
    """Roles, permissions and field-level access."""

    layer = "security"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        body = self._require_mapping(raw, "security", result, "security section")
        if body is None:
            return

        roles: Dict[str, Role] = {}
        for name, role_body, path in self._role_items(body.get("roles"), result):
            if role_body is None:
                role_body = {}
            if not isinstance(role_body, dict):
                result.report(syntax_error(path, f"role '{name}' must be a mapping"))
                continue
            self._check_shape(role_body, self.shapes.role_schema, path, result)
            role = Role(
                name=name,
                description=self._text(role_body.get("description"), join_path(path, "description"), result),
                inherits=self._defer_names(
                    role_body.get("inherits"), join_path(path, "inherits"), result, ReferenceKind.INHERITS, Namespace.ROLE
                ),
            )
            diagnostic = symbols.define(Namespace.ROLE, name, role, path)
            result.report(diagnostic)
            if diagnostic is None:
                roles[name] = role
                result.item_paths[name] = path

        authentication = body.get("authentication")
        result.data["security"] = SecurityPolicy(
            roles=roles,
            permissions=self._load_permissions(body.get("permissions"), "security.permissions", result),
            field_access=self._load_field_access(body.get("field_access"), "security.field_access", result),
            authentication=authentication if isinstance(authentication, dict) else {},
        )

    def _role_items(self, raw: Any, result: LayerResult) -> Iterator[Tuple[str, Any, str]]:
        if isinstance(raw, list):
            for index, item in enumerate(raw):
                if isinstance(item, str) and item:
                    yield item, {}, join_path("security.roles", item)
                elif isinstance(item, dict) and len(item) == 1 and not {"name", "id"} & set(item):
                    name, role_body = next(iter(item.items()))
                    yield str(name), role_body, join_path("security.roles", str(name))
                else:
                    yield from self._named_items([item], "security.roles", result)
        else:
            yield from self._named_items(raw, "security.roles", result)

    def _load_permissions(self, raw: Any, path: str, result: LayerResult) -> List[Permission]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            result.report(syntax_error(path, "permissions must be a list"))
            return []

        permissions: List[Permission] = []
        for index, item in enumerate(raw):
            item_path = join_path(path, index)
            if not isinstance(item, dict):
                result.report(syntax_error(item_path, "a permission must be a mapping"))
                continue
            self._check_shape(item, self.shapes.permission_schema, item_path, result)
            action = item.get("action")
            if not isinstance(action, str) or not action:
                continue
            result.defer(join_path(item_path, "action"), action, ReferenceKind.ACTION, Namespace.OPERATION)
            roles_key = "roles" if "roles" in item else "allowed_roles"
            filter_key = "filter" if "filter" in item else "data_filter"
            permissions.append(
                Permission(
                    action=action,
                    roles=self._defer_names(
                        item.get(roles_key), join_path(item_path, roles_key), result, ReferenceKind.ROLE, Namespace.ROLE
                    ),
                    rate_limit=self._text(item.get("rate_limit"), join_path(item_path, "rate_limit"), result),
                    filter=self._text(item.get(filter_key), join_path(item_path, filter_key), result),
                )
            )
        return permissions

    def _load_field_access(self, raw: Any, path: str, result: LayerResult) -> List[FieldAccess]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            result.report(syntax_error(path, "field_access must be a list"))
            return []

        rules: List[FieldAccess] = []
        for index, item in enumerate(raw):
            item_path = join_path(path, index)
            if not isinstance(item, dict):
                result.report(syntax_error(item_path, "a field access rule must be a mapping"))
                continue
            problems = self.shapes.check(item, self.shapes.field_access_schema, item_path)
            if problems:
                result.diagnostics.extend(problems)
                continue
            entity, field_name = item["entity"], item["field"]
            result.defer(join_path(item_path, "field"), f"{entity}.{field_name}", ReferenceKind.FIELD, Namespace.ENTITY)
            rules.append(
                FieldAccess(
                    entity=entity,
                    field=field_name,
                    read_roles=self._defer_names(
                        item.get("read"), join_path(item_path, "read"), result, ReferenceKind.ROLE, Namespace.ROLE
                    ),
                    write_roles=self._defer_names(
                        item.get("write"), join_path(item_path, "write"), result, ReferenceKind.ROLE, Namespace.ROLE
                    ),
                )
            )
        return rules


class InfrastructureLoader(BaseLayerLoader):
    """Named infrastructure resources."""

    layer = "infrastructure"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        resources: Dict[str, InfrastructureResource] = {}
        for resource_id, body, path in self._named_items(raw, "infrastructure", result):
            if body is None or isinstance(body, str):
                resource = InfrastructureResource(id=resource_id, kind=body)
            elif isinstance(body, dict):
                resource = InfrastructureResource(
                    id=resource_id,
                    kind=self._text(body.get("type"), join_path(path, "type"), result),
                    config={str(k): v for k, v in body.items() if k != "type"},
                )
            else:
                result.report(syntax_error(path, f"resource '{resource_id}' must be a mapping or a type name"))
                continue
            diagnostic = symbols.define(Namespace.RESOURCE, resource_id, resource, path)
            result.report(diagnostic)
            if diagnostic is None:
                resources[resource_id] = resource
                result.item_paths[resource_id] = path
        result.data["resources"] = resources


class IntegrationsLoader(BaseLayerLoader):
    """External integrations and their callable operations."""

    layer = "integrations"
    KNOWN_KEYS = ("type", "base_url", "operations", "endpoints")

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        integrations: Dict[str, Integration] = {}
        for integration_id, body, path in self._named_items(raw, "integrations", result):
            if body is None:
                body = {}
            if not isinstance(body, dict):
                result.report(syntax_error(path, f"integration '{integration_id}' must be a mapping"))
                continue
            self._check_shape(body, self.shapes.integration_schema, path, result)
            operations_key = "operations" if "operations" in body else "endpoints"
            integration = Integration(
                id=integration_id,
                kind=self._text(body.get("type"), join_path(path, "type"), result),
                base_url=self._text(body.get("base_url"), join_path(path, "base_url"), result),
                operations=member_tree(body.get(operations_key)),
                config={str(k): v for k, v in body.items() if k not in self.KNOWN_KEYS},
            )
            diagnostic = symbols.define(Namespace.INTEGRATION, integration_id, integration, path)
            result.report(diagnostic)
            if diagnostic is None:
                integrations[integration_id] = integration
                result.item_paths[integration_id] = path
        result.data["integrations"] = integrations


class MappingLoader(BaseLayerLoader):
    """Bindings of logic operations to component or integration members."""

    layer = "mapping"

    def _load(self, raw: Any, symbols: SymbolTable, result: LayerResult) -> None:
        entries: Dict[str, MappingEntry] = {}

        def add(operation: str, target: Any, path: str) -> None:
            if target is not None and not isinstance(target, str):
                result.report(
                    schema_error(path, f"mapping target for '{operation}' must be a dotted path or null")
                )
                return
            if operation in entries:
                result.report(
                    consistency_error(
                        path,
                        f"operation '{operation}' has more than one mapping entry (first wins)",
                        "Remove the extra mapping entry",
                    )
                )
                return
            entries[operation] = MappingEntry(operation=operation, target=target or None)
            result.item_paths[operation] = path
            result.defer(path, operation, ReferenceKind.MAPPING_KEY, Namespace.OPERATION)
            if target:
                result.defer(path, target, ReferenceKind.MAPPING_TARGET, Namespace.COMPONENT, Namespace.INTEGRATION)

        if isinstance(raw, dict):
            for operation, target in raw.items():
                add(str(operation), target, join_path("mapping", str(operation)))
        elif isinstance(raw, list):
            for index, item in enumerate(raw):
                item_path = join_path("mapping", index)
                if not isinstance(item, dict):
                    result.report(syntax_error(item_path, "a mapping entry must be a mapping"))
                    continue
                problems = self.shapes.check(item, self.shapes.mapping_entry_schema, item_path)
                if problems:
                    result.diagnostics.extend(problems)
                    continue
                add(item["operation"], item.get("target"), join_path("mapping", item["operation"]))
        else:
            result.report(syntax_error("mapping", f"mapping section must be a mapping, got {type(raw).__name__}"))
            return
        result.data["mapping"] = entries


def default_loaders(shapes: ShapeChecker, settings: Settings) -> List[BaseLayerLoader]:
    """Loaders in the fixed layer processing order."""
    loader_classes = (
        ProjectLoader,
        DomainLoader,
        LogicLoader,
        ComponentsLoader,
        WorkflowLoader,
        UILoader,
        SecurityLoader,
        InfrastructureLoader,
        IntegrationsLoader,
        MappingLoader,
    )
    return [loader_class(shapes, settings) for loader_class in loader_classes]
