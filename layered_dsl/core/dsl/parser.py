"""
DSL Parser
==========

Text front end for LayeredDSL documents. Loads JSON or YAML content, records
source positions for every logical path, reports duplicated keys and hands the
raw document to the validator.
"""

from typing import Dict, List, Any, Optional, Set, Tuple
import json
import yaml  # type: ignore[import-untyped]
import time
from abc import ABC, abstractmethod
from yaml.constructor import ConstructorError  # type: ignore[import-untyped]

from layered_dsl.config.logging import get_logger
from layered_dsl.config.settings import Settings, get_settings
from layered_dsl.core.dsl.diagnostics import (
    LAYER_ORDER,
    fatal_syntax,
    has_blocking,
    join_path,
    make_diagnostic,
    sort_diagnostics,
)
from layered_dsl.core.dsl.loaders import STEP_KEYWORDS
from layered_dsl.core.dsl.shapes import ShapeChecker
from layered_dsl.core.dsl.type_parser import COMPOSITE_KEYWORDS, PRIMITIVE_TYPES
from layered_dsl.core.dsl.validator import DSLValidator, Positions
from layered_dsl.models.schemas import (
    ComponentKind,
    Diagnostic,
    DiagnosticCategory,
    DocumentModel,
    ParseResult,
    RelationshipKind,
    Severity,
    ValidationResult,
)

logger = get_logger(__name__)


class DSLParseError(Exception):
    """Exception raised when DSL content cannot be loaded."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def to_diagnostic(self) -> Diagnostic:
        return fatal_syntax(self.message, line=self.line, column=self.column)


def duplicate_key_diagnostic(path: str, key: str, line: Optional[int] = None, column: Optional[int] = None) -> Diagnostic:
    return make_diagnostic(
        DiagnosticCategory.CONSISTENCY,
        Severity.ERROR,
        path,
        f"duplicate key '{key}' (first value kept)",
        "Remove or rename the repeated key",
        line=line,
        column=column,
    )


class PositionTrackingLoader(yaml.SafeLoader):
    """SafeLoader that keeps the first value of a duplicated mapping key."""

    def construct_mapping(self, node: Any, deep: bool = False) -> Dict[Any, Any]:
        if not isinstance(node, yaml.MappingNode):
            raise ConstructorError(
                None, None, f"expected a mapping node, but found {node.id}", node.start_mark
            )
        own_count = sum(1 for key_node, _ in node.value if key_node.tag != "tag:yaml.org,2002:merge")
        self.flatten_mapping(node)
        # flatten_mapping puts merged pairs first; explicit keys still take precedence
        split = len(node.value) - own_count
        own_pairs, merged_pairs = node.value[split:], node.value[:split]

        mapping: Dict[Any, Any] = {}
        for key_node, value_node in own_pairs + list(reversed(merged_pairs)):
            key = self.construct_object(key_node, deep=deep)
            try:
                hash(key)
            except TypeError:
                raise ConstructorError(
                    "while constructing a mapping", node.start_mark, "found unhashable key", key_node.start_mark
                )
            if key in mapping:
                continue
            mapping[key] = self.construct_object(value_node, deep=deep)
        return mapping


def _mark(node: Any) -> Tuple[int, int]:
    """1-based (line, column) of a node; quoted scalars point past the quote."""
    column = node.start_mark.column + 1
    if isinstance(node, yaml.ScalarNode) and node.style in ("'", '"'):
        column += 1
    return node.start_mark.line + 1, column


def _item_name(node: Any) -> Optional[str]:
    if not isinstance(node, yaml.MappingNode):
        return None
    for key_node, value_node in node.value:
        if (
            isinstance(key_node, yaml.ScalarNode)
            and key_node.value in ("name", "id")
            and isinstance(value_node, yaml.ScalarNode)
            and value_node.value
        ):
            return value_node.value
    return None


def index_positions(
    node: Any,
    path: str,
    positions: Positions,
    duplicates: Optional[List[Diagnostic]] = None,
    ancestors: Optional[Set[int]] = None,
) -> None:
    """
    Record the source position of every logical path below a node.

    Scalar values are located at the value; collections at their key. List
    items carrying a ``name``/``id`` are indexed under that name as well.

    Args:
        node: YAML node
        path: Logical path of the node
        positions: Position map to fill
        duplicates: Collects one diagnostic per repeated mapping key
        ancestors: Ids of the enclosing nodes

    Raises:
        yaml.MarkedYAMLError: If an alias refers to an enclosing node
    """
    ancestors = set() if ancestors is None else ancestors
    if id(node) in ancestors:
        raise yaml.MarkedYAMLError(
            problem=f"recursive alias at '{path}' refers to an enclosing node",
            problem_mark=node.start_mark,
        )
    if isinstance(node, (yaml.MappingNode, yaml.SequenceNode)):
        ancestors.add(id(node))
    if isinstance(node, yaml.MappingNode):
        seen = set()
        for key_node, value_node in node.value:
            if isinstance(key_node, yaml.ScalarNode) and key_node.value == "<<":
                # Merged values are not located, but must not enclose this node
                index_positions(value_node, path, {}, ancestors=ancestors)
                continue
            if not isinstance(key_node, yaml.ScalarNode):
                continue
            key = key_node.value
            child = join_path(path, key)
            if key in seen:
                if duplicates is not None:
                    line, column = _mark(key_node)
                    duplicates.append(duplicate_key_diagnostic(child, key, line, column))
                continue
            seen.add(key)
            positions.setdefault(child, _mark(value_node if isinstance(value_node, yaml.ScalarNode) else key_node))
            index_positions(value_node, child, positions, duplicates, ancestors)
    elif isinstance(node, yaml.SequenceNode):
        for index, item in enumerate(node.value):
            child = join_path(path, index)
            positions.setdefault(child, _mark(item))
            index_positions(item, child, positions, duplicates, ancestors)
            name = _item_name(item)
            if name is not None:
                named = join_path(path, name)
                positions.setdefault(named, _mark(item))
                index_positions(item, named, positions, ancestors=ancestors)
    ancestors.discard(id(node))


def load_yaml_with_positions(content: str) -> Tuple[Any, Positions, List[Diagnostic]]:
    """
    Load YAML content keeping source positions.

    Args:
        content: Raw YAML text

    Returns:
        Tuple of (raw document, positions, duplicate-key diagnostics)

    Raises:
        yaml.YAMLError: If the content is not valid YAML
    """
    loader = PositionTrackingLoader(content)
    try:
        node = loader.get_single_node()
        if node is None:
            return None, {}, []
        # Index before construction; constructing flattens merge keys in place
        positions: Positions = {"": _mark(node)}
        duplicates: List[Diagnostic] = []
        index_positions(node, "", positions, duplicates)
        raw = loader.construct_document(node)
    finally:
        loader.dispose()
    return raw, positions, duplicates


class BaseDSLParser(ABC):
    """Abstract base class for DSL parsers."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.validator = DSLValidator(self.settings)

    @abstractmethod
    def parse(self, content: str) -> ParseResult:
        """Parse DSL content into a resolved document model."""
        pass

    @abstractmethod
    def validate_syntax(self, content: str) -> bool:
        """Validate DSL syntax without full parsing."""
        pass

    def _build_result(
        self,
        raw: Any,
        positions: Optional[Positions],
        load_diagnostics: List[Diagnostic],
        start_time: float,
    ) -> ParseResult:
        validation: ValidationResult = self.validator.validate(raw, positions)
        diagnostics = sort_diagnostics(load_diagnostics + validation.diagnostics)
        return ParseResult(
            success=not has_blocking(diagnostics),
            document=validation.document,
            diagnostics=diagnostics,
            processing_time=time.time() - start_time,
        )

    def _failure(self, diagnostic: Diagnostic, start_time: float) -> ParseResult:
        return ParseResult(
            success=False,
            document=DocumentModel(),
            diagnostics=[diagnostic],
            processing_time=time.time() - start_time,
        )


class JSONDSLParser(BaseDSLParser):
    """JSON-based DSL parser implementation."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        super().__init__(settings)
        self.logger: Any = logger.bind(parser="json")  # structlog.BoundLoggerBase

    def parse(self, content: str) -> ParseResult:
        """
        Parse JSON DSL content.

        Args:
            content: Raw DSL content as string

        Returns:
            ParseResult containing the document model and diagnostics
        """
        start_time = time.time()
        duplicates: List[Diagnostic] = []

        def first_value_wins(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
            mapping: Dict[str, Any] = {}
            for key, value in pairs:
                if key in mapping:
                    duplicates.append(duplicate_key_diagnostic("", key))
                    continue
                mapping[key] = value
            return mapping

        try:
            self.logger.info("Parsing JSON DSL content")
            raw_data = json.loads(content, object_pairs_hook=first_value_wins)
        except json.JSONDecodeError as e:
            error_msg = f"Invalid JSON syntax at line {e.lineno}, column {e.colno}: {e.msg}"
            self.logger.error("JSON parsing failed", error=error_msg)
            return self._failure(DSLParseError(error_msg, e.lineno, e.colno).to_diagnostic(), start_time)

        return self._build_result(raw_data, None, duplicates, start_time)

    def validate_syntax(self, content: str) -> bool:
        """
        Validate JSON DSL syntax.

        Args:
            content: Raw DSL content as string

        Returns:
            True if syntax is valid, False otherwise
        """
        try:
            json.loads(content)
            return True
        except json.JSONDecodeError:
            return False


class YAMLDSLParser(BaseDSLParser):
    """YAML-based DSL parser implementation."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        super().__init__(settings)
        self.logger: Any = logger.bind(parser="yaml")  # structlog.BoundLoggerBase

    def parse(self, content: str) -> ParseResult:
        """
        Parse YAML DSL content.

        Args:
            content: Raw DSL content as string

        Returns:
            ParseResult containing the document model and diagnostics
        """
        start_time = time.time()

        try:
            self.logger.info("Parsing YAML DSL content")
            raw_data, positions, duplicates = load_yaml_with_positions(content)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            line = mark.line + 1 if mark is not None else None
            column = mark.column + 1 if mark is not None else None
            error_msg = f"Invalid YAML syntax: {e}"
            self.logger.error("YAML parsing failed", error=error_msg)
            return self._failure(DSLParseError(error_msg, line, column).to_diagnostic(), start_time)

        self.logger.debug(
            "YAML document loaded",
            sections=list(raw_data.keys()) if isinstance(raw_data, dict) else type(raw_data).__name__,
            duplicate_keys=len(duplicates),
        )
        return self._build_result(raw_data, positions, duplicates, start_time)

    def validate_syntax(self, content: str) -> bool:
        """
        Validate YAML DSL syntax.

        Args:
            content: Raw DSL content as string

        Returns:
            True if syntax is valid, False otherwise
        """
        try:
            # Only check that the YAML loads; structure belongs to full parsing
            load_yaml_with_positions(content)
            return True
        except yaml.YAMLError:
            return False


class DSLParserFactory:
    """Factory for creating DSL parsers based on content type."""

    _parsers = {
        "json": JSONDSLParser,
        "yaml": YAMLDSLParser,
    }

    @classmethod
    def create_parser(cls, parser_type: str, settings: Optional[Settings] = None) -> BaseDSLParser:
        """
        Create a DSL parser instance.

        Args:
            parser_type: Type of parser ("json", "yaml")
            settings: Optional settings override

        Returns:
            DSL parser instance

        Raises:
            ValueError: If parser type is not supported
        """
        if parser_type not in cls._parsers:
            raise ValueError(f"Unsupported parser type: {parser_type}")

        return cls._parsers[parser_type](settings)

    @classmethod
    def detect_parser_type(cls, content: str) -> str:
        """
        Detect DSL parser type from content.

        Args:
            content: Raw DSL content

        Returns:
            Detected parser type
        """
        content = content.strip()
        if content.startswith(("{", "[")):
            return "json"
        elif content.startswith(("---", "- ")) or ":" in content.split("\n", 1)[0]:
            return "yaml"
        else:
            try:
                json.loads(content)
                return "json"
            except json.JSONDecodeError:
                return get_settings().default_parser


def parse_dsl(content: str, parser_type: Optional[str] = None, settings: Optional[Settings] = None) -> ParseResult:
    """
    Parse DSL content using appropriate parser.

    Args:
        content: Raw DSL content
        parser_type: Optional parser type override
        settings: Optional settings override

    Returns:
        ParseResult containing the document model and diagnostics
    """
    if not content or not content.strip():
        return ParseResult(
            success=False,
            document=DocumentModel(),
            diagnostics=[fatal_syntax("Empty DSL content provided")],
            processing_time=0.0,
        )

    if not parser_type:
        parser_type = DSLParserFactory.detect_parser_type(content)

    try:
        parser = DSLParserFactory.create_parser(parser_type, settings)
    except ValueError as e:
        return ParseResult(
            success=False,
            document=DocumentModel(),
            diagnostics=[fatal_syntax(str(e))],
            processing_time=0.0,
        )
    return parser.parse(content)


def validate_dsl(raw: Any, settings: Optional[Settings] = None) -> ValidationResult:
    """
    Validate an already-loaded raw document.

    Args:
        raw: Raw document (mapping of layers)
        settings: Optional settings override

    Returns:
        ValidationResult with the document model and diagnostics
    """
    return DSLValidator(settings).validate(raw)


def validate_dsl_syntax(content: str, parser_type: Optional[str] = None) -> bool:
    """
    Validate DSL syntax without full parsing.

    Args:
        content: Raw DSL content
        parser_type: Optional parser type override

    Returns:
        True if syntax is valid, False otherwise
    """
    if not content or not content.strip():
        return False

    if not parser_type:
        parser_type = DSLParserFactory.detect_parser_type(content)

    try:
        parser = DSLParserFactory.create_parser(parser_type)
        return parser.validate_syntax(content)
    except ValueError:
        return False


def get_validation_suggestions(content: str, diagnostics: List[Diagnostic]) -> List[str]:
    """
    Generate validation suggestions based on content and diagnostics.

    Args:
        content: Raw DSL content
        diagnostics: Diagnostics from a previous parse

    Returns:
        List of suggestions for fixing the reported problems
    """
    suggestions: List[str] = []

    for diagnostic in diagnostics:
        if diagnostic.suggestion:
            suggestions.append(f"{diagnostic.path or '<document>'}: {diagnostic.suggestion}")
        message = diagnostic.message
        if "JSON syntax" in message:
            suggestions.extend(
                [
                    "Check for missing commas between object properties",
                    "Ensure all strings are properly quoted",
                ]
            )
        elif "YAML syntax" in message:
            suggestions.extend(
                [
                    "Check indentation consistency (use spaces, not tabs)",
                    "Quote type strings that contain '{', ':' or '?'",
                ]
            )
        elif "type expression" in message:
            suggestions.append("Type strings look like 'array[optional[Money]]{maxItems: 10}'")
        elif message.startswith("circular"):
            suggestions.append("Break dependency cycles by removing one edge of the cycle")

    if "domain" not in content:
        suggestions.append("A LayeredDSL document usually declares a 'domain' section with its entities")

    # Remove duplicates while preserving order
    unique_suggestions: List[str] = []
    for suggestion in suggestions:
        if suggestion not in unique_suggestions:
            unique_suggestions.append(suggestion)

    return unique_suggestions[: get_settings().max_suggestions]


def get_supported_types() -> List[str]:
    """
    Get the type keywords understood by the type-expression parser.

    Returns:
        Sorted primitive type names followed by the composite keywords
    """
    return sorted(PRIMITIVE_TYPES) + sorted(set(COMPOSITE_KEYWORDS.values()))


def get_dsl_schema_info() -> Dict[str, Any]:
    """
    Get DSL schema information for documentation/tooling.

    Returns:
        Dictionary containing schema information
    """
    return {
        "version": "1.0",
        "supported_formats": ["json", "yaml"],
        "layers": list(LAYER_ORDER),
        "primitive_types": sorted(PRIMITIVE_TYPES),
        "composite_types": sorted(set(COMPOSITE_KEYWORDS.values())),
        "type_aliases": {k: v for k, v in COMPOSITE_KEYWORDS.items() if k != v},
        "step_kinds": list(STEP_KEYWORDS),
        "component_kinds": [k.value for k in ComponentKind],
        "relationship_kinds": [k.value for k in RelationshipKind],
        "item_schemas": ShapeChecker().schemas(),
        "example_minimal": {
            "project": {"name": "Tasks"},
            "domain": {
                "User": {"id": "uuid", "email": "email"},
                "Task": {"id": "uuid", "title": "string{minLength: 1}", "assignee": "reference[User]"},
            },
            "logic": {"AssignTask": {"input": {"task": "reference[Task]"}, "modifies": ["Task"]}},
            "components": {"tasks": {"type": "service", "responsibilities": ["AssignTask"]}},
        },
    }
