"""
Type-Expression Parser
======================

Parses type strings such as ``array[map[string, optional[reference[Invoice]]]]``,
``enum[draft, sent]``, ``Money?`` or ``string{minLength: 1}`` into typed
TypeExpression ASTs, and renders ASTs back to their canonical string form.

Syntax problems yield a Syntax diagnostic carrying the column offset and no
expression. Problems inside a constraint block yield a Schema diagnostic while
the expression parsed so far is still returned.
"""

import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from layered_dsl.config.logging import get_logger
from layered_dsl.core.dsl.diagnostics import schema_error, syntax_error
from layered_dsl.models.schemas import (
    ArrayType,
    CustomTypeRef,
    Diagnostic,
    EnumType,
    MapType,
    ObjectType,
    OptionalType,
    PrimitiveType,
    ReferenceType,
    TypeExpression,
)

logger = get_logger(__name__)

PRIMITIVE_TYPES = frozenset(
    {
        "string",
        "text",
        "integer",
        "int",
        "long",
        "float",
        "double",
        "decimal",
        "number",
        "boolean",
        "bool",
        "date",
        "datetime",
        "time",
        "timestamp",
        "duration",
        "uuid",
        "email",
        "url",
        "uri",
        "json",
        "binary",
        "bytes",
        "any",
    }
)

# Keyword (and alias) -> canonical composite kind
COMPOSITE_KEYWORDS = {
    "enum": "enum",
    "array": "array",
    "list": "array",
    "map": "map",
    "dict": "map",
    "optional": "optional",
    "object": "object",
    "reference": "reference",
    "ref": "reference",
}

DEFAULT_MAX_NESTING = 128

_IDENTIFIER_START = re.compile(r"[A-Za-z_]")
_IDENTIFIER_CHAR = re.compile(r"[A-Za-z0-9_]")
_BARE_WORD = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-.]*$")
_INTEGER = re.compile(r"^[-+]?\d+$")
_FLOAT = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+(\.\d*)?[eE][-+]?\d+)$")
_ENUM_VALUE = re.compile(r"^[A-Za-z0-9_\-.]+$")
_KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "none": None}


def is_primitive(name: str) -> bool:
    """Whether a name is a built-in primitive type keyword (case-insensitive)."""
    return name.lower() in PRIMITIVE_TYPES


class TypeSyntaxError(Exception):
    """Raised inside the parser for malformed type expressions."""

    def __init__(self, message: str, offset: int, suggestion: Optional[str] = None):
        self.message = message
        self.offset = offset
        self.suggestion = suggestion
        super().__init__(f"{message} (offset {offset})")


class TypeParseResult(BaseModel):
    """Outcome of parsing one type string."""
    expression: Optional[TypeExpression] = None
    diagnostics: List[Diagnostic] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.expression is not None and not self.diagnostics


class _TypeExpressionParser:
    """Recursive-descent parser over a single type string."""

    def __init__(self, text: str, max_depth: int) -> None:
        self.text = text
        self.pos = 0
        self.max_depth = max_depth
        # (message, offset, suggestion) for recoverable constraint problems
        self.issues: List[Tuple[str, int, Optional[str]]] = []

    # Scanning helpers
    def _at_end(self) -> bool:
        return self.pos >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _describe_current(self) -> str:
        return f"'{self._peek()}'" if not self._at_end() else "end of input"

    def _expect(self, char: str, context: str) -> None:
        self._skip_ws()
        if self._peek() != char:
            raise TypeSyntaxError(f"expected '{char}' {context}, found {self._describe_current()}", self.pos)
        self.pos += 1

    def _read_identifier(self) -> str:
        start = self.pos
        if self._at_end() or not _IDENTIFIER_START.match(self._peek()):
            return ""
        while not self._at_end() and _IDENTIFIER_CHAR.match(self._peek()):
            self.pos += 1
        return self.text[start:self.pos]

    # Grammar
    def parse(self) -> TypeExpression:
        self._skip_ws()
        if self._at_end():
            raise TypeSyntaxError("empty type expression", self.pos)
        expression = self._parse_type(0)
        self._skip_ws()
        while not self._at_end():
            if self._peek() != "}":
                raise TypeSyntaxError(f"unexpected character {self._describe_current()}", self.pos)
            self.issues.append(("unbalanced '}' in constraint block", self.pos, None))
            self.pos += 1
            self._skip_ws()
        return expression

    def _parse_type(self, depth: int) -> TypeExpression:
        if depth > self.max_depth:
            raise TypeSyntaxError(
                f"type expression nested deeper than {self.max_depth} levels", self.pos
            )
        self._skip_ws()
        start = self.pos
        name = self._read_identifier()
        if not name:
            raise TypeSyntaxError(f"expected a type name, found {self._describe_current()}", self.pos)

        keyword = COMPOSITE_KEYWORDS.get(name.lower())
        self._skip_ws()
        expression: TypeExpression
        if self._peek() == "[":
            if keyword is None:
                raise TypeSyntaxError(
                    f"'{name}' does not take type arguments",
                    self.pos,
                    suggestion="Only enum, array, map, optional, object and reference take arguments",
                )
            self.pos += 1
            expression = self._parse_composite(keyword, name, start, depth)
        elif keyword == "object":
            expression = ObjectType()
        elif keyword is not None:
            raise TypeSyntaxError(
                f"'{name}' requires arguments in brackets", self.pos, suggestion=f"Write {name}[...]"
            )
        elif is_primitive(name):
            expression = PrimitiveType(name=name.lower())
        else:
            expression = CustomTypeRef(name=name)

        return self._parse_suffixes(expression, depth)

    def _parse_suffixes(self, expression: TypeExpression, depth: int) -> TypeExpression:
        while True:
            self._skip_ws()
            char = self._peek()
            if char == "?":
                depth += 1
                if depth > self.max_depth:
                    raise TypeSyntaxError(
                        f"type expression nested deeper than {self.max_depth} levels", self.pos
                    )
                self.pos += 1
                expression = OptionalType(inner=expression)
            elif char == "{":
                constraints = self._parse_constraints()
                merged = dict(expression.constraints)
                merged.update(constraints)
                expression = expression.model_copy(update={"constraints": merged})
            else:
                return expression

    def _parse_composite(self, keyword: str, name: str, start: int, depth: int) -> TypeExpression:
        context = f"to close '{name}[' opened at column {start + 1}"
        expression: TypeExpression
        if keyword == "enum":
            expression = EnumType(values=self._parse_enum_values())
        elif keyword == "reference":
            self._skip_ws()
            target = self._read_identifier()
            if not target:
                raise TypeSyntaxError(
                    f"expected an entity name in reference[...], found {self._describe_current()}",
                    self.pos,
                )
            expression = ReferenceType(target=target)
        elif keyword == "object":
            expression = ObjectType(fields=self._parse_object_fields(depth))
        else:
            arguments = self._parse_type_arguments(depth)
            expected = 2 if keyword == "map" else 1
            if len(arguments) != expected:
                noun = "key and value types" if keyword == "map" else "exactly one type argument"
                raise TypeSyntaxError(
                    f"'{name}' requires {noun}, got {len(arguments)} argument(s)", start
                )
            if keyword == "array":
                expression = ArrayType(element=arguments[0])
            elif keyword == "map":
                expression = MapType(key=arguments[0], value=arguments[1])
            else:
                expression = OptionalType(inner=arguments[0])
        self._expect("]", context)
        return expression

    def _parse_type_arguments(self, depth: int) -> List[TypeExpression]:
        arguments = [self._parse_type(depth + 1)]
        self._skip_ws()
        while self._peek() == ",":
            self.pos += 1
            arguments.append(self._parse_type(depth + 1))
            self._skip_ws()
        return arguments

    def _parse_object_fields(self, depth: int) -> Dict[str, TypeExpression]:
        fields: Dict[str, TypeExpression] = {}
        self._skip_ws()
        if self._peek() == "]":
            return fields
        while True:
            self._skip_ws()
            field_pos = self.pos
            field_name = self._read_identifier()
            if not field_name:
                raise TypeSyntaxError(
                    f"expected a field name in object[...], found {self._describe_current()}", self.pos
                )
            self._expect(":", f"after object field '{field_name}'")
            field_type = self._parse_type(depth + 1)
            if field_name in fields:
                raise TypeSyntaxError(f"duplicate object field '{field_name}'", field_pos)
            fields[field_name] = field_type
            self._skip_ws()
            if self._peek() != ",":
                return fields
            self.pos += 1

    def _parse_enum_values(self) -> List[str]:
        values: List[str] = []
        while True:
            self._skip_ws()
            value_pos = self.pos
            if self._peek() in ("'", '"'):
                value = self._read_quoted()
                if value is None:
                    raise TypeSyntaxError("unterminated string in enum[...]", value_pos)
            else:
                value = self._read_bare(",]").strip()
                if not value:
                    raise TypeSyntaxError(
                        f"expected an enum value, found {self._describe_current()}", self.pos
                    )
                if not _ENUM_VALUE.match(value):
                    raise TypeSyntaxError(
                        f"invalid enum value '{value}'", value_pos, suggestion="Quote values containing spaces or symbols"
                    )
            if value in values:
                self.issues.append((f"duplicate enum value '{value}'", value_pos, None))
            else:
                values.append(value)
            self._skip_ws()
            if self._peek() != ",":
                return values
            self.pos += 1

    # Constraint blocks
    def _parse_constraints(self) -> Dict[str, Any]:
        open_pos = self.pos
        self.pos += 1
        constraints: Dict[str, Any] = {}
        while True:
            self._skip_ws()
            if self._at_end():
                self.issues.append(
                    ("unbalanced '{' in constraint block", open_pos, "Close the constraint block with '}'")
                )
                return constraints
            if self._peek() == "}":
                self.pos += 1
                return constraints

            key_pos = self.pos
            key = self._read_identifier()
            if not key:
                self.issues.append(
                    (f"expected a constraint name, found {self._describe_current()}", key_pos, None)
                )
                self._skip_constraint_value()
            else:
                self._skip_ws()
                if self._peek() == ":":
                    self.pos += 1
                    self._skip_ws()
                    value_pos = self.pos
                    try:
                        ok, value = self._parse_literal(0)
                    except TypeSyntaxError as e:
                        self.issues.append((f"constraint '{key}': {e.message}", e.offset, e.suggestion))
                        self.pos = value_pos
                        self._skip_constraint_value()
                    else:
                        if ok:
                            constraints[key] = value
                        else:
                            self.issues.append(
                                (
                                    f"constraint '{key}' must be a literal value",
                                    value_pos,
                                    "Use a number, quoted string, true/false, null or a list of literals",
                                )
                            )
                            self._skip_constraint_value()
                else:
                    # A bare flag such as {unique}
                    constraints[key] = True

            self._skip_ws()
            if self._peek() == ",":
                self.pos += 1
            elif self._peek() not in ("}", ""):
                self.issues.append(
                    (f"unexpected character {self._describe_current()} in constraint block", self.pos, None)
                )
                self._skip_constraint_value()
                if self._peek() == ",":
                    self.pos += 1

    def _skip_constraint_value(self) -> None:
        """Advance to the next top-level ',' or '}' of the constraint block."""
        nesting = 0
        while not self._at_end():
            char = self._peek()
            if char in "[{(":
                nesting += 1
            elif char in "]})":
                if nesting == 0:
                    if char == "}":
                        return
                else:
                    nesting -= 1
            elif char == "," and nesting == 0:
                return
            elif char in ("'", '"'):
                if self._read_quoted() is None:
                    return
                continue
            self.pos += 1

    def _parse_literal(self, depth: int) -> Tuple[bool, Any]:
        char = self._peek()
        if char in ("'", '"'):
            value = self._read_quoted()
            return (value is not None), value
        if char == "[":
            if depth >= self.max_depth:
                raise TypeSyntaxError(f"list literal nested deeper than {self.max_depth} levels", self.pos)
            self.pos += 1
            items: List[Any] = []
            self._skip_ws()
            if self._peek() == "]":
                self.pos += 1
                return True, items
            while True:
                self._skip_ws()
                ok, item = self._parse_literal(depth + 1)
                if not ok:
                    return False, None
                items.append(item)
                self._skip_ws()
                if self._peek() == ",":
                    self.pos += 1
                    continue
                if self._peek() == "]":
                    self.pos += 1
                    return True, items
                return False, None
        raw = self._read_bare(",}]").strip()
        return _convert_bare_literal(raw)

    def _read_bare(self, terminators: str) -> str:
        start = self.pos
        nesting = 0
        while not self._at_end():
            char = self._peek()
            if char in "([":
                nesting += 1
            elif char in ")]" and nesting > 0:
                nesting -= 1
            elif char in terminators and nesting == 0:
                break
            self.pos += 1
        return self.text[start:self.pos]

    def _read_quoted(self) -> Optional[str]:
        quote = self._peek()
        self.pos += 1
        chars: List[str] = []
        while not self._at_end():
            char = self._peek()
            if char == "\\" and self.pos + 1 < len(self.text):
                chars.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            self.pos += 1
            if char == quote:
                return "".join(chars)
            chars.append(char)
        return None


def _convert_bare_literal(raw: str) -> Tuple[bool, Any]:
    if not raw:
        return False, None
    lowered = raw.lower()
    if lowered in _KEYWORD_LITERALS:
        return True, _KEYWORD_LITERALS[lowered]
    if _INTEGER.match(raw):
        return True, int(raw)
    if _FLOAT.match(raw):
        return True, float(raw)
    if _BARE_WORD.match(raw):
        return True, raw
    return False, None


def parse_type_expression(
    text: str,
    path: str = "",
    max_depth: int = DEFAULT_MAX_NESTING,
) -> TypeParseResult:
    """
    Parse a type string into a TypeExpression.

    Args:
        text: Type string, e.g. ``array[optional[Money]]{maxItems: 10}``
        path: Document path used for diagnostics
        max_depth: Maximum nesting depth accepted

    Returns:
        TypeParseResult with the expression (None on syntax errors) and diagnostics.
        Diagnostic columns are 1-based offsets into the type string.
    """
    parser = _TypeExpressionParser(text, max_depth)
    try:
        expression = parser.parse()
    except TypeSyntaxError as e:
        logger.debug("Type expression rejected", path=path, text=text, offset=e.offset)
        return TypeParseResult(
            expression=None,
            diagnostics=[
                syntax_error(
                    path,
                    f"invalid type expression '{text}': {e.message} at column {e.offset + 1}",
                    e.suggestion,
                    column=e.offset + 1,
                )
            ],
        )

    diagnostics = [
        schema_error(path, f"type expression '{text}': {message} at column {offset + 1}", suggestion, column=offset + 1)
        for message, offset, suggestion in parser.issues
    ]
    return TypeParseResult(expression=expression, diagnostics=diagnostics)


def iter_type_names(expression: TypeExpression) -> Iterator[Tuple[str, str]]:
    """Yield ``(kind, name)`` for every reference and custom type name, depth first."""
    if isinstance(expression, ReferenceType):
        yield "reference", expression.target
    elif isinstance(expression, CustomTypeRef):
        yield "custom", expression.name
    elif isinstance(expression, ArrayType):
        yield from iter_type_names(expression.element)
    elif isinstance(expression, OptionalType):
        yield from iter_type_names(expression.inner)
    elif isinstance(expression, MapType):
        yield from iter_type_names(expression.key)
        yield from iter_type_names(expression.value)
    elif isinstance(expression, ObjectType):
        for field_type in expression.fields.values():
            yield from iter_type_names(field_type)


def _quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _format_literal(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_format_literal(item) for item in value) + "]"
    text = str(value)
    ok, parsed = _convert_bare_literal(text)
    if ok and parsed == text and isinstance(parsed, str):
        return text
    return _quote(text)


def _format_enum_value(value: str) -> str:
    return value if _ENUM_VALUE.match(value) else _quote(value)


def format_type_expression(expression: TypeExpression) -> str:
    """Render the canonical string form of a type expression."""
    if isinstance(expression, PrimitiveType):
        text = expression.name
    elif isinstance(expression, CustomTypeRef):
        text = expression.name
    elif isinstance(expression, ReferenceType):
        text = f"reference[{expression.target}]"
    elif isinstance(expression, EnumType):
        text = "enum[" + ", ".join(_format_enum_value(v) for v in expression.values) + "]"
    elif isinstance(expression, ArrayType):
        text = f"array[{format_type_expression(expression.element)}]"
    elif isinstance(expression, MapType):
        text = f"map[{format_type_expression(expression.key)}, {format_type_expression(expression.value)}]"
    elif isinstance(expression, OptionalType):
        text = f"optional[{format_type_expression(expression.inner)}]"
    elif isinstance(expression, ObjectType):
        members = ", ".join(f"{name}: {format_type_expression(t)}" for name, t in expression.fields.items())
        text = f"object[{members}]"
    else:
        raise TypeError(f"Unsupported type expression: {type(expression).__name__}")

    if expression.constraints:
        block = ", ".join(f"{key}: {_format_literal(v)}" for key, v in expression.constraints.items())
        text = f"{text}{{{block}}}"
    return text
