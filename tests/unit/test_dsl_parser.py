"""
Unit Tests for DSL Parser
=========================

Tests for loading JSON and YAML DSL content, source positions, duplicate keys
and the module-level helper functions.
"""

import json

import pytest

from layered_dsl.core.dsl.diagnostics import LAYER_ORDER
from layered_dsl.core.dsl.parser import (
    DSLParseError,
    DSLParserFactory,
    JSONDSLParser,
    YAMLDSLParser,
    get_dsl_schema_info,
    get_supported_types,
    get_validation_suggestions,
    load_yaml_with_positions,
    parse_dsl,
    validate_dsl,
    validate_dsl_syntax,
)
from layered_dsl.core.dsl.type_parser import PRIMITIVE_TYPES
from layered_dsl.models.schemas import ComponentKind, DiagnosticCategory, Severity
from tests.data.sample_dsl_documents import TASKS_DOCUMENT
from tests.utils import (
    assert_clean_result,
    assert_failed_parse_result,
    assert_fatal_only,
    assert_single_diagnostic,
    assert_successful_parse_result,
)


DANGLING_YAML = """\
domain:
  Task:
    id: uuid
    assignee: reference[User]
"""


class TestYAMLDSLParser:
    """Test YAML DSL parser."""

    def test_parse_complete_document(self, yaml_parser, billing_yaml):
        result = yaml_parser.parse(billing_yaml)

        assert_successful_parse_result(result)
        assert result.diagnostics == []
        assert set(result.document.operations) == {"CreateInvoice", "SendInvoice", "RecordPayment"}

    def test_diagnostic_line_and_column(self, yaml_parser):
        result = yaml_parser.parse(DANGLING_YAML)

        assert_failed_parse_result(result, "reference to undefined entity 'User'")
        location = result.diagnostics[0].location
        assert (location.line, location.column) == (4, 15)
        assert location.path == "domain.Task.assignee"

    def test_type_error_column_inside_quoted_string(self, yaml_parser):
        content = 'domain:\n  User:\n    tags: "array[string"\n'

        result = yaml_parser.parse(content)

        diagnostic = assert_single_diagnostic(result.diagnostics, DiagnosticCategory.SYNTAX, Severity.ERROR)
        assert (diagnostic.location.line, diagnostic.location.column) == (3, 24)

    def test_named_list_items_are_located(self, yaml_parser):
        content = "domain:\n  - name: Task\n    owner: reference[Ghost]\n"

        result = yaml_parser.parse(content)

        diagnostic = assert_single_diagnostic(
            result.diagnostics, DiagnosticCategory.REFERENCE, Severity.ERROR, path="domain.Task.owner"
        )
        assert (diagnostic.location.line, diagnostic.location.column) == (3, 12)

    def test_duplicate_key_first_value_kept(self, yaml_parser):
        content = "domain:\n  User:\n    id: uuid\n  User:\n    id: string\n"

        result = yaml_parser.parse(content)

        diagnostic = assert_single_diagnostic(
            result.diagnostics, DiagnosticCategory.CONSISTENCY, Severity.ERROR, path="domain.User"
        )
        assert diagnostic.message == "duplicate key 'User' (first value kept)"
        assert (diagnostic.location.line, diagnostic.location.column) == (4, 3)
        assert result.document.entities["User"].fields["id"].raw_type == "uuid"
        assert result.success is False

    def test_merge_keys_explicit_value_wins(self, yaml_parser):
        content = (
            "components:\n"
            "  base: &svc\n"
            "    type: service\n"
            "    description: shared\n"
            "  api:\n"
            "    <<: *svc\n"
            "    type: library\n"
        )

        result = yaml_parser.parse(content)

        assert_successful_parse_result(result)
        assert result.diagnostics == []
        api = result.document.components["api"]
        assert api.kind == ComponentKind.LIBRARY
        assert api.description == "shared"

    @pytest.mark.parametrize(
        "content",
        [
            "project: {name: X}\ncomponents:\n  api: &a\n    type: service\n    exposes: {self: *a}\n",
            "components:\n  api: &a\n    type: service\n    exposes:\n      <<: *a\n",
            "workflow:\n  Flow:\n    - &step\n      call: Process\n      on_error: [*step]\n",
        ],
    )
    def test_recursive_alias_is_fatal(self, yaml_parser, content):
        result = yaml_parser.parse(content)

        assert_failed_parse_result(result, "recursive alias")
        assert_fatal_only(result.diagnostics)
        assert result.diagnostics[0].location.line is not None
        assert yaml_parser.validate_syntax(content) is False

    def test_shared_alias_is_not_recursive(self, yaml_parser):
        content = (
            "components:\n"
            "  api:\n"
            "    type: service\n"
            "    exposes: &ops {invoices: [create, list]}\n"
            "  worker:\n"
            "    type: module\n"
            "    exposes: *ops\n"
        )

        result = yaml_parser.parse(content)

        assert_successful_parse_result(result)
        assert result.document.components["worker"].exposes == {"invoices": {"create": None, "list": None}}

    def test_invalid_yaml_is_fatal(self, yaml_parser):
        result = yaml_parser.parse("domain: [unclosed\n  User: {}\n")

        assert_failed_parse_result(result, "Invalid YAML syntax")
        assert_fatal_only(result.diagnostics)
        assert result.diagnostics[0].location.line is not None

    def test_comment_only_document_is_empty(self, yaml_parser):
        result = yaml_parser.parse("# nothing here\n")

        assert_fatal_only(result.diagnostics)
        assert result.diagnostics[0].message == "document is empty"

    def test_scalar_root_is_fatal(self, yaml_parser):
        result = yaml_parser.parse("just a string\n")

        assert_failed_parse_result(result, "document root must be a mapping")

    def test_warnings_do_not_fail_parse(self, yaml_parser):
        content = (
            "logic:\n"
            "  CreateInvoice: {}\n"
            "components:\n"
            "  billing:\n"
            "    type: service\n"
        )

        result = yaml_parser.parse(content)

        assert result.success is True
        assert result.errors == []
        assert len(result.warnings) == 1
        assert "unmapped operation: CreateInvoice" in result.warnings[0]

    def test_validate_syntax(self, yaml_parser):
        assert yaml_parser.validate_syntax(DANGLING_YAML) is True
        assert yaml_parser.validate_syntax("domain: [unclosed") is False


class TestLoadYAMLWithPositions:
    """Test the position-tracking loader."""

    def test_positions(self):
        raw, positions, duplicates = load_yaml_with_positions(DANGLING_YAML)

        assert raw == {"domain": {"Task": {"id": "uuid", "assignee": "reference[User]"}}}
        assert positions[""] == (1, 1)
        assert positions["domain"] == (1, 1)
        assert positions["domain.Task"] == (2, 3)
        assert positions["domain.Task.id"] == (3, 9)
        assert duplicates == []

    def test_sequence_items_indexed(self):
        _, positions, _ = load_yaml_with_positions("mapping:\n  - operation: A\n    target: api\n")

        assert positions["mapping[0]"] == (2, 5)
        assert positions["mapping[0].target"] == (3, 13)

    def test_empty_content(self):
        assert load_yaml_with_positions("") == (None, {}, [])


class TestJSONDSLParser:
    """Test JSON DSL parser."""

    def test_parse_valid_json(self, json_parser):
        result = json_parser.parse(json.dumps(TASKS_DOCUMENT))

        assert_successful_parse_result(result)
        assert result.diagnostics == []
        assert set(result.document.entities) == {"User", "Task"}

    def test_invalid_json_is_fatal(self, json_parser):
        result = json_parser.parse('{"domain": }')

        assert_failed_parse_result(result, "Invalid JSON syntax at line 1")
        assert_fatal_only(result.diagnostics)
        assert result.diagnostics[0].location.line == 1

    def test_duplicate_key(self, json_parser):
        result = json_parser.parse('{"domain": {"A": {"id": "uuid"}}, "domain": {}}')

        diagnostic = assert_single_diagnostic(result.diagnostics, DiagnosticCategory.CONSISTENCY, Severity.ERROR)
        assert diagnostic.message == "duplicate key 'domain' (first value kept)"
        assert "A" in result.document.entities

    def test_validate_syntax(self, json_parser):
        assert json_parser.validate_syntax('{"domain": {}}') is True
        assert json_parser.validate_syntax('{"domain": ') is False


class TestDSLParserFactory:
    """Test DSL parser factory."""

    def test_create_parsers(self, test_settings):
        assert isinstance(DSLParserFactory.create_parser("json", test_settings), JSONDSLParser)
        assert isinstance(DSLParserFactory.create_parser("yaml", test_settings), YAMLDSLParser)

    def test_unsupported_parser(self):
        with pytest.raises(ValueError, match="Unsupported parser type"):
            DSLParserFactory.create_parser("xml")

    @pytest.mark.parametrize(
        "content,expected",
        [
            ('{"domain": {}}', "json"),
            ("[1, 2]", "json"),
            ("domain:\n  User: {}", "yaml"),
            ("---\ndomain: {}", "yaml"),
            ("- a\n- b", "yaml"),
        ],
    )
    def test_detect_parser_type(self, content, expected):
        assert DSLParserFactory.detect_parser_type(content) == expected


class TestModuleFunctions:
    """Test module-level helpers."""

    def test_parse_dsl_detects_format(self, billing_yaml):
        assert_successful_parse_result(parse_dsl(billing_yaml))
        assert_successful_parse_result(parse_dsl(json.dumps(TASKS_DOCUMENT)))

    @pytest.mark.parametrize("content", ["", "   \n"])
    def test_parse_dsl_empty(self, content):
        result = parse_dsl(content)

        assert_failed_parse_result(result, "Empty DSL content provided")

    def test_parse_dsl_unsupported_type(self):
        result = parse_dsl("domain: {}", parser_type="xml")

        assert_failed_parse_result(result, "Unsupported parser type: xml")

    def test_validate_dsl(self, tasks_document):
        assert_clean_result(validate_dsl(tasks_document))

    def test_validate_dsl_syntax(self):
        assert validate_dsl_syntax("domain:\n  User: {}") is True
        assert validate_dsl_syntax('{"domain": ') is False
        assert validate_dsl_syntax("") is False
        assert validate_dsl_syntax("domain: {}", parser_type="xml") is False

    def test_parse_error_to_diagnostic(self):
        diagnostic = DSLParseError("bad input", 3, 7).to_diagnostic()

        assert diagnostic.severity == Severity.FATAL
        assert diagnostic.category == DiagnosticCategory.SYNTAX
        assert (diagnostic.location.line, diagnostic.location.column) == (3, 7)

    def test_validation_suggestions_for_yaml_error(self):
        content = "components: [unclosed\n"
        result = parse_dsl(content, parser_type="yaml")

        suggestions = get_validation_suggestions(content, result.diagnostics)

        assert "Check indentation consistency (use spaces, not tabs)" in suggestions
        assert "A LayeredDSL document usually declares a 'domain' section with its entities" in suggestions
        assert len(suggestions) <= 5

    def test_validation_suggestions_include_did_you_mean(self):
        content = "domain:\n  User:\n    id: uuid\n  Task:\n    owner: reference[Usr]\n"
        result = parse_dsl(content)

        suggestions = get_validation_suggestions(content, result.diagnostics)

        assert "domain.Task.owner: Did you mean 'User'?" in suggestions

    def test_supported_types(self):
        types = get_supported_types()

        assert types[: len(PRIMITIVE_TYPES)] == sorted(PRIMITIVE_TYPES)
        assert {"array", "map", "optional", "enum", "object", "reference"} <= set(types)
        assert "list" not in types

    def test_schema_info(self):
        info = get_dsl_schema_info()

        assert info["layers"] == list(LAYER_ORDER)
        assert info["step_kinds"] == ["call", "loop", "parallel", "branch", "wait"]
        assert info["type_aliases"]["list"] == "array"
        assert "component" in info["item_schemas"]

    def test_schema_info_example_is_clean(self):
        assert_clean_result(validate_dsl(get_dsl_schema_info()["example_minimal"]))
