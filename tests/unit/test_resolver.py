"""
Unit Tests for Reference Resolver
=================================

Tests for resolving deferred references and inferring entity relationships.
"""

import pytest

from layered_dsl.core.dsl.resolver import ReferenceResolver, infer_relationships
from layered_dsl.core.dsl.symbols import SymbolTable
from layered_dsl.core.dsl.type_parser import parse_type_expression
from layered_dsl.models.schemas import (
    Component,
    DeferredReference,
    DiagnosticCategory,
    Entity,
    EntityField,
    Integration,
    Namespace,
    Operation,
    ReferenceKind,
    ReferenceStatus,
    RelationshipKind,
    Role,
    Severity,
)


def make_entity(name, /, **fields):
    return Entity(
        name=name,
        fields={
            field_name: EntityField(name=field_name, type=parse_type_expression(text).expression, raw_type=text)
            for field_name, text in fields.items()
        },
    )


def reference(path, name, kind, *namespaces):
    return DeferredReference(source_path=path, name=name, namespaces=list(namespaces), kind=kind)


@pytest.fixture
def frozen_symbols():
    symbols = SymbolTable()
    symbols.define(Namespace.ENTITY, "User", make_entity("User", email="string"), "domain.User")
    symbols.define(Namespace.OPERATION, "CreateUser", Operation(name="CreateUser"), "logic.CreateUser")
    symbols.define(
        Namespace.COMPONENT, "api", Component(id="api", exposes={"v1": {"create": None}}), "components.api"
    )
    symbols.define(
        Namespace.INTEGRATION, "stripe", Integration(id="stripe", operations={"charge": None}), "integrations.stripe"
    )
    symbols.define(Namespace.ROLE, "admin", Role(name="admin"), "security.roles.admin")
    symbols.freeze()
    return symbols


class TestReferenceResolver:
    """Test name, field and mapping-target resolution."""

    def test_requires_frozen_table(self):
        with pytest.raises(RuntimeError):
            ReferenceResolver(SymbolTable())

    def test_resolved_reference(self, frozen_symbols):
        records, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("components.api.responsibilities[0]", "CreateUser", ReferenceKind.RESPONSIBILITY, Namespace.OPERATION)]
        )

        assert diagnostics == []
        assert records[0].status == ReferenceStatus.RESOLVED
        assert records[0].resolved_namespace == Namespace.OPERATION

    def test_dangling_reference_with_suggestion(self, frozen_symbols):
        records, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("workflow.Flow.steps[0]", "CreateUsr", ReferenceKind.CALL, Namespace.OPERATION)]
        )

        assert records[0].is_dangling
        assert len(diagnostics) == 1
        assert diagnostics[0].category == DiagnosticCategory.REFERENCE
        assert diagnostics[0].severity == Severity.ERROR
        assert diagnostics[0].path == "workflow.Flow.steps[0]"
        assert diagnostics[0].message == "reference to undefined operation 'CreateUsr'"
        assert diagnostics[0].suggestion == "Did you mean 'CreateUser'?"

    def test_undefined_type(self, frozen_symbols):
        _, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("domain.User.balance", "Money", ReferenceKind.TYPE, Namespace.ENTITY, Namespace.CUSTOM_TYPE)]
        )

        assert diagnostics[0].message == "undefined type 'Money' (not a primitive, entity or custom type)"

    def test_records_sorted_by_path(self, frozen_symbols):
        records, _ = ReferenceResolver(frozen_symbols).resolve(
            [
                reference("ui.pages.B.roles[0]", "admin", ReferenceKind.ROLE, Namespace.ROLE),
                reference("components.api.dependencies[0]", "api", ReferenceKind.DEPENDENCY, Namespace.COMPONENT),
            ]
        )

        assert [record.path for record in records] == ["components.api.dependencies[0]", "ui.pages.B.roles[0]"]

    @pytest.mark.parametrize(
        "name,message",
        [
            ("User.email", None),
            ("User.emial", "entity 'User' has no field 'emial'"),
            ("Ghost.email", "reference to undefined entity 'Ghost'"),
        ],
    )
    def test_field_reference(self, frozen_symbols, name, message):
        _, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("security.field_access[0].field", name, ReferenceKind.FIELD, Namespace.ENTITY)]
        )

        if message is None:
            assert diagnostics == []
        else:
            assert [d.message for d in diagnostics] == [message]

    def test_misspelled_field_suggestion(self, frozen_symbols):
        _, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("security.field_access[0].field", "User.emial", ReferenceKind.FIELD, Namespace.ENTITY)]
        )

        assert diagnostics[0].suggestion == "Did you mean 'email'?"

    @pytest.mark.parametrize(
        "target,namespace",
        [
            ("api", Namespace.COMPONENT),
            ("api.v1.create", Namespace.COMPONENT),
            ("components.api.v1", Namespace.COMPONENT),
            ("stripe.charge", Namespace.INTEGRATION),
            ("integrations.stripe.charge", Namespace.INTEGRATION),
        ],
    )
    def test_mapping_target_resolves(self, frozen_symbols, target, namespace):
        records, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("mapping.CreateUser", target, ReferenceKind.MAPPING_TARGET, Namespace.COMPONENT, Namespace.INTEGRATION)]
        )

        assert diagnostics == []
        assert records[0].resolved_namespace == namespace

    @pytest.mark.parametrize(
        "target,message",
        [
            ("nowhere.create", "mapping target 'nowhere.create': undefined component or integration 'nowhere'"),
            ("integrations.api.create", "mapping target 'integrations.api.create': undefined integration 'api'"),
            ("api.v2", "mapping target 'api.v2': 'api' has no member 'v2'"),
            ("api.v1.create.extra", "mapping target 'api.v1.create.extra': 'api.v1.create' has no member 'extra'"),
        ],
    )
    def test_mapping_target_dangling(self, frozen_symbols, target, message):
        records, diagnostics = ReferenceResolver(frozen_symbols).resolve(
            [reference("mapping.CreateUser", target, ReferenceKind.MAPPING_TARGET, Namespace.COMPONENT, Namespace.INTEGRATION)]
        )

        assert records[0].is_dangling
        assert [d.message for d in diagnostics] == [message]

    def test_error_name_clash(self):
        symbols = SymbolTable()
        symbols.define(Namespace.ENTITY, "User", make_entity("User", id="uuid"), "domain.User")
        symbols.declare_implicit(Namespace.ERROR, "User", "logic.Load.errors[0]")
        symbols.declare_implicit(Namespace.ERROR, "NotFound", "logic.Load.errors[1]")
        symbols.freeze()

        _, diagnostics = ReferenceResolver(symbols).resolve([])

        assert len(diagnostics) == 1
        assert diagnostics[0].category == DiagnosticCategory.CONSISTENCY
        assert diagnostics[0].path == "logic.Load.errors[0]"
        assert diagnostics[0].message == "error 'User' is also declared as entity (at 'domain.User')"


class TestRelationshipInference:
    """Test relationship derivation from entity fields."""

    @pytest.fixture
    def entities(self):
        return {
            "User": make_entity(
                "User",
                tasks="array[reference[Task]]",
                org="reference[Org]",
                manager="optional[reference[User]]",
            ),
            "Task": make_entity(
                "Task",
                watchers="array[reference[User]]",
                owner="uuid{relation: many-to-one, target: User}",
                kind="string{relation: sideways}",
            ),
            "Org": make_entity("Org", name="string"),
        }

    @pytest.fixture
    def entity_symbols(self, entities):
        symbols = SymbolTable()
        for name, entity in entities.items():
            symbols.define(Namespace.ENTITY, name, entity, f"domain.{name}")
        symbols.freeze()
        return symbols

    def test_relationship_kinds(self, entities, entity_symbols):
        relationships, _ = infer_relationships(entities, entity_symbols)

        summary = [(r.source, r.field, r.target, r.kind, r.required, r.explicit) for r in relationships]
        assert summary == [
            ("Task", "owner", "User", RelationshipKind.MANY_TO_ONE, True, True),
            ("Task", "watchers", "User", RelationshipKind.MANY_TO_MANY, False, False),
            ("User", "manager", "User", RelationshipKind.MANY_TO_ONE, False, False),
            ("User", "org", "Org", RelationshipKind.MANY_TO_ONE, True, False),
            ("User", "tasks", "Task", RelationshipKind.MANY_TO_MANY, False, False),
        ]

    def test_many_to_many_junction(self, entities, entity_symbols):
        relationships, _ = infer_relationships(entities, entity_symbols)

        junctions = {r.junction for r in relationships if r.kind == RelationshipKind.MANY_TO_MANY}
        assert junctions == {"TaskUser"}

    def test_unknown_relation_kind(self, entities, entity_symbols):
        _, diagnostics = infer_relationships(entities, entity_symbols, {"Task": "domain.entities.Task"})

        assert len(diagnostics) == 1
        assert diagnostics[0].category == DiagnosticCategory.SCHEMA
        assert diagnostics[0].path == "domain.entities.Task.kind"
        assert diagnostics[0].message == "unknown relation kind 'sideways'"

    def test_one_to_many_without_back_reference(self):
        entities = {
            "Order": make_entity("Order", lines="array[reference[Line]]"),
            "Line": make_entity("Line", sku="string"),
        }
        symbols = SymbolTable()
        for name, entity in entities.items():
            symbols.define(Namespace.ENTITY, name, entity, f"domain.{name}")
        symbols.freeze()

        relationships, _ = infer_relationships(entities, symbols)

        assert [(r.field, r.kind, r.junction) for r in relationships] == [
            ("lines", RelationshipKind.ONE_TO_MANY, None)
        ]

    def test_custom_name_that_is_an_entity(self):
        entities = {
            "Invoice": make_entity("Invoice", customer="Customer"),
            "Customer": make_entity("Customer", name="string"),
        }
        symbols = SymbolTable()
        for name, entity in entities.items():
            symbols.define(Namespace.ENTITY, name, entity, f"domain.{name}")
        symbols.freeze()

        relationships, _ = infer_relationships(entities, symbols)

        assert [(r.source, r.target, r.kind) for r in relationships] == [
            ("Invoice", "Customer", RelationshipKind.MANY_TO_ONE)
        ]
