"""
Unit Tests for Symbol Table
===========================
"""

import pytest

from layered_dsl.core.dsl.symbols import SymbolTableFrozenError
from layered_dsl.models.schemas import DiagnosticCategory, Namespace, Severity


class TestSymbolTable:
    """Test definitions, duplicates and freezing."""

    def test_define_and_lookup(self, symbols):
        assert symbols.define(Namespace.ENTITY, "User", "user-def", "domain.User") is None

        assert symbols.lookup(Namespace.ENTITY, "User") == "user-def"
        assert symbols.contains(Namespace.ENTITY, "User")
        assert symbols.path_of(Namespace.ENTITY, "User") == "domain.User"
        assert symbols.lookup(Namespace.OPERATION, "User") is None

    def test_duplicate_first_wins(self, symbols):
        symbols.define(Namespace.OPERATION, "Pay", "first", "logic.Pay")
        diagnostic = symbols.define(Namespace.OPERATION, "Pay", "second", "logic[1]")

        assert diagnostic is not None
        assert diagnostic.category == DiagnosticCategory.CONSISTENCY
        assert diagnostic.severity == Severity.ERROR
        assert "first defined at 'logic.Pay'" in diagnostic.message
        assert symbols.lookup(Namespace.OPERATION, "Pay") == "first"

    def test_same_name_in_unrelated_namespaces(self, symbols):
        assert symbols.define(Namespace.OPERATION, "Invoice", "op", "logic.Invoice") is None
        assert symbols.define(Namespace.ROLE, "Invoice", "role", "security.roles.Invoice") is None

    @pytest.mark.parametrize(
        "first,second",
        [
            (Namespace.ENTITY, Namespace.CUSTOM_TYPE),
            (Namespace.CUSTOM_TYPE, Namespace.ENTITY),
            (Namespace.COMPONENT, Namespace.INTEGRATION),
        ],
    )
    def test_shared_space_clash(self, symbols, first, second):
        symbols.define(first, "Money", "a", "first.path")
        diagnostic = symbols.define(second, "Money", "b", "second.path")

        assert diagnostic is not None
        assert diagnostic.category == DiagnosticCategory.CONSISTENCY
        assert not symbols.contains(second, "Money")

    def test_domain_name_clashing_with_primitive(self, symbols):
        diagnostic = symbols.define(Namespace.ENTITY, "String", "def", "domain.String")

        assert diagnostic is not None
        assert "built-in primitive type 'string'" in diagnostic.message
        assert not symbols.contains(Namespace.ENTITY, "String")

    def test_declare_implicit_is_idempotent(self, symbols):
        symbols.declare_implicit(Namespace.ERROR, "NotFound", "logic.A.errors[0]")
        symbols.declare_implicit(Namespace.ERROR, "NotFound", "logic.B.errors[0]")

        assert symbols.names(Namespace.ERROR) == ["NotFound"]
        assert symbols.path_of(Namespace.ERROR, "NotFound") == "logic.A.errors[0]"

    def test_names_in_declaration_order(self, symbols):
        for name in ("b", "a", "c"):
            symbols.define(Namespace.COMPONENT, name, name, f"components.{name}")

        assert symbols.names(Namespace.COMPONENT) == ["b", "a", "c"]
        assert len(symbols) == 3

    def test_frozen_table_rejects_writes(self, symbols):
        symbols.define(Namespace.ENTITY, "User", "def", "domain.User")
        symbols.freeze()

        assert symbols.frozen
        with pytest.raises(SymbolTableFrozenError):
            symbols.define(Namespace.ENTITY, "Task", "def", "domain.Task")
        with pytest.raises(SymbolTableFrozenError):
            symbols.declare_implicit(Namespace.ERROR, "Boom", "logic.X.errors[0]")
        assert symbols.lookup(Namespace.ENTITY, "User") == "def"
