"""
Pydantic Models and Schemas
===========================

Core data models for LayeredDSL documents: type expressions, layer entities,
workflow steps, diagnostics and the resolved document model.
All models are frozen once constructed.
"""

from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# Enums
class DiagnosticCategory(str, Enum):
    """Diagnostic categories."""
    SYNTAX = "Syntax"
    SCHEMA = "Schema"
    REFERENCE = "Reference"
    CONSISTENCY = "Consistency"
    GENERATION = "Generation"


class Severity(str, Enum):
    """Diagnostic severities, most severe first."""
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def is_blocking(self) -> bool:
        """Whether the severity conventionally blocks code generation."""
        return self in (Severity.FATAL, Severity.ERROR)


class Namespace(str, Enum):
    """Symbol table namespaces."""
    ENTITY = "entity"
    CUSTOM_TYPE = "custom_type"
    OPERATION = "operation"
    COMPONENT = "component"
    ROLE = "role"
    INTEGRATION = "integration"
    RESOURCE = "resource"
    ERROR = "error"
    WORKFLOW = "workflow"
    PAGE = "page"


class ComponentKind(str, Enum):
    """Component kinds."""
    SERVICE = "service"
    MODULE = "module"
    LIBRARY = "library"
    FRONTEND = "frontend"
    EXTERNAL_API = "external_api"


class RelationshipKind(str, Enum):
    """Entity relationship cardinalities."""
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_ONE = "many-to-one"
    MANY_TO_MANY = "many-to-many"


class ReferenceKind(str, Enum):
    """Where a deferred reference was recorded."""
    TYPE = "type"
    RELATION = "relation"
    MODIFIES = "modifies"
    ERROR = "error"
    CALL = "call"
    ON_ERROR = "on_error"
    ON_TIMEOUT = "on_timeout"
    RESPONSIBILITY = "responsibility"
    DEPENDENCY = "dependency"
    RESOURCE = "resource"
    ROLE = "role"
    INHERITS = "inherits"
    ACTION = "action"
    DISPLAY = "display"
    FIELD = "field"
    MAPPING_KEY = "mapping_key"
    MAPPING_TARGET = "mapping_target"


class ReferenceStatus(str, Enum):
    """Resolution status of a reference."""
    RESOLVED = "resolved"
    DANGLING = "dangling"


# Base Models
class FrozenModel(BaseModel):
    """Base model for immutable document parts."""
    model_config = ConfigDict(frozen=True)


# Type Expressions
class TypeNode(FrozenModel):
    """Base for every type expression node."""
    constraints: Dict[str, Any] = Field(default_factory=dict, description="Constraint block")


class PrimitiveType(TypeNode):
    kind: Literal["primitive"] = "primitive"
    name: str


class EnumType(TypeNode):
    kind: Literal["enum"] = "enum"
    values: List[str] = Field(default_factory=list)


class ArrayType(TypeNode):
    kind: Literal["array"] = "array"
    element: "TypeExpression"


class MapType(TypeNode):
    kind: Literal["map"] = "map"
    key: "TypeExpression"
    value: "TypeExpression"


class OptionalType(TypeNode):
    kind: Literal["optional"] = "optional"
    inner: "TypeExpression"


class ObjectType(TypeNode):
    kind: Literal["object"] = "object"
    fields: Dict[str, "TypeExpression"] = Field(default_factory=dict)


class ReferenceType(TypeNode):
    kind: Literal["reference"] = "reference"
    target: str


class CustomTypeRef(TypeNode):
    kind: Literal["custom"] = "custom"
    name: str


TypeExpression = Annotated[
    Union[
        PrimitiveType,
        EnumType,
        ArrayType,
        MapType,
        OptionalType,
        ObjectType,
        ReferenceType,
        CustomTypeRef,
    ],
    Field(discriminator="kind"),
]

for _model in (ArrayType, MapType, OptionalType, ObjectType):
    _model.model_rebuild()


# Diagnostics
class DiagnosticLocation(FrozenModel):
    """Source location of a diagnostic."""
    line: Optional[int] = Field(None, description="1-based source line")
    column: Optional[int] = Field(None, description="1-based source column")
    path: str = Field("", description="Dotted path into the document")


class Diagnostic(FrozenModel):
    """One reported issue."""
    category: DiagnosticCategory
    severity: Severity
    location: DiagnosticLocation = Field(default_factory=DiagnosticLocation)
    message: str
    suggestion: Optional[str] = None

    @property
    def path(self) -> str:
        return self.location.path

    def to_report(self) -> Dict[str, Any]:
        """Serialize to the error-report shape."""
        return self.model_dump(mode="json")

    def format(self) -> str:
        """Format as a single human-readable line."""
        where = self.location.path or "<document>"
        if self.location.line is not None:
            where = f"{where} (line {self.location.line}, column {self.location.column})"
        text = f"{self.severity.value} [{self.category.value}] {where}: {self.message}"
        if self.suggestion:
            text = f"{text} ({self.suggestion})"
        return text


# Deferred References
class DeferredReference(FrozenModel):
    """A name recorded by a loader for resolution after all layers load."""
    source_path: str
    name: str
    namespaces: List[Namespace]
    kind: ReferenceKind


class ReferenceRecord(FrozenModel):
    """Resolution outcome of one deferred reference."""
    path: str
    name: str
    kind: ReferenceKind
    namespaces: List[Namespace]
    status: ReferenceStatus
    resolved_namespace: Optional[Namespace] = None

    @property
    def is_dangling(self) -> bool:
        return self.status == ReferenceStatus.DANGLING


# Project & Domain Models
class ProjectInfo(FrozenModel):
    """Project layer contents."""
    name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class CustomTypeDefinition(FrozenModel):
    """A named type declared under domain.types."""
    name: str
    type: Optional[TypeExpression] = None
    raw_type: Optional[str] = None


class EntityField(FrozenModel):
    """A field of an entity; type is None when the type string did not parse."""
    name: str
    type: Optional[TypeExpression] = None
    raw_type: Optional[str] = None


class ValidationRule(FrozenModel):
    """Entity validation rule, stored and never evaluated."""
    description: Optional[str] = None
    expression: str


class Entity(FrozenModel):
    """A declared data shape of the domain layer."""
    name: str
    description: Optional[str] = None
    fields: Dict[str, EntityField] = Field(default_factory=dict)
    validation: List[ValidationRule] = Field(default_factory=list)


class Relationship(FrozenModel):
    """Relationship derived from a referencing entity field."""
    source: str
    field: str
    target: str
    kind: RelationshipKind
    required: bool = Field(False, description="Neither optional nor a collection")
    explicit: bool = Field(False, description="Declared through a relation constraint")
    junction: Optional[str] = Field(None, description="Junction concept for many-to-many")


# Logic Models
class Parameter(FrozenModel):
    name: str
    type: Optional[TypeExpression] = None
    raw_type: Optional[str] = None


class Operation(FrozenModel):
    """A declared business action of the logic layer."""
    name: str
    description: Optional[str] = None
    inputs: List[Parameter] = Field(default_factory=list)
    output: Optional[TypeExpression] = None
    raw_output: Optional[str] = None
    modifies: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    preconditions: List[str] = Field(default_factory=list)
    postconditions: List[str] = Field(default_factory=list)
    is_async: bool = False
    idempotent: bool = False
    retryable: bool = False


# Component Models
class Component(FrozenModel):
    """A deployable or reusable unit of the components layer."""
    id: str
    kind: Optional[ComponentKind] = None
    description: Optional[str] = None
    responsibilities: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    exposes: Dict[str, Any] = Field(default_factory=dict, description="Member tree for mapping paths")


# Workflow Models
class RetryPolicy(FrozenModel):
    max_attempts: Optional[int] = None
    backoff: Optional[str] = None
    delay: Optional[str] = None


class CallStep(FrozenModel):
    kind: Literal["call"] = "call"
    operation: str
    condition: Optional[str] = None
    retry: Optional[RetryPolicy] = None
    on_error: Optional[Union[str, List["WorkflowStep"]]] = None


class LoopStep(FrozenModel):
    kind: Literal["loop"] = "loop"
    collection: Optional[str] = None
    condition: Optional[str] = None
    body: List["WorkflowStep"] = Field(default_factory=list)
    max_iterations: Optional[int] = None
    timeout: Optional[str] = None
    on_timeout: Optional[Union[str, List["WorkflowStep"]]] = None


class ParallelStep(FrozenModel):
    kind: Literal["parallel"] = "parallel"
    body: List["WorkflowStep"] = Field(default_factory=list)


class BranchCase(FrozenModel):
    """One branch case; condition None is the fallthrough case."""
    condition: Optional[str] = None
    body: List["WorkflowStep"] = Field(default_factory=list)


class BranchStep(FrozenModel):
    kind: Literal["branch"] = "branch"
    cases: List[BranchCase] = Field(default_factory=list)


class WaitStep(FrozenModel):
    kind: Literal["wait"] = "wait"
    duration: Optional[str] = None
    condition: Optional[str] = None
    timeout: Optional[str] = None
    on_timeout: Optional[Union[str, List["WorkflowStep"]]] = None


WorkflowStep = Annotated[
    Union[CallStep, LoopStep, ParallelStep, BranchStep, WaitStep],
    Field(discriminator="kind"),
]

for _model in (CallStep, LoopStep, ParallelStep, BranchCase, BranchStep, WaitStep):
    _model.model_rebuild()


class WorkflowDefinition(FrozenModel):
    name: str
    description: Optional[str] = None
    trigger: Optional[str] = None
    steps: List[WorkflowStep] = Field(default_factory=list)


# UI Models
class Page(FrozenModel):
    name: str
    route: Optional[str] = None
    description: Optional[str] = None
    displays: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)


# Security Models
class Role(FrozenModel):
    name: str
    description: Optional[str] = None
    inherits: List[str] = Field(default_factory=list)


class Permission(FrozenModel):
    action: str
    roles: List[str] = Field(default_factory=list)
    rate_limit: Optional[str] = None
    filter: Optional[str] = None


class FieldAccess(FrozenModel):
    entity: str
    field: str
    read_roles: List[str] = Field(default_factory=list)
    write_roles: List[str] = Field(default_factory=list)


class SecurityPolicy(FrozenModel):
    roles: Dict[str, Role] = Field(default_factory=dict)
    permissions: List[Permission] = Field(default_factory=list)
    field_access: List[FieldAccess] = Field(default_factory=list)
    authentication: Dict[str, Any] = Field(default_factory=dict)


# Infrastructure & Integration Models
class InfrastructureResource(FrozenModel):
    id: str
    kind: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class Integration(FrozenModel):
    id: str
    kind: Optional[str] = None
    base_url: Optional[str] = None
    operations: Dict[str, Any] = Field(default_factory=dict, description="Member tree for mapping paths")
    config: Dict[str, Any] = Field(default_factory=dict)


# Mapping Models
class MappingEntry(FrozenModel):
    """Binding of a logic operation to a component or integration member."""
    operation: str
    target: Optional[str] = Field(None, description="Dotted path; None when accepted as unmapped")

    @property
    def accepted_unmapped(self) -> bool:
        return self.target is None


# Document Model
class DocumentModel(FrozenModel):
    """Fully parsed, typed and resolved representation of one document."""
    project: Optional[ProjectInfo] = None
    custom_types: Dict[str, CustomTypeDefinition] = Field(default_factory=dict)
    entities: Dict[str, Entity] = Field(default_factory=dict)
    relationships: List[Relationship] = Field(default_factory=list)
    operations: Dict[str, Operation] = Field(default_factory=dict)
    components: Dict[str, Component] = Field(default_factory=dict)
    workflows: Dict[str, WorkflowDefinition] = Field(default_factory=dict)
    pages: Dict[str, Page] = Field(default_factory=dict)
    security: SecurityPolicy = Field(default_factory=SecurityPolicy)
    resources: Dict[str, InfrastructureResource] = Field(default_factory=dict)
    integrations: Dict[str, Integration] = Field(default_factory=dict)
    mapping: Dict[str, MappingEntry] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    references: List[ReferenceRecord] = Field(default_factory=list)
    component_graph: Dict[str, List[str]] = Field(default_factory=dict)
    role_graph: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self == DocumentModel()

    def references_at(self, path: str) -> List[ReferenceRecord]:
        """Get the references recorded at a document path."""
        return [record for record in self.references if record.path == path]

    def dangling_references(self) -> List[ReferenceRecord]:
        return [record for record in self.references if record.is_dangling]


# Results
class ValidationResult(FrozenModel):
    """Document model paired with its order-stable diagnostics."""
    document: DocumentModel = Field(default_factory=DocumentModel)
    diagnostics: List[Diagnostic] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(d.severity.is_blocking for d in self.diagnostics)


class ParseResult(BaseModel):
    """Result of parsing DSL content."""
    success: bool = Field(..., description="Whether no fatal or error diagnostics were produced")
    document: Optional[DocumentModel] = Field(None, description="Parsed document model")
    diagnostics: List[Diagnostic] = Field(default_factory=list, description="All diagnostics")
    processing_time: Optional[float] = Field(None, description="Parsing time in seconds")

    @property
    def errors(self) -> List[str]:
        return [d.format() for d in self.diagnostics if d.severity.is_blocking]

    @property
    def warnings(self) -> List[str]:
        return [d.format() for d in self.diagnostics if not d.severity.is_blocking]
