"""
Data models for the service catalog, entity schemas and operation requests.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    service_name: str
    description: str = ""
    odata_version: str = "v2"
    service_url: Optional[str] = None
    categories: List[str] = []
    entity_names: List[str] = []

    @field_validator('categories')
    @classmethod
    def _normalize_categories(cls, value: List[str]) -> List[str]:
        # Categories behave as a set; keep a stable order for responses
        return sorted({c.strip().lower() for c in value if c and c.strip()})

    @field_validator('odata_version')
    @classmethod
    def _normalize_version(cls, value: str) -> str:
        value = (value or "v2").strip().lower()
        if not value.startswith('v'):
            value = f"v{value}"
        return value.split('.')[0]


class EntitySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    entity_name: str


class PropertyDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    edm_type: str  # OData type string (e.g., "Edm.String")
    type: str  # normalized vocabulary entry (e.g., "string")
    nullable: bool = True
    max_length: Optional[int] = None
    is_key: bool = False
    has_default: bool = False

    @property
    def required(self) -> bool:
        """Non-nullable properties without a server default must be supplied on create."""
        return not self.nullable and not self.has_default


class EntityCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True)

    readable: bool = True
    creatable: bool = False
    updatable: bool = False
    deletable: bool = False


class EntitySchema(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_id: str
    entity_name: str
    entity_set: str
    namespace: str = ""
    key_properties: List[str]
    properties: List[PropertyDescriptor]
    capabilities: EntityCapabilities = EntityCapabilities()

    @model_validator(mode='after')
    def _check_keys(self) -> 'EntitySchema':
        if not self.key_properties:
            raise ValueError(f"Entity {self.entity_name} declares no key properties.")
        names = {p.name for p in self.properties}
        missing = [k for k in self.key_properties if k not in names]
        if missing:
            raise ValueError(f"Key properties not declared on {self.entity_name}: {', '.join(missing)}")
        return self

    def get_property(self, name: str) -> Optional[PropertyDescriptor]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def get_key_properties(self) -> List[PropertyDescriptor]:
        by_name = {p.name: p for p in self.properties}
        return [by_name[k] for k in self.key_properties]


class Operation(str, Enum):
    READ = "read"
    READ_SINGLE = "read-single"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def required_capability(self) -> str:
        return _REQUIRED_CAPABILITY[self]

    @property
    def is_mutating(self) -> bool:
        return self in (Operation.CREATE, Operation.UPDATE, Operation.DELETE)

    @property
    def requires_key(self) -> bool:
        return self in (Operation.READ_SINGLE, Operation.UPDATE, Operation.DELETE)


_REQUIRED_CAPABILITY = {
    Operation.READ: "readable",
    Operation.READ_SINGLE: "readable",
    Operation.CREATE: "creatable",
    Operation.UPDATE: "updatable",
    Operation.DELETE: "deletable",
}


class AuthContext(BaseModel):
    """Opaque bearer credential carried forward to the remote call."""
    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False)
    source: str = "user"  # "user" or "technical"

    @property
    def authorization_header(self) -> str:
        if self.token.lower().startswith(('bearer ', 'basic ')):
            return self.token
        return f"Bearer {self.token}"


class OperationRequest(BaseModel):
    service_id: str
    entity_name: str
    operation: Operation
    filter: Optional[str] = None
    select: Optional[str] = None
    expand: Optional[str] = None
    orderby: Optional[str] = None
    top: Optional[int] = Field(default=None, ge=0)
    skip: Optional[int] = Field(default=None, ge=0)
    parameters: Dict[str, Any] = {}
    credential: Optional[AuthContext] = None


class ValidationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool = True
    error: Optional[Any] = None  # SAPMCPError when ok is False

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None
