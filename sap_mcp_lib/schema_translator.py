"""
Schema translator: renders entity schemas for tool callers and validates
operation requests against them.
"""

from typing import Any, Dict, List, Optional

from .constants import VOCABULARY_JSON_SCHEMA
from .errors import CapabilityDenied, MissingKey, MissingRequiredField, SAPMCPError, UnknownProperty
from .models import EntitySchema, Operation, OperationRequest, ServiceDescriptor, ValidationResult


class SchemaTranslator:
    """Translates EntitySchema into JSON-Schema descriptions and validation verdicts.

    Property order always follows the order declared in the metadata document.
    """

    def to_tool_input_schema(self, schema: EntitySchema) -> Dict[str, Any]:
        """JSON Schema describing the ``parameters`` object accepted for this entity."""
        properties = {}
        for prop in schema.properties:
            entry = dict(VOCABULARY_JSON_SCHEMA.get(prop.type, {"type": "string"}))
            if prop.max_length is not None:
                entry["maxLength"] = prop.max_length
            if prop.nullable and not prop.is_key:
                entry["nullable"] = True
            entry["x-edm-type"] = prop.edm_type
            entry["description"] = ("Key property. " if prop.is_key else "") + f"{prop.edm_type}"
            properties[prop.name] = entry
        return {
            "type": "object",
            "properties": properties,
            "required": [p.name for p in schema.properties if p.required],
            "additionalProperties": False,
        }

    def describe(self, service: ServiceDescriptor, schema: EntitySchema) -> Dict[str, Any]:
        """The Level-2 metadata response for one entity."""
        return {
            "service": {
                "serviceId": service.service_id,
                "serviceName": service.service_name,
                "description": service.description,
                "odataVersion": service.odata_version,
            },
            "entity": {
                "name": schema.entity_name,
                "entitySet": schema.entity_set,
                "namespace": schema.namespace,
                "keyProperties": list(schema.key_properties),
                "propertyCount": len(schema.properties),
            },
            "capabilities": {
                "readable": schema.capabilities.readable,
                "creatable": schema.capabilities.creatable,
                "updatable": schema.capabilities.updatable,
                "deletable": schema.capabilities.deletable,
            },
            "properties": [
                {
                    "name": p.name,
                    "type": p.type,
                    "edmType": p.edm_type,
                    "nullable": p.nullable,
                    "maxLength": p.max_length,
                    "isKey": p.is_key,
                }
                for p in schema.properties
            ],
        }

    def validate(self, request: OperationRequest, schema: EntitySchema) -> ValidationResult:
        """Check a request against the schema; the first failing rule wins."""
        error = (
            self._check_capability(request, schema)
            or self._check_required_fields(request, schema)
            or self._check_keys(request, schema)
            or self._check_unknown_properties(request, schema)
        )
        if error is not None:
            return ValidationResult(ok=False, error=error)
        return ValidationResult(ok=True)

    def raise_for_invalid(self, request: OperationRequest, schema: EntitySchema) -> None:
        result = self.validate(request, schema)
        if not result.ok:
            raise result.error

    def _check_capability(self, request: OperationRequest, schema: EntitySchema) -> Optional[SAPMCPError]:
        capability = request.operation.required_capability
        if getattr(schema.capabilities, capability):
            return None
        return CapabilityDenied(
            f"Operation '{request.operation.value}' is not allowed on {schema.service_id}/{schema.entity_name}: "
            f"entity is not {capability}.",
            {"operation": request.operation.value, "capability": capability},
        )

    def _check_required_fields(self, request: OperationRequest, schema: EntitySchema) -> Optional[SAPMCPError]:
        params = request.parameters or {}
        missing: List[str] = []
        if request.operation == Operation.CREATE:
            missing = [p.name for p in schema.properties if p.required and params.get(p.name) is None]
        elif request.operation == Operation.UPDATE:
            # Updates are partial; only an explicit null on a required field is rejected here
            missing = [p.name for p in schema.properties
                       if p.required and not p.is_key and p.name in params and params[p.name] is None]
        if not missing:
            return None
        return MissingRequiredField(
            f"Missing required properties for {request.operation.value} on {schema.entity_name}: {', '.join(missing)}",
            {"fields": missing},
        )

    def _check_keys(self, request: OperationRequest, schema: EntitySchema) -> Optional[SAPMCPError]:
        if not request.operation.requires_key:
            return None
        params = request.parameters or {}
        missing = [k for k in schema.key_properties if params.get(k) is None]
        if not missing:
            return None
        return MissingKey(
            f"Missing required key parameters for {request.operation.value} on {schema.entity_name}: {', '.join(missing)}",
            {"keys": missing, "keyProperties": list(schema.key_properties)},
        )

    def _check_unknown_properties(self, request: OperationRequest, schema: EntitySchema) -> Optional[SAPMCPError]:
        known = {p.name for p in schema.properties}
        unknown = [name for name in (request.parameters or {}) if name not in known]
        if not unknown:
            return None
        return UnknownProperty(
            f"Unknown properties for {schema.entity_name}: {', '.join(unknown)}. "
            f"Fetch the entity metadata to see the available properties.",
            {"properties": unknown},
        )
