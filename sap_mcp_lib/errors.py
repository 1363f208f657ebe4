"""
Error kinds raised by the discovery, metadata and dispatch layers.

Every failure carries a ``kind`` so the calling model can tell whether to
refetch metadata, fix its parameters, or report that authentication is needed.
"""

from typing import Any, Dict, Optional


class SAPMCPError(Exception):
    """Base class for structured errors surfaced to MCP callers."""

    kind = "SAPMCPError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON-friendly error payload."""
        return {
            "error": {
                "kind": self.kind,
                "message": self.message,
                "details": self.details or None,
            }
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


class DiscoveryTimeout(SAPMCPError):
    kind = "DiscoveryTimeout"


class EntityNotFound(SAPMCPError):
    kind = "EntityNotFound"

    def __init__(self, service_id: str, entity_name: str, message: Optional[str] = None):
        super().__init__(
            message or f"Entity '{entity_name}' not found in service '{service_id}'.",
            {"serviceId": service_id, "entityName": entity_name},
        )
        self.service_id = service_id
        self.entity_name = entity_name


class MetadataFetchError(SAPMCPError):
    kind = "MetadataFetchError"


class CapabilityDenied(SAPMCPError):
    kind = "CapabilityDenied"


class MissingRequiredField(SAPMCPError):
    kind = "MissingRequiredField"


class MissingKey(SAPMCPError):
    kind = "MissingKey"


class UnknownProperty(SAPMCPError):
    kind = "UnknownProperty"


class AuthenticationRequired(SAPMCPError):
    kind = "AuthenticationRequired"


class InvalidRequest(SAPMCPError):
    """Malformed tool arguments, such as an unknown operation or a negative page size."""
    kind = "InvalidRequest"


class RemoteError(SAPMCPError):
    """Failure reported by (or while talking to) the remote OData endpoint."""

    kind = "RemoteError"

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["status"] = status
        super().__init__(message, details)
        self.status = status


class RemoteFault(RemoteError):
    """4xx/5xx response carrying a structured OData error body."""

    kind = "RemoteFault"


class RemoteUnavailable(RemoteError):
    """Network failure or timeout; no response was received."""

    kind = "RemoteUnavailable"


class RemoteUnexpectedResponse(RemoteError):
    """Response body could not be understood."""

    kind = "RemoteUnexpectedResponse"
