"""
SAP OData MCP Library - progressive discovery of SAP OData services over MCP.
"""

from .models import (
    AuthContext,
    EntityCapabilities,
    EntitySchema,
    EntitySummary,
    Operation,
    OperationRequest,
    PropertyDescriptor,
    ServiceDescriptor,
    ValidationResult
)
from .errors import SAPMCPError
from .catalog import ServiceCatalog
from .discovery import GatewayCatalogDiscovery, StaticDiscovery, discover_services
from .metadata_parser import MetadataParser
from .resolver import HttpMetadataFetcher, MetadataResolver
from .schema_translator import SchemaTranslator
from .client import ODataExecutor
from .dispatcher import OperationDispatcher
from .config import ServerConfig
from .registry import FlatToolRegistry, HierarchicalToolRegistry, ToolRegistry, create_tool_registry

__all__ = [
    'AuthContext',
    'EntityCapabilities',
    'EntitySchema',
    'EntitySummary',
    'Operation',
    'OperationRequest',
    'PropertyDescriptor',
    'ServiceDescriptor',
    'ValidationResult',
    'SAPMCPError',
    'ServiceCatalog',
    'GatewayCatalogDiscovery',
    'StaticDiscovery',
    'discover_services',
    'MetadataParser',
    'HttpMetadataFetcher',
    'MetadataResolver',
    'SchemaTranslator',
    'ODataExecutor',
    'OperationDispatcher',
    'ServerConfig',
    'ToolRegistry',
    'HierarchicalToolRegistry',
    'FlatToolRegistry',
    'create_tool_registry'
]
