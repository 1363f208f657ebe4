"""
Tool registries: bind the catalog, resolver and dispatcher to an MCP server.

Two exposure styles are available. The hierarchical registry publishes three
fixed tools that walk the model from the catalog to entity metadata to a
single operation. The flat registry publishes one tool per entity and
operation, the way a single-service bridge does.
"""

import hashlib
import inspect
import json
import re
import sys
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_headers
from pydantic import ValidationError

from .catalog import ServiceCatalog
from .client import ODataExecutor
from .config import ServerConfig
from .constants import MAX_TOOL_NAME_LENGTH
from .dispatcher import OperationDispatcher
from .errors import EntityNotFound, InvalidRequest, SAPMCPError
from .gemini_compat import GeminiCompatMiddleware, is_gemini_client, remove_additional_properties
from .models import AuthContext, Operation, OperationRequest
from .resolver import HttpMetadataFetcher, MetadataResolver
from .schema_translator import SchemaTranslator

OperationName = Literal["read", "read-single", "create", "update", "delete"]


def make_tool_name(operation: str, entity_name: str, service_id: str,
                   max_length: int = MAX_TOOL_NAME_LENGTH) -> str:
    """Build ``<operation>_<Entity>_for_<Service>``, truncated with a stable hash suffix."""
    name = re.sub(r'\W', '_', f"{operation}_{entity_name}_for_{service_id}")
    if len(name) <= max_length:
        return name
    digest = hashlib.sha1(name.encode('utf-8')).hexdigest()[:8]
    return f"{name[:max_length - len(digest) - 1]}_{digest}"


def _error_payload(kind: str, message: str) -> Dict[str, Any]:
    return {"error": {"kind": kind, "message": message, "details": None}}


class ToolRegistry:
    """Shared plumbing for both registry variants."""

    def __init__(self, mcp: FastMCP, catalog: ServiceCatalog, resolver: MetadataResolver,
                 dispatcher: OperationDispatcher, translator: Optional[SchemaTranslator] = None,
                 gemini_compat: bool = False, verbose: bool = False):
        self.mcp = mcp
        self.catalog = catalog
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.translator = translator or dispatcher.translator
        self.gemini_compat = gemini_compat
        self.verbose = verbose
        self.tools: Dict[str, Callable] = {}
        self._credential: Optional[AuthContext] = None
        self._registered = False

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Registry VERBOSE] {message}", file=sys.stderr)

    @property
    def tool_names(self) -> List[str]:
        return list(self.tools)

    # --- Credentials ---

    def set_credential(self, token: Optional[str] = None) -> None:
        """Set (or clear, with ``None``) the session credential used when a call carries none."""
        self._credential = AuthContext(token=token, source="user") if token else None
        self._log_verbose("Session credential " + ("set." if token else "cleared."))

    def _request_headers(self) -> Dict[str, str]:
        # Empty outside an HTTP request (stdio transport)
        return get_http_headers(include_all=True) or {}

    def _request_credential(self, headers: Dict[str, str]) -> Optional[AuthContext]:
        lowered = {k.lower(): v for k, v in headers.items()}
        header = (lowered.get('authorization') or '').strip()
        if header:
            return AuthContext(token=header, source="user")
        return None

    # --- Pass-through operations ---

    def discover(self, query: Optional[str] = None, category: Optional[str] = None,
                 limit: Optional[int] = None) -> Dict[str, Any]:
        """Level 1: minimal catalog matches, never empty while the catalog has services."""
        if limit is not None and limit < 1:
            raise InvalidRequest("limit must be at least 1.", {"limit": limit})
        matches, fallback = self.catalog.search_with_fallback(query, category, limit)
        return {
            "matches": [
                {
                    "type": "service",
                    "service": {
                        "serviceId": m["service"].service_id,
                        "serviceName": m["service"].service_name,
                        "entityCount": len(m["service"].entity_names),
                        "categories": list(m["service"].categories),
                    },
                    "entities": [{"entityName": e.entity_name} for e in m["entities"]],
                }
                for m in matches
            ],
            "totalServices": len(self.catalog),
            "fallback": fallback,
        }

    async def get_metadata(self, service_id: str, entity_name: str, gemini: bool = False) -> Dict[str, Any]:
        """Level 2: the resolved entity schema plus the JSON Schema for its parameters."""
        schema = await self.resolver.resolve(service_id, entity_name)
        service = self.catalog.get_service(service_id)
        result = self.translator.describe(service, schema)
        parameter_schema = self.translator.to_tool_input_schema(schema)
        if gemini or self.gemini_compat:
            parameter_schema = remove_additional_properties(parameter_schema)
        result["parameterSchema"] = parameter_schema
        return result

    async def execute_operation(self, service_id: str, entity_name: str, operation: str,
                                filter_string: Optional[str] = None, select_string: Optional[str] = None,
                                expand_string: Optional[str] = None, orderby_string: Optional[str] = None,
                                top_number: Optional[int] = None, skip_number: Optional[int] = None,
                                parameters: Optional[Dict[str, Any]] = None,
                                auth: Optional[AuthContext] = None) -> Any:
        """Level 3: validate and dispatch one operation with the caller's credential."""
        try:
            request = OperationRequest(
                service_id=service_id,
                entity_name=entity_name,
                operation=Operation(operation),
                filter=filter_string,
                select=select_string,
                expand=expand_string,
                orderby=orderby_string,
                top=top_number,
                skip=skip_number,
                parameters=parameters or {},
                credential=auth or self._credential,
            )
        except (ValueError, ValidationError) as e:
            raise InvalidRequest(f"Invalid operation request: {e}",
                                 {"operation": operation}) from e
        schema = await self.resolver.resolve(service_id, entity_name)
        self._log_verbose(f"Executing {operation} on {service_id}/{entity_name} "
                          f"as {request.credential.source if request.credential else 'anonymous'}")
        return await self.dispatcher.execute(request, schema)

    # --- Registration helpers ---

    async def _run_tool(self, tool_name: str, fn: Callable, *args, **kwargs) -> str:
        """Run a tool body and serialize its result, or its failure, to JSON text."""
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return json.dumps(result, indent=2, default=str)
        except SAPMCPError as e:
            self._log_verbose(f"{tool_name} failed with {e.kind}: {e.message}")
            return json.dumps(e.to_dict(), indent=2, default=str)
        except Exception as e:
            err_msg = f"Error in tool {tool_name}: {e}"
            print(f"ERROR: {err_msg}", file=sys.stderr)
            if self.verbose:
                traceback.print_exc(file=sys.stderr)
            return json.dumps(_error_payload("InternalError", err_msg), indent=2)

    def _add_tool(self, fn: Callable, name: str, description: str) -> Optional[str]:
        try:
            self.mcp.tool(name=name, description=description)(fn)
        except Exception as e:
            print(f"ERROR: Failed to register tool {name}: {e}", file=sys.stderr)
            return None
        self.tools[name] = fn
        self._log_verbose(f"Registered tool: {name}")
        return name

    def services_resource(self) -> Dict[str, Any]:
        return {
            "services": [
                {
                    "serviceId": s.service_id,
                    "serviceName": s.service_name,
                    "description": s.description,
                    "odataVersion": s.odata_version,
                    "categories": list(s.categories),
                    "entities": list(s.entity_names),
                }
                for s in self.catalog.services
            ],
            "totalServices": len(self.catalog),
        }

    def service_metadata_resource(self, service_id: str) -> Dict[str, Any]:
        service = self.catalog.get_service(service_id)
        if service is None:
            raise EntityNotFound(service_id, "", f"Service '{service_id}' not found in the catalog.")
        entities = []
        for name in service.entity_names:
            schema = self.resolver.cached(service_id, name)
            entry: Dict[str, Any] = {"entityName": name, "resolved": schema is not None}
            if schema is not None:
                entry["entitySet"] = schema.entity_set
                entry["keyProperties"] = list(schema.key_properties)
            entities.append(entry)
        return {
            "service": {
                "serviceId": service.service_id,
                "serviceName": service.service_name,
                "description": service.description,
                "odataVersion": service.odata_version,
                "serviceUrl": service.service_url,
                "categories": list(service.categories),
            },
            "entities": entities,
        }

    def _register_resources(self) -> None:
        registry = self

        @self.mcp.resource("sap://services", name="sap-services", mime_type="application/json",
                           description="All discovered SAP OData services and their entities.")
        def sap_services() -> str:
            return json.dumps(registry.services_resource(), indent=2)

        @self.mcp.resource("sap://service/{service_id}/metadata", name="sap-service-metadata",
                           mime_type="application/json",
                           description="Service details and the entities whose metadata has been resolved.")
        def sap_service_metadata(service_id: str) -> str:
            try:
                return json.dumps(registry.service_metadata_resource(service_id), indent=2)
            except SAPMCPError as e:
                return json.dumps(e.to_dict(), indent=2)

    def register_all(self) -> List[str]:
        """Register tools and resources once; later calls return the existing names."""
        if self._registered:
            return list(self.tool_names)
        self.mcp.add_middleware(GeminiCompatMiddleware(always=self.gemini_compat))
        self._register_resources()
        self._register_tools()
        self._registered = True
        self._log_verbose(f"Registered {len(self.tool_names)} tools for {len(self.catalog)} services.")
        return list(self.tool_names)

    def _register_tools(self) -> None:
        raise NotImplementedError


class HierarchicalToolRegistry(ToolRegistry):
    """Exactly three tools: discover, get metadata, execute."""

    def _register_tools(self) -> None:
        registry = self

        async def discover_sap_data(query: Optional[str] = None, category: Optional[str] = None,
                                    limit: Optional[int] = None) -> str:
            return await registry._run_tool("discover-sap-data", registry.discover, query, category, limit)

        async def get_entity_metadata(serviceId: str, entityName: str) -> str:
            headers = registry._request_headers()
            return await registry._run_tool("get-entity-metadata", registry.get_metadata,
                                            serviceId, entityName, gemini=is_gemini_client(headers))

        async def execute_sap_operation(serviceId: str, entityName: str, operation: OperationName,
                                        filterString: Optional[str] = None, selectString: Optional[str] = None,
                                        expandString: Optional[str] = None, orderbyString: Optional[str] = None,
                                        topNumber: Optional[int] = None, skipNumber: Optional[int] = None,
                                        parameters: Optional[Dict[str, Any]] = None) -> str:
            auth = registry._request_credential(registry._request_headers())
            return await registry._run_tool(
                "execute-sap-operation", registry.execute_operation,
                serviceId, entityName, operation,
                filter_string=filterString, select_string=selectString, expand_string=expandString,
                orderby_string=orderbyString, top_number=topNumber, skip_number=skipNumber,
                parameters=parameters, auth=auth,
            )

        self._add_tool(
            discover_sap_data, "discover-sap-data",
            "Search the SAP service catalog by keyword and/or category. Returns services and their "
            "entity names only. entityCount is the total number of entities in the service, while "
            "entities lists only those that matched the query. A query with no match returns the full "
            "catalog. limit caps the number of services and must be at least 1.",
        )
        self._add_tool(
            get_entity_metadata, "get-entity-metadata",
            "Get the schema of one entity: keys, properties with types and lengths, allowed operations, "
            "and the JSON Schema for the 'parameters' argument of execute-sap-operation.",
        )
        self._add_tool(
            execute_sap_operation, "execute-sap-operation",
            "Run read, read-single, create, update or delete on an entity. Query options are given "
            "without the '$' prefix. Key properties go in 'parameters' for read-single, update and "
            "delete. create, update and delete require an authenticated user.",
        )


class FlatToolRegistry(ToolRegistry):
    """One tool per entity and operation; metadata is still resolved lazily on first call."""

    def __init__(self, *args, disable_read_entity_tool: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.disable_read_entity_tool = disable_read_entity_tool

    def _register_tools(self) -> None:
        for service in self.catalog.services:
            for entity_name in service.entity_names:
                self._register_entity_tools(service.service_id, entity_name)

    def _register_entity_tools(self, service_id: str, entity_name: str) -> None:
        registry = self
        where = f"'{entity_name}' in service '{service_id}'"

        def run(tool_name: str, operation: str, **kwargs):
            auth = registry._request_credential(registry._request_headers())
            return registry._run_tool(tool_name, registry.execute_operation,
                                      service_id, entity_name, operation, auth=auth, **kwargs)

        filter_name = make_tool_name("filter", entity_name, service_id)

        async def filter_entities(filter: Optional[str] = None, select: Optional[str] = None,
                                  expand: Optional[str] = None, orderby: Optional[str] = None,
                                  top: Optional[int] = None, skip: Optional[int] = None) -> str:
            return await run(filter_name, "read", filter_string=filter, select_string=select,
                             expand_string=expand, orderby_string=orderby, top_number=top, skip_number=skip)

        self._add_tool(filter_entities, filter_name,
                       f"Retrieve a list of {where}. Supports OData filter, select, expand, orderby, top and skip.")

        if not self.disable_read_entity_tool:
            get_name = make_tool_name("get", entity_name, service_id)

            async def get_entity(key: Dict[str, Any], select: Optional[str] = None,
                                 expand: Optional[str] = None) -> str:
                return await run(get_name, "read-single", parameters=key,
                                 select_string=select, expand_string=expand)

            self._add_tool(get_entity, get_name, f"Get a single {where} by its key properties.")

        create_name = make_tool_name("create", entity_name, service_id)

        async def create_entity(parameters: Dict[str, Any]) -> str:
            return await run(create_name, "create", parameters=parameters)

        self._add_tool(create_entity, create_name, f"Create a new {where}. Requires an authenticated user.")

        update_name = make_tool_name("update", entity_name, service_id)

        async def update_entity(parameters: Dict[str, Any]) -> str:
            return await run(update_name, "update", parameters=parameters)

        self._add_tool(update_entity, update_name,
                       f"Update an existing {where}. Include the key properties and the properties to change. "
                       "Requires an authenticated user.")

        delete_name = make_tool_name("delete", entity_name, service_id)

        async def delete_entity(key: Dict[str, Any]) -> str:
            return await run(delete_name, "delete", parameters=key)

        self._add_tool(delete_entity, delete_name, f"Delete a {where} by its key properties. "
                       "Requires an authenticated user.")


def create_tool_registry(config: ServerConfig, catalog: ServiceCatalog, mcp: Optional[FastMCP] = None,
                         fetcher=None, executor=None) -> ToolRegistry:
    """Build the registry variant selected by ``config.registry_type`` with its collaborators."""
    technical_auth = config.technical_auth()
    mcp = mcp or FastMCP(name="sap-odata-mcp")
    fetcher = fetcher or HttpMetadataFetcher(technical_auth, timeout=config.request_timeout,
                                             verify=config.verify_tls, verbose=config.verbose)
    executor = executor or ODataExecutor(timeout=config.request_timeout, verify=config.verify_tls,
                                         max_response_size=config.max_response_size, verbose=config.verbose)
    translator = SchemaTranslator()
    resolver = MetadataResolver(catalog, fetcher, verbose=config.verbose)
    dispatcher = OperationDispatcher(executor, catalog, translator, technical_auth=technical_auth,
                                     allow_technical_reads=config.allow_technical_reads, verbose=config.verbose)
    common = dict(translator=translator, gemini_compat=config.gemini_compat, verbose=config.verbose)
    if config.registry_type == "flat":
        return FlatToolRegistry(mcp, catalog, resolver, dispatcher,
                                disable_read_entity_tool=config.disable_read_entity_tool, **common)
    return HierarchicalToolRegistry(mcp, catalog, resolver, dispatcher, **common)
