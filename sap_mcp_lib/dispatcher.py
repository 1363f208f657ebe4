"""
Operation dispatcher: turns a validated operation request into a concrete
OData call and executes it with the caller's credential.
"""

import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote

from .constants import OPERATION_HTTP_METHODS, UPDATE_METHOD_BY_VERSION
from .errors import AuthenticationRequired, MissingRequiredField
from .models import AuthContext, EntitySchema, Operation, OperationRequest, ServiceDescriptor
from .schema_translator import SchemaTranslator

QUERY_OPTIONS = ('filter', 'select', 'expand', 'orderby', 'top', 'skip')


def option_name(name: str) -> str:
    """Return the system query option name with exactly one ``$`` prefix."""
    return '$' + name.lstrip('$')


def build_query_options(request: OperationRequest, odata_version: str = "v2") -> Dict[str, Any]:
    """Build the ``$``-prefixed query options for a request.

    Callers supply option values without the ``$`` prefix; it is added here.
    """
    params: Dict[str, Any] = {'$format': 'json'}
    if request.operation == Operation.READ:
        for name in QUERY_OPTIONS:
            value = getattr(request, name)
            if value is None or value == "":
                continue
            if name in ('top', 'skip'):
                value = int(value)
            params[option_name(name)] = value
        # Ask for the total so callers can page
        if odata_version == "v4":
            params['$count'] = 'true'
        else:
            params['$inlinecount'] = 'allpages'
    elif request.operation == Operation.READ_SINGLE:
        for name in ('select', 'expand'):
            value = getattr(request, name)
            if value:
                params[option_name(name)] = value
    return params


def _format_key_value(prop_type: str, value: Any, odata_version: str) -> str:
    if prop_type == "boolean":
        return str(value).lower()
    if prop_type in ("integer", "number"):
        return str(value)
    if prop_type == "decimal":
        return f"{value}M" if odata_version == "v2" else str(value)
    if prop_type == "guid":
        return f"guid'{value}'" if odata_version == "v2" else str(value)
    if prop_type == "datetime" and odata_version == "v2":
        return f"datetime'{quote(str(value), safe=':')}'"
    # Strings: escape quotes, then URL encode to handle characters like '/'
    escaped = str(value).replace("'", "''")
    return f"'{quote(escaped, safe='')}'"


def build_key_predicate(schema: EntitySchema, key_values: Dict[str, Any], odata_version: str = "v2") -> str:
    """Build the key predicate, ``('A')`` for a single key or ``(K1='a',K2=2)`` for a composite key."""
    key_props = schema.get_key_properties()
    if len(key_props) == 1:
        prop = key_props[0]
        return f"({_format_key_value(prop.type, key_values[prop.name], odata_version)})"
    parts = [f"{p.name}={_format_key_value(p.type, key_values[p.name], odata_version)}" for p in key_props]
    return f"({','.join(parts)})"


def _iso_to_legacy_date(value: str) -> Optional[str]:
    """Convert ISO 8601 date to legacy /Date(milliseconds)/ format."""
    try:
        dt = datetime.fromisoformat(value[:-1] + '+00:00' if value.endswith('Z') else value)
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"/Date({int(dt.timestamp() * 1000)})/"


def prepare_payload(schema: EntitySchema, data: Dict[str, Any], odata_version: str = "v2") -> Dict[str, Any]:
    """Convert payload values to the wire conventions of the service's OData version."""
    if odata_version != "v2":
        return dict(data)
    result = {}
    for name, value in data.items():
        prop = schema.get_property(name)
        if prop is not None and prop.type == "decimal" and isinstance(value, (int, float)):
            # Decimal fields travel as strings to preserve precision
            value = str(value)
        elif prop is not None and prop.type == "datetime" and isinstance(value, str):
            value = _iso_to_legacy_date(value) or value
        result[name] = value
    return result


def _strip_annotations(record: Any) -> Any:
    if isinstance(record, dict):
        return {k: v for k, v in record.items() if not k.startswith('@odata.')}
    return record


class OperationDispatcher:
    """Validates, authorizes and executes one operation request."""

    def __init__(self, executor, catalog, translator: Optional[SchemaTranslator] = None,
                 technical_auth: Optional[AuthContext] = None, allow_technical_reads: bool = True,
                 verbose: bool = False):
        self.executor = executor
        self.catalog = catalog
        self.translator = translator or SchemaTranslator()
        self.technical_auth = technical_auth
        self.allow_technical_reads = allow_technical_reads
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Dispatcher VERBOSE] {message}", file=sys.stderr)

    def _credential_for(self, request: OperationRequest) -> Optional[AuthContext]:
        if request.credential is not None:
            return request.credential
        if request.operation.is_mutating:
            raise AuthenticationRequired(
                f"Operation '{request.operation.value}' requires an authenticated user. "
                "Supply a bearer token for the session and retry.",
                {"operation": request.operation.value},
            )
        if not self.allow_technical_reads:
            raise AuthenticationRequired(
                "Read operations require an authenticated user; technical-user reads are disabled.",
                {"operation": request.operation.value},
            )
        return self.technical_auth

    async def execute(self, request: OperationRequest, schema: EntitySchema) -> Any:
        # Nothing goes over the wire until the request has passed validation
        self.translator.raise_for_invalid(request, schema)
        credential = self._credential_for(request)
        service: ServiceDescriptor = self.catalog.get_service(schema.service_id)
        version = service.odata_version
        params = request.parameters or {}
        operation = request.operation

        if operation == Operation.READ:
            query = build_query_options(request, version)
            data = await self.executor.execute('GET', service, schema.entity_set, params=query, credential=credential)
            return self._collection_result(data)

        key_values = {k: params[k] for k in schema.key_properties if k in params}
        entity_path = schema.entity_set
        if operation.requires_key:
            entity_path = f"{schema.entity_set}{build_key_predicate(schema, key_values, version)}"

        if operation == Operation.READ_SINGLE:
            data = await self.executor.execute('GET', service, entity_path,
                                               params=build_query_options(request, version), credential=credential)
            return _strip_annotations(data)

        if operation == Operation.CREATE:
            payload = prepare_payload(schema, {k: v for k, v in params.items() if v is not None}, version)
            self._log_verbose(f"Creating {schema.entity_set} with {sorted(payload)}")
            data = await self.executor.execute(OPERATION_HTTP_METHODS['create'], service, schema.entity_set,
                                               payload=payload, credential=credential)
            return _strip_annotations(data) if data is not None else {"created": True, "key": key_values}

        if operation == Operation.UPDATE:
            changes = {k: v for k, v in params.items() if k not in schema.key_properties}
            if not changes:
                raise MissingRequiredField("No properties provided to update.", {"fields": []})
            method = UPDATE_METHOD_BY_VERSION.get(version, 'PATCH')
            self._log_verbose(f"Updating {entity_path} via {method} with {sorted(changes)}")
            data = await self.executor.execute(method, service, entity_path,
                                               payload=prepare_payload(schema, changes, version), credential=credential)
            if data is None:
                # MERGE/PATCH usually answers 204; read the record back
                data = await self.executor.execute('GET', service, entity_path,
                                                   params={'$format': 'json'}, credential=credential)
            return _strip_annotations(data)

        await self.executor.execute(OPERATION_HTTP_METHODS['delete'], service, entity_path, credential=credential)
        return {"deleted": True, "entitySet": schema.entity_set, "key": key_values}

    @staticmethod
    def _collection_result(data: Any) -> Dict[str, Any]:
        total_count = None
        has_more = False
        if isinstance(data, dict):
            if '__count' in data:
                total_count = data['__count']
            elif '@odata.count' in data:
                total_count = data['@odata.count']
            has_more = bool(data.get('__next') or data.get('@odata.nextLink'))
            results = data.get('results', data.get('value', data))
        else:
            results = data
        if results is None:
            results = []
        elif not isinstance(results, list):
            results = [results]
        response = {"results": [_strip_annotations(r) for r in results], "count": len(results)}
        if total_count is not None:
            try:
                response["totalCount"] = int(total_count)
            except (TypeError, ValueError):
                pass
        response["hasMore"] = has_more
        return response
