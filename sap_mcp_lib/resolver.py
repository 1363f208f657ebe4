"""
Metadata resolver: resolves and caches entity schemas on demand.
"""

import asyncio
import sys
from datetime import datetime
from typing import Dict, Optional, Tuple, Union

import requests

from .catalog import ServiceCatalog
from .constants import DEFAULT_REQUEST_TIMEOUT, USER_AGENT
from .errors import EntityNotFound, MetadataFetchError, SAPMCPError
from .metadata_parser import MetadataParser
from .models import AuthContext, EntitySchema, ServiceDescriptor

SchemaKey = Tuple[str, str]


class HttpMetadataFetcher:
    """Fetches ``$metadata`` documents over HTTP with the technical credential."""

    def __init__(self, auth: Optional[Union[Tuple[str, str], AuthContext]] = None,
                 timeout: float = DEFAULT_REQUEST_TIMEOUT, verify: bool = True, verbose: bool = False):
        self.timeout = timeout
        self.verbose = verbose
        self.session = requests.Session()
        self.session.verify = verify
        if isinstance(auth, AuthContext):
            self.session.headers['Authorization'] = auth.authorization_header
        elif auth:
            self.session.auth = auth
        self.session.headers.update({
            'Accept': 'application/xml',
            'User-Agent': USER_AGENT,
        })

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Fetcher VERBOSE] {message}", file=sys.stderr)

    async def fetch(self, service: ServiceDescriptor, entity_name: str) -> bytes:
        if not service.service_url:
            raise MetadataFetchError(f"Service '{service.service_id}' has no service URL configured.",
                                     {"serviceId": service.service_id})
        metadata_url = f"{service.service_url.rstrip('/')}/$metadata"
        self._log_verbose(f"Fetching metadata for {service.service_id}/{entity_name} from {metadata_url}...")
        return await asyncio.to_thread(self._get, metadata_url, service.service_id)

    def _get(self, metadata_url: str, service_id: str) -> bytes:
        try:
            response = self.session.get(metadata_url, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as req_err:
            status = req_err.response.status_code if req_err.response is not None else None
            hint = " Authentication might be required or incorrect." if status in (401, 403) else ""
            raise MetadataFetchError(
                f"Could not fetch metadata for '{service_id}': {req_err}.{hint}",
                {"serviceId": service_id, "status": status},
            ) from req_err
        return response.content


class MetadataResolver:
    """Resolves (service, entity) pairs to EntitySchema, fetching each at most once.

    Concurrent callers for the same key share one in-flight fetch and receive
    the same schema object or the same failure. Failures are not cached, so a
    later call starts a fresh fetch. Resolved schemas live for the whole
    process; there is no expiry.
    """

    def __init__(self, catalog: ServiceCatalog, fetcher, parser: Optional[MetadataParser] = None,
                 verbose: bool = False):
        self.catalog = catalog
        self.fetcher = fetcher
        self.parser = parser or MetadataParser(verbose=verbose)
        self.verbose = verbose
        self._schemas: Dict[SchemaKey, EntitySchema] = {}
        self._in_flight: Dict[SchemaKey, asyncio.Task] = {}
        self.fetch_count = 0

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Resolver VERBOSE] {message}", file=sys.stderr)

    def cached(self, service_id: str, entity_name: str) -> Optional[EntitySchema]:
        return self._schemas.get((service_id, entity_name))

    def clear(self) -> None:
        """Drop every resolved schema (in-flight fetches are left alone)."""
        self._schemas.clear()

    async def resolve(self, service_id: str, entity_name: str) -> EntitySchema:
        service = self.catalog.get_service(service_id)
        if service is None or entity_name not in service.entity_names:
            raise EntityNotFound(service_id, entity_name)

        key = (service_id, entity_name)
        schema = self._schemas.get(key)
        if schema is not None:
            return schema

        task = self._in_flight.get(key)
        if task is None:
            self._log_verbose(f"Cache miss for {service_id}/{entity_name}, starting fetch.")
            task = asyncio.ensure_future(self._load(key, service, entity_name))
            task.add_done_callback(_consume_exception)
            self._in_flight[key] = task
        else:
            self._log_verbose(f"Joining in-flight fetch for {service_id}/{entity_name}.")
        # A cancelled caller must not cancel the fetch other callers are waiting on
        return await asyncio.shield(task)

    async def _load(self, key: SchemaKey, service: ServiceDescriptor, entity_name: str) -> EntitySchema:
        try:
            self.fetch_count += 1
            try:
                document = await self.fetcher.fetch(service, entity_name)
                schema = self.parser.parse_entity(document, service, entity_name)
            except SAPMCPError:
                raise
            except Exception as e:
                raise MetadataFetchError(
                    f"Could not resolve metadata for '{service.service_id}/{entity_name}': {e}",
                    {"serviceId": service.service_id, "entityName": entity_name},
                ) from e
            self._schemas[key] = schema
            return schema
        finally:
            self._in_flight.pop(key, None)


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters re-raise the exception; this only silences "never retrieved" warnings
    if not task.cancelled():
        task.exception()
