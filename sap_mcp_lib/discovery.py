"""
Service discovery collaborators that populate the service catalog at startup.
"""

import asyncio
import fnmatch
import json
import sys
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import requests
from .constants import (
    CATEGORY_KEYWORDS, DEFAULT_CATEGORY, GATEWAY_CATALOG_PATH, GATEWAY_SERVICE_ROOT,
    NAMESPACES, USER_AGENT,
)
from .errors import DiscoveryTimeout
from .metadata_parser import parse_xml
from .models import ServiceDescriptor


def categorize_service(name: str, description: Optional[str] = None) -> List[str]:
    """Derive catalog categories from a service's technical name and description."""
    haystack = f"{name} {description or ''}".lower()
    categories = [
        category for category, keywords in CATEGORY_KEYWORDS.items()
        if any(keyword in haystack for keyword in keywords)
    ]
    return categories or [DEFAULT_CATEGORY]


def matches_service_patterns(name: str, patterns: Optional[Sequence[str]]) -> bool:
    """Check a service name against wildcard patterns (``API_*``, ``*_SRV``). No patterns allows all."""
    if not patterns:
        return True
    upper = name.upper()
    return any(fnmatch.fnmatchcase(upper, p.strip().upper()) for p in patterns if p.strip())


class StaticDiscovery:
    """Loads service descriptors from a JSON file or an in-memory list.

    File format: ``{"services": [{"serviceId": ..., "serviceName": ...,
    "description": ..., "odataVersion": ..., "serviceUrl": ...,
    "categories": [...], "entityNames": [...]}]}`` (a bare list works too).
    """

    def __init__(self, source: Union[str, Path, List[Dict[str, Any]]], patterns: Optional[Sequence[str]] = None):
        self.source = source
        self.patterns = patterns

    async def discover_all(self) -> List[ServiceDescriptor]:
        if isinstance(self.source, (str, Path)):
            raw = json.loads(Path(self.source).read_text(encoding='utf-8'))
        else:
            raw = self.source
        entries = raw.get('services', []) if isinstance(raw, dict) else raw
        services = []
        for entry in entries:
            service = self._to_descriptor(entry)
            if matches_service_patterns(service.service_id, self.patterns):
                services.append(service)
        return services

    @staticmethod
    def _to_descriptor(entry: Dict[str, Any]) -> ServiceDescriptor:
        service_id = entry.get('serviceId') or entry['service_id']
        name = entry.get('serviceName') or entry.get('service_name') or service_id
        description = entry.get('description') or ""
        categories = entry.get('categories') or categorize_service(service_id, description)
        return ServiceDescriptor(
            service_id=service_id,
            service_name=name,
            description=description,
            odata_version=str(entry.get('odataVersion') or entry.get('odata_version') or "v2"),
            service_url=entry.get('serviceUrl') or entry.get('service_url'),
            categories=categories,
            entity_names=entry.get('entityNames') or entry.get('entity_names') or [],
        )


class GatewayCatalogDiscovery:
    """Discovers OData services through the SAP Gateway catalog service."""

    def __init__(self, base_url: str, auth: Optional[Tuple[str, str]] = None,
                 bearer_token: Optional[str] = None, patterns: Optional[Sequence[str]] = None,
                 timeout: float = 30.0, verify: bool = True, verbose: bool = False):
        self.base_url = base_url.rstrip('/')
        self.patterns = patterns
        self.timeout = timeout
        self.verbose = verbose
        # Monotonic time after which no request may be started; set by discover_services
        self.deadline: Optional[float] = None
        self.session = requests.Session()
        self.session.verify = verify
        if auth:
            self.session.auth = auth
        if bearer_token:
            self.session.headers['Authorization'] = f"Bearer {bearer_token}"
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': USER_AGENT,
        })

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Discovery VERBOSE] {message}", file=sys.stderr)

    def _request_timeout(self) -> float:
        """Per-request timeout, never past the discovery deadline."""
        if self.deadline is None:
            return self.timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise DiscoveryTimeout("Service discovery deadline passed before the next catalog request.")
        return min(self.timeout, remaining)

    async def discover_all(self) -> List[ServiceDescriptor]:
        # Own worker pool: asyncio.run must not wait on a blocked request after a timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sap-discovery")
        try:
            return await self._discover_all(executor)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    async def _discover_all(self, executor: ThreadPoolExecutor) -> List[ServiceDescriptor]:
        loop = asyncio.get_running_loop()
        entries = await loop.run_in_executor(executor, self._list_catalog_services)
        self._log_verbose(f"Gateway catalog lists {len(entries)} services.")
        services = []
        for entry in entries:
            technical_name = entry.get('TechnicalServiceName') or entry.get('ID') or ""
            if not technical_name or not matches_service_patterns(technical_name, self.patterns):
                continue
            service_url = entry.get('ServiceUrl') or f"{self.base_url}{GATEWAY_SERVICE_ROOT}/{technical_name}"
            try:
                entity_names = await loop.run_in_executor(executor, self._list_entity_sets, service_url)
            except requests.exceptions.RequestException as e:
                print(f"ERROR: Skipping service {technical_name}: {e}", file=sys.stderr)
                continue
            description = entry.get('Description') or entry.get('Title') or ""
            services.append(ServiceDescriptor(
                service_id=technical_name,
                service_name=entry.get('Title') or technical_name,
                description=description,
                odata_version="v2",
                service_url=service_url,
                categories=categorize_service(technical_name, description),
                entity_names=entity_names,
            ))
        self._log_verbose(f"Discovered {len(services)} services matching {self.patterns or 'all'}.")
        return services

    def _list_catalog_services(self) -> List[Dict[str, Any]]:
        url = f"{self.base_url}{GATEWAY_CATALOG_PATH}/ServiceCollection"
        response = self.session.get(url, params={'$format': 'json'}, timeout=self._request_timeout())
        response.raise_for_status()
        data = response.json()
        payload = data.get('d', data)
        return payload.get('results', []) if isinstance(payload, dict) else payload

    def _list_entity_sets(self, service_url: str) -> List[str]:
        """Read entity-set names from the service document (JSON first, AtomPub as fallback)."""
        response = self.session.get(service_url.rstrip('/') + '/', params={'$format': 'json'},
                                    timeout=self._request_timeout())
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError:
            root = parse_xml(response.content)
            return [c.get('href') for c in root.xpath('//app:collection', namespaces=NAMESPACES) if c.get('href')]
        payload = data.get('d', data)
        if 'EntitySets' in payload:
            return list(payload['EntitySets'])
        # OData v4 service document
        return [item['name'] for item in payload.get('value', []) if item.get('kind', 'EntitySet') == 'EntitySet']


async def discover_services(discovery, timeout: float, verbose: bool = False) -> List[ServiceDescriptor]:
    """Run discovery under a timeout; any failure degrades to an empty catalog."""
    if hasattr(discovery, 'deadline'):
        discovery.deadline = time.monotonic() + timeout
    try:
        return await asyncio.wait_for(discovery.discover_all(), timeout=timeout)
    except (asyncio.TimeoutError, DiscoveryTimeout):
        error = DiscoveryTimeout(f"Service discovery timed out after {timeout:g} seconds")
        print(f"ERROR: {error.message}. Starting with an empty service catalog.", file=sys.stderr)
        return []
    except Exception as e:
        print(f"ERROR: Service discovery failed: {e}. Starting with an empty service catalog.", file=sys.stderr)
        if verbose:
            traceback.print_exc(file=sys.stderr)
        return []
