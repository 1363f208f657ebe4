"""
In-memory catalog of discovered services and their entities.
"""

import sys
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import EntitySummary, ServiceDescriptor


class ServiceCatalog:
    """Read-only, query-able list of discovered services.

    Populated once from the discovery collaborator and never mutated while
    tools are being served, so concurrent reads need no locking.

    A query that matches nothing returns the whole catalog instead of an
    empty list. The model should always get something to navigate from, so
    "no match" is never an error or an empty answer.
    """

    def __init__(self, services: Iterable[ServiceDescriptor], verbose: bool = False):
        self.verbose = verbose
        unique: Dict[str, ServiceDescriptor] = {}
        for service in services:
            if service.service_id in unique:
                self._log_verbose(f"Duplicate service '{service.service_id}' ignored.")
                continue
            unique[service.service_id] = service
        self._services: Tuple[ServiceDescriptor, ...] = tuple(unique.values())
        self._by_id = dict(unique)

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Catalog VERBOSE] {message}", file=sys.stderr)

    def __len__(self) -> int:
        return len(self._services)

    @property
    def services(self) -> Tuple[ServiceDescriptor, ...]:
        return self._services

    def get_service(self, service_id: str) -> Optional[ServiceDescriptor]:
        return self._by_id.get(service_id)

    def has_entity(self, service_id: str, entity_name: str) -> bool:
        service = self._by_id.get(service_id)
        return service is not None and entity_name in service.entity_names

    def categories(self) -> List[str]:
        return sorted({c for s in self._services for c in s.categories})

    def search(self, query: Optional[str] = None, category: Optional[str] = None,
               limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return matching services with their entity summaries.

        Each match is ``{"service": ServiceDescriptor, "entities": [EntitySummary]}``.
        ``limit`` truncates the list of services, never a service's entities.
        """
        matches, _ = self.search_with_fallback(query, category, limit)
        return matches

    def search_with_fallback(self, query: Optional[str] = None, category: Optional[str] = None,
                             limit: Optional[int] = None) -> Tuple[List[Dict[str, Any]], bool]:
        """Like :meth:`search`, also reporting whether the full catalog was returned as a fallback."""
        candidates = list(self._services)
        if category:
            wanted = category.strip().lower()
            candidates = [s for s in candidates if wanted in s.categories]

        needle = (query or "").strip().lower()
        selected: List[Tuple[ServiceDescriptor, List[str]]] = []
        if needle:
            for service in candidates:
                if self._service_matches(service, needle):
                    selected.append((service, list(service.entity_names)))
                    continue
                entity_hits = [e for e in service.entity_names if needle in e.lower()]
                if entity_hits:
                    selected.append((service, entity_hits))
        else:
            selected = [(s, list(s.entity_names)) for s in candidates]

        fallback = False
        if not selected:
            self._log_verbose(
                f"No services matched query={query!r} category={category!r}; returning full catalog.")
            selected = [(s, list(s.entity_names)) for s in self._services]
            fallback = bool(query or category)

        if limit is not None and limit > 0:
            selected = selected[:limit]

        return [
            {
                "service": service,
                "entities": [EntitySummary(service_id=service.service_id, entity_name=e) for e in entities],
            }
            for service, entities in selected
        ], fallback

    @staticmethod
    def _service_matches(service: ServiceDescriptor, needle: str) -> bool:
        if needle in service.service_id.lower() or needle in service.service_name.lower():
            return True
        if service.description and needle in service.description.lower():
            return True
        return any(needle in c for c in service.categories)
