"""
OData metadata parser that turns an EDMX document into a normalized entity schema.
"""

import sys
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from lxml import etree

from .constants import DEFAULT_VOCABULARY_TYPE, EDM_TYPE_VOCABULARY, SAP_NS
from .errors import EntityNotFound, MetadataFetchError
from .models import EntityCapabilities, EntitySchema, PropertyDescriptor, ServiceDescriptor

# OData v4 capability annotations: term -> (restriction property, capability)
_V4_CAPABILITY_TERMS = {
    "ReadRestrictions": ("Readable", "readable"),
    "InsertRestrictions": ("Insertable", "creatable"),
    "UpdateRestrictions": ("Updatable", "updatable"),
    "DeleteRestrictions": ("Deletable", "deletable"),
}


def parse_xml(content: bytes):
    """Parse XML with defusedxml when installed, lxml otherwise."""
    try:
        # Note: DeprecationWarning is expected here if using defusedxml.lxml
        from defusedxml import lxml as safe_lxml
        return safe_lxml.fromstring(content)
    except ImportError:
        return etree.fromstring(content)


def normalize_edm_type(edm_type: str) -> str:
    """Map an EDM type name onto the internal type vocabulary."""
    if edm_type.startswith("Collection(") and edm_type.endswith(")"):
        edm_type = edm_type[len("Collection("):-1]
    return EDM_TYPE_VOCABULARY.get(edm_type, DEFAULT_VOCABULARY_TYPE)


def _local(element) -> str:
    return etree.QName(element).localname


def _children(element, name: str) -> List:
    # Match on local name so v2 and v4 EDM namespaces are handled alike
    return [child for child in element if isinstance(child.tag, str) and _local(child) == name]


def _flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() == 'true'


class MetadataParser:
    """Parses the entity schema for one entity out of an OData v2/v4 metadata document."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Parser VERBOSE] {message}", file=sys.stderr)

    def parse_entity(self, document: bytes, service: ServiceDescriptor, entity_name: str) -> EntitySchema:
        """Build the EntitySchema of ``entity_name`` (entity set or entity type name)."""
        try:
            root = parse_xml(document)
        except etree.XMLSyntaxError as e:
            raise MetadataFetchError(
                f"Metadata document for service '{service.service_id}' is not valid XML: {e}",
                {"serviceId": service.service_id},
            ) from e

        schemas = [el for el in root.iter() if isinstance(el.tag, str) and _local(el) == 'Schema']
        if not schemas:
            raise MetadataFetchError(
                f"Metadata document for service '{service.service_id}' contains no Schema element.",
                {"serviceId": service.service_id},
            )

        entity_types = self._index_entity_types(schemas)
        entity_set, type_fqn = self._find_entity_set(schemas, entity_name)
        if type_fqn is None:
            # No container entry: accept an entity type addressed by name
            type_fqn = next((fqn for fqn in entity_types if fqn.rsplit('.', 1)[-1] == entity_name), None)
            if type_fqn is None:
                raise EntityNotFound(service.service_id, entity_name,
                                     f"Entity '{entity_name}' is not declared in the metadata of '{service.service_id}'.")
            entity_set = None

        type_elem, namespace = entity_types.get(type_fqn, (None, None))
        if type_elem is None:
            raise MetadataFetchError(
                f"EntityType '{type_fqn}' referenced by '{entity_name}' is not defined in the metadata.",
                {"serviceId": service.service_id, "entityName": entity_name},
            )

        key_properties = self._parse_keys(type_elem, entity_types)
        properties = self._parse_properties(type_elem, entity_types, key_properties)
        capabilities = self._parse_capabilities(entity_set, schemas)
        self._log_verbose(
            f"Parsed {service.service_id}/{entity_name}: {len(properties)} properties, keys={key_properties}, {capabilities}")

        try:
            return EntitySchema(
                service_id=service.service_id,
                entity_name=entity_name,
                entity_set=entity_set.get('Name') if entity_set is not None else entity_name,
                namespace=namespace,
                key_properties=key_properties,
                properties=properties,
                capabilities=capabilities,
            )
        except ValueError as e:
            raise MetadataFetchError(
                f"Invalid schema for '{entity_name}' in '{service.service_id}': {e}",
                {"serviceId": service.service_id, "entityName": entity_name},
            ) from e

    def _index_entity_types(self, schemas) -> Dict[str, Tuple[object, str]]:
        """Index EntityType elements by namespace-qualified name (and by alias)."""
        index = {}
        for schema in schemas:
            namespace = schema.get('Namespace', '')
            alias = schema.get('Alias')
            for et_elem in _children(schema, 'EntityType'):
                name = et_elem.get('Name')
                if not name:
                    continue
                index[f"{namespace}.{name}"] = (et_elem, namespace)
                if alias:
                    index[f"{alias}.{name}"] = (et_elem, namespace)
        return index

    def _find_entity_set(self, schemas, entity_name: str):
        """Find the entity set by set name first, then by its entity type's simple name."""
        by_type = None
        for schema in schemas:
            for container in _children(schema, 'EntityContainer'):
                for es_elem in _children(container, 'EntitySet'):
                    type_fqn = es_elem.get('EntityType')
                    if es_elem.get('Name') == entity_name:
                        return es_elem, type_fqn
                    if by_type is None and type_fqn and type_fqn.rsplit('.', 1)[-1] == entity_name:
                        by_type = (es_elem, type_fqn)
        return by_type if by_type else (None, None)

    def _parse_keys(self, type_elem, entity_types) -> List[str]:
        for key_elem in _children(type_elem, 'Key'):
            return [ref.get('Name') for ref in _children(key_elem, 'PropertyRef') if ref.get('Name')]
        base = self._base_type(type_elem, entity_types)
        return self._parse_keys(base, entity_types) if base is not None else []

    def _parse_properties(self, type_elem, entity_types, key_properties: List[str]) -> List[PropertyDescriptor]:
        properties = []
        base = self._base_type(type_elem, entity_types)
        if base is not None:
            # Inherited properties come first, in the base type's declared order
            properties.extend(self._parse_properties(base, entity_types, key_properties))

        for prop_elem in _children(type_elem, 'Property'):
            prop_name = prop_elem.get('Name')
            prop_type = prop_elem.get('Type')
            if not prop_name or not prop_type:
                continue
            max_length = prop_elem.get('MaxLength')
            properties.append(PropertyDescriptor(
                name=prop_name,
                edm_type=prop_type,
                type=normalize_edm_type(prop_type),
                nullable=prop_elem.get('Nullable', 'true').lower() == 'true',
                max_length=int(max_length) if max_length and max_length.isdigit() else None,
                is_key=prop_name in key_properties,
                has_default=prop_elem.get('DefaultValue') is not None,
            ))
        return properties

    def _base_type(self, type_elem, entity_types):
        base_fqn = type_elem.get('BaseType')
        if not base_fqn:
            return None
        return entity_types.get(base_fqn, (None, None))[0]

    def _parse_capabilities(self, entity_set, schemas) -> EntityCapabilities:
        """Compute capabilities; without an annotation only ``readable`` defaults to true."""
        values = {"readable": True, "creatable": False, "updatable": False, "deletable": False}
        if entity_set is None:
            return EntityCapabilities(**values)

        # OData v2: SAP annotations on the EntitySet element
        for attr, capability in (('creatable', 'creatable'), ('updatable', 'updatable'), ('deletable', 'deletable')):
            flag = _flag(entity_set.get(f'{{{SAP_NS}}}{attr}'))
            if flag is not None:
                values[capability] = flag
        if _flag(entity_set.get(f'{{{SAP_NS}}}addressable')) is False:
            values['readable'] = False

        # OData v4: Capabilities vocabulary, inline or via Annotations targeting the set
        for annotation in self._set_annotations(entity_set, schemas):
            term = annotation.get('Term', '').rsplit('.', 1)[-1]
            if term not in _V4_CAPABILITY_TERMS:
                continue
            restriction, capability = _V4_CAPABILITY_TERMS[term]
            flag = self._restriction_flag(annotation, restriction)
            if flag is not None:
                values[capability] = flag
        return EntityCapabilities(**values)

    def _set_annotations(self, entity_set, schemas) -> List:
        annotations = list(_children(entity_set, 'Annotation'))
        set_name = entity_set.get('Name')
        container = entity_set.getparent()
        container_name = container.get('Name') if container is not None else None
        for schema in schemas:
            for group in _children(schema, 'Annotations'):
                target = group.get('Target', '')
                if target.endswith(f"/{set_name}") or (container_name and target == f"{container_name}/{set_name}"):
                    annotations.extend(_children(group, 'Annotation'))
        return annotations

    @staticmethod
    def _restriction_flag(annotation, restriction: str) -> Optional[bool]:
        for record in annotation.iter():
            if not isinstance(record.tag, str) or _local(record) != 'PropertyValue':
                continue
            if record.get('Property') != restriction:
                continue
            if record.get('Bool') is not None:
                return _flag(record.get('Bool'))
            for child in record:
                if isinstance(child.tag, str) and _local(child) == 'Bool' and child.text:
                    return _flag(child.text)
        return None
