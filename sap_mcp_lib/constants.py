"""
Constants used throughout the SAP OData MCP library.
"""

# Namespaces for OData XML parsing (v2 and v4 documents)
NAMESPACES = {
    'edmx': 'http://schemas.microsoft.com/ado/2007/06/edmx',
    'edm': 'http://schemas.microsoft.com/ado/2008/09/edm',
    'edmx4': 'http://docs.oasis-open.org/odata/ns/edmx',
    'edm4': 'http://docs.oasis-open.org/odata/ns/edm',
    'm': 'http://schemas.microsoft.com/ado/2007/08/dataservices/metadata',
    'd': 'http://schemas.microsoft.com/ado/2007/08/dataservices',
    'sap': 'http://www.sap.com/Protocols/SAPData',
    'atom': 'http://www.w3.org/2005/Atom',
    'app': 'http://www.w3.org/2007/app'
}

SAP_NS = NAMESPACES['sap']

# EDM primitive types mapped to the internal type vocabulary
EDM_TYPE_VOCABULARY = {
    "Edm.String": "string",
    "Edm.Byte": "integer",
    "Edm.SByte": "integer",
    "Edm.Int16": "integer",
    "Edm.Int32": "integer",
    "Edm.Int64": "integer",
    "Edm.Decimal": "decimal",
    "Edm.Double": "number",
    "Edm.Single": "number",
    "Edm.Boolean": "boolean",
    "Edm.Date": "date",
    "Edm.DateTime": "datetime",
    "Edm.DateTimeOffset": "datetime",
    "Edm.Time": "time",
    "Edm.TimeOfDay": "time",
    "Edm.Duration": "time",
    "Edm.Guid": "guid",
    "Edm.Binary": "binary",
    "Edm.Stream": "binary",
}

DEFAULT_VOCABULARY_TYPE = "string"

# JSON-Schema rendering of each vocabulary entry
VOCABULARY_JSON_SCHEMA = {
    "string": {"type": "string"},
    "integer": {"type": "integer"},
    # Decimals travel as strings in OData v2 payloads to keep precision
    "decimal": {"type": ["number", "string"]},
    "number": {"type": "number"},
    "boolean": {"type": "boolean"},
    "date": {"type": "string", "format": "date"},
    "datetime": {"type": "string", "format": "date-time"},
    "time": {"type": "string"},
    "guid": {"type": "string", "format": "uuid"},
    "binary": {"type": "string", "contentEncoding": "base64"},
}

# HTTP method per operation; update depends on the OData version
OPERATION_HTTP_METHODS = {
    "read": "GET",
    "read-single": "GET",
    "create": "POST",
    "delete": "DELETE",
}
UPDATE_METHOD_BY_VERSION = {
    "v2": "MERGE",
    "v4": "PATCH",
}

MODIFYING_METHODS = ['POST', 'PUT', 'MERGE', 'PATCH', 'DELETE']

# SAP Gateway catalog service used for service discovery
GATEWAY_CATALOG_PATH = "/sap/opu/odata/IWFND/CATALOGSERVICE;v=2"
GATEWAY_SERVICE_ROOT = "/sap/opu/odata/sap"

# Service categories derived from technical names and descriptions
CATEGORY_KEYWORDS = {
    "business-partner": ["business_partner", "businesspartner", "customer", "supplier", "bupa", "vendor"],
    "sales": ["sales", "salesorder", "billing", "quotation", "pricing"],
    "finance": ["finance", "journal", "gl_account", "glaccount", "accounting", "costcenter", "cost_center", "payment", "bank"],
    "procurement": ["purchase", "purchasing", "procurement", "requisition", "sourcing"],
    "materials": ["material", "product", "inventory", "stock", "batch"],
    "hr": ["employee", "workforce", "personnel", "hcm", "payroll"],
    "logistics": ["delivery", "shipment", "warehouse", "transport", "logistics"],
    "analytics": ["analytics", "query", "report", "kpi", "cds"],
}
DEFAULT_CATEGORY = "other"

USER_AGENT = 'SAP-OData-MCP-Server/2.0'
DEFAULT_DISCOVERY_TIMEOUT = 60.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_MAX_RESPONSE_SIZE = 5 * 1024 * 1024
MAX_CACHED_SESSIONS = 32
MAX_TOOL_NAME_LENGTH = 64
