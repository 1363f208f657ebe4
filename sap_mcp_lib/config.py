"""
Server configuration loaded from the environment (and .env) with CLI overrides.
"""

import base64
import os
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from .constants import DEFAULT_DISCOVERY_TIMEOUT, DEFAULT_MAX_RESPONSE_SIZE, DEFAULT_REQUEST_TIMEOUT
from .models import AuthContext

REGISTRY_TYPES = ("hierarchical", "flat")


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Accepts 1/0, true/false, yes/no, on/off (case-insensitive)."""
    if value is None or not str(value).strip():
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    try:
        return float(raw) if raw and raw.strip() else default
    except ValueError:
        return default


class ServerConfig(BaseModel):
    sap_base_url: Optional[str] = None
    sap_username: Optional[str] = None
    sap_password: Optional[str] = None
    sap_technical_token: Optional[str] = None
    user_token: Optional[str] = None
    services_file: Optional[str] = None
    service_patterns: List[str] = []
    registry_type: str = "hierarchical"
    disable_read_entity_tool: bool = False
    allow_technical_reads: bool = True
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    verify_tls: bool = True
    max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE
    gemini_compat: bool = False
    verbose: bool = False

    @field_validator('registry_type')
    @classmethod
    def _check_registry_type(cls, value: str) -> str:
        value = (value or "hierarchical").strip().lower()
        if value not in REGISTRY_TYPES:
            raise ValueError(f"registry_type must be one of {', '.join(REGISTRY_TYPES)}, got '{value}'")
        return value

    @classmethod
    def from_env(cls, dotenv: bool = True) -> 'ServerConfig':
        """Create configuration from environment variables (after loading .env)."""
        if dotenv:
            load_dotenv()
        patterns = os.getenv("ODATA_SERVICE_PATTERNS", "")
        return cls(
            sap_base_url=os.getenv("SAP_BASE_URL"),
            sap_username=os.getenv("SAP_USERNAME") or os.getenv("SAP_USER"),
            sap_password=os.getenv("SAP_PASSWORD") or os.getenv("SAP_PASS"),
            sap_technical_token=os.getenv("SAP_TECHNICAL_TOKEN"),
            user_token=os.getenv("SAP_USER_TOKEN"),
            services_file=os.getenv("SAP_SERVICES_FILE"),
            service_patterns=[p.strip() for p in patterns.split(',') if p.strip()],
            registry_type=os.getenv("MCP_TOOL_REGISTRY_TYPE", "hierarchical"),
            disable_read_entity_tool=parse_bool(os.getenv("DISABLE_READ_ENTITY_TOOL")),
            allow_technical_reads=parse_bool(os.getenv("ALLOW_TECHNICAL_USER_READS"), default=True),
            discovery_timeout=_env_float("DISCOVERY_TIMEOUT", DEFAULT_DISCOVERY_TIMEOUT),
            request_timeout=_env_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            verify_tls=parse_bool(os.getenv("SAP_VERIFY_TLS"), default=True),
            max_response_size=int(_env_float("MAX_RESPONSE_SIZE", DEFAULT_MAX_RESPONSE_SIZE)),
            gemini_compat=parse_bool(os.getenv("GEMINI_COMPAT")),
            verbose=parse_bool(os.getenv("MCP_VERBOSE")),
        )

    @property
    def basic_auth(self) -> Optional[Tuple[str, str]]:
        if self.sap_username and self.sap_password:
            return (self.sap_username, self.sap_password)
        return None

    def technical_auth(self) -> Optional[AuthContext]:
        """Fallback credential for reads and metadata fetches."""
        if self.sap_technical_token:
            return AuthContext(token=self.sap_technical_token, source="technical")
        if self.basic_auth:
            encoded = base64.b64encode(f"{self.sap_username}:{self.sap_password}".encode('utf-8')).decode('ascii')
            return AuthContext(token=f"Basic {encoded}", source="technical")
        return None
