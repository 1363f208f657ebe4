"""
Google Gemini compatibility helpers.

Gemini rejects JSON Schemas that contain ``additionalProperties``; these
helpers detect Gemini clients and strip the field from tool schemas.
"""

from typing import Any, Mapping, Optional

from fastmcp.server.dependencies import get_http_headers
from fastmcp.server.middleware import Middleware, MiddlewareContext


def remove_additional_properties(obj: Any) -> Any:
    """Remove ``additionalProperties`` recursively from a JSON Schema."""
    if isinstance(obj, list):
        return [remove_additional_properties(item) for item in obj]
    if isinstance(obj, dict):
        return {
            key: remove_additional_properties(value)
            for key, value in obj.items()
            if key != 'additionalProperties'
        }
    return obj


def is_gemini_client(headers: Optional[Mapping[str, str]]) -> bool:
    """Detect a Gemini client from the User-Agent or an explicit ``X-MCP-Client`` header."""
    if not headers:
        return False
    lowered = {k.lower(): v for k, v in headers.items()}
    user_agent = (lowered.get('user-agent') or '').lower()
    if 'gemini' in user_agent or ('google' in user_agent and 'ai' in user_agent):
        return True
    return (lowered.get('x-mcp-client') or '').strip().lower() == 'gemini'


class GeminiCompatMiddleware(Middleware):
    """Strips ``additionalProperties`` from listed tool input schemas for Gemini callers."""

    def __init__(self, always: bool = False):
        self.always = always

    def applies(self, headers: Optional[Mapping[str, str]] = None) -> bool:
        if self.always:
            return True
        if headers is None:
            headers = get_http_headers(include_all=True)
        return is_gemini_client(headers)

    async def on_list_tools(self, context: MiddlewareContext, call_next):
        tools = await call_next(context)
        if not self.applies():
            return tools
        return [
            tool.model_copy(update={"parameters": remove_additional_properties(tool.parameters)})
            for tool in tools
        ]
