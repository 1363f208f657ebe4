#!/usr/bin/env python3
"""
SAP OData to MCP Server.

Discovers the SAP OData services of a Gateway system (or reads them from a
services file) and exposes them to MCP clients through progressive discovery:
catalog search, entity metadata on demand, and validated CRUD operations.
"""

import argparse
import asyncio
import inspect
import signal
import sys
import traceback

from sap_mcp_lib import (
    GatewayCatalogDiscovery,
    ServerConfig,
    ServiceCatalog,
    StaticDiscovery,
    create_tool_registry,
    discover_services
)


def parse_http_addr(http_addr: str):
    """Split ``host:port`` (or ``:port`` / ``port``) into a host and port."""
    host, _, port = http_addr.rpartition(":")
    try:
        return host or "0.0.0.0", int(port)
    except ValueError:
        return host or "0.0.0.0", 8080


def build_discovery(config: ServerConfig):
    if config.services_file:
        return StaticDiscovery(config.services_file, patterns=config.service_patterns)
    if config.sap_base_url:
        return GatewayCatalogDiscovery(
            config.sap_base_url,
            auth=config.basic_auth,
            bearer_token=config.sap_technical_token,
            patterns=config.service_patterns,
            timeout=config.request_timeout,
            verify=config.verify_tls,
            verbose=config.verbose,
        )
    return None


def print_trace_info(registry):
    """Print the registry type, the catalog and every registered tool with its parameters."""
    print("=" * 80)
    print("SAP OData MCP Server Trace Information")
    print("=" * 80)
    print(f"\nMCP Name: {registry.mcp.name}")
    print(f"Registry: {type(registry).__name__}")
    print(f"Services: {len(registry.catalog)}")
    for service in registry.catalog.services:
        print(f"  - {service.service_id} ({service.odata_version}): {len(service.entity_names)} entities")

    print(f"\nRegistered tools ({len(registry.tools)}):")
    for name, fn in registry.tools.items():
        print(f"\n  {name}")
        for param_name, param in inspect.signature(fn).parameters.items():
            required = param.default is inspect.Parameter.empty
            print(f"      - {param_name} ({'required' if required else 'optional'})")

    print("\n" + "=" * 80)
    print("Trace complete - server initialized but not started")
    print("=" * 80)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="SAP OData to MCP Server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--services-file", help="JSON file listing services (overrides SAP_SERVICES_FILE)")
    parser.add_argument("--base-url", help="SAP Gateway base URL used for catalog discovery (overrides SAP_BASE_URL)")
    parser.add_argument("--service-patterns", help="Comma-separated wildcard patterns for service names, e.g. 'API_*,Z*'")
    parser.add_argument("--registry", choices=["hierarchical", "flat"],
                        help="Tool exposure style (overrides MCP_TOOL_REGISTRY_TYPE)")
    parser.add_argument("--disable-read-entity-tool", action="store_true", default=None,
                        help="Do not register the per-entity get tool (flat registry)")
    parser.add_argument("--discovery-timeout", type=float, help="Seconds to wait for service discovery")
    parser.add_argument("--gemini", action="store_true", default=None,
                        help="Strip additionalProperties from schemas for Gemini clients")
    parser.add_argument("-v", "--verbose", "--debug", dest="verbose", action="store_true", default=None,
                        help="Enable verbose output to stderr")
    parser.add_argument("--trace", action="store_true",
                        help="Initialize the server, print all tools and parameters, then exit")
    parser.add_argument("--transport", choices=["stdio", "http"], default="stdio", help="Transport type")
    parser.add_argument("--http-addr", default=":8080", help="HTTP server address (used with --transport http)")

    args = parser.parse_args()

    # Priority: CLI flags > environment variables > .env file
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    overrides = {
        "services_file": args.services_file,
        "sap_base_url": args.base_url,
        "registry_type": args.registry,
        "disable_read_entity_tool": args.disable_read_entity_tool,
        "discovery_timeout": args.discovery_timeout,
        "gemini_compat": args.gemini,
        "verbose": args.verbose,
    }
    if args.service_patterns:
        overrides["service_patterns"] = [p.strip() for p in args.service_patterns.split(',') if p.strip()]
    config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    discovery = build_discovery(config)
    if discovery is None:
        print("ERROR: No service source configured.", file=sys.stderr)
        print("Provide --services-file / SAP_SERVICES_FILE or --base-url / SAP_BASE_URL.", file=sys.stderr)
        parser.print_help(file=sys.stderr)
        sys.exit(1)

    def signal_handler(sig, frame):
        print(f"\n{signal.Signals(sig).name} received, shutting down server...", file=sys.stderr)
        sys.exit(0)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        services = asyncio.run(discover_services(discovery, config.discovery_timeout, verbose=config.verbose))
        catalog = ServiceCatalog(services, verbose=config.verbose)
        if config.verbose:
            print(f"[VERBOSE] Discovered {len(catalog)} services", file=sys.stderr)

        registry = create_tool_registry(config, catalog)
        if config.user_token:
            registry.set_credential(config.user_token)
        registry.register_all()

        if args.trace:
            print_trace_info(registry)
            sys.exit(0)

        if args.transport == "http":
            host, port = parse_http_addr(args.http_addr)
            if config.verbose:
                print(f"[VERBOSE] Starting streamable HTTP transport on {host}:{port}", file=sys.stderr)
            registry.mcp.run(transport="http", host=host, port=port)
        else:
            if config.verbose:
                print("[VERBOSE] Using stdio transport", file=sys.stderr)
            registry.mcp.run()
    except Exception as e:
        print(f"\n--- FATAL ERROR ---", file=sys.stderr)
        print(f"An unexpected error occurred during startup or runtime: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("-------------------", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
