#!/usr/bin/env python3
"""
Tests for the tool registries: the three progressive-discovery tools, the
flat per-entity tools, credentials and structured error payloads.
"""

import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fastmcp import FastMCP

from sap_mcp_lib.config import ServerConfig
from sap_mcp_lib.errors import EntityNotFound
from sap_mcp_lib.models import AuthContext
from sap_mcp_lib.registry import (
    FlatToolRegistry,
    HierarchicalToolRegistry,
    create_tool_registry,
    make_tool_name,
)
from odata_fixtures import StubFetcher, make_catalog


def _executor(return_value=None):
    executor = MagicMock()
    executor.execute = AsyncMock(return_value=return_value)
    return executor


class RegistryTestCase(unittest.IsolatedAsyncioTestCase):

    def make_registry(self, **config_values):
        self.fetcher = StubFetcher()
        self.executor = _executor({"results": [{"CustomerID": "1000001"}]})
        config = ServerConfig(**config_values)
        registry = create_tool_registry(config, make_catalog(), mcp=FastMCP(name="test-sap"),
                                        fetcher=self.fetcher, executor=self.executor)
        registry.register_all()
        return registry

    async def call(self, registry, tool_name, **kwargs):
        return json.loads(await registry.tools[tool_name](**kwargs))


class TestHierarchicalRegistry(RegistryTestCase):
    """Test the discover / metadata / execute tools."""

    def setUp(self):
        self.registry = self.make_registry()

    def test_exactly_three_tools(self):
        self.assertIsInstance(self.registry, HierarchicalToolRegistry)
        self.assertEqual(sorted(self.registry.tool_names),
                         ["discover-sap-data", "execute-sap-operation", "get-entity-metadata"])

    async def test_discover_customer(self):
        """discover('customer') names the Customer entity without property-level detail."""
        result = await self.call(self.registry, "discover-sap-data", query="customer")
        self.assertFalse(result["fallback"])
        match = next(m for m in result["matches"] if m["service"]["serviceId"] == "API_BUSINESS_PARTNER")
        self.assertEqual(match["type"], "service")
        self.assertEqual(set(match["service"]), {"serviceId", "serviceName", "entityCount", "categories"})
        self.assertIn({"entityName": "Customer"}, match["entities"])
        for entity in match["entities"]:
            self.assertEqual(set(entity), {"entityName"})

    async def test_discover_without_match_returns_full_catalog(self):
        result = await self.call(self.registry, "discover-sap-data", query="no-such-thing-xyz")
        self.assertTrue(result["fallback"])
        self.assertEqual(len(result["matches"]), 3)
        self.assertEqual(result["totalServices"], 3)
        self.assertNotIn("error", result)

    async def test_discover_negative_limit(self):
        result = await self.call(self.registry, "discover-sap-data", limit=-1)
        self.assertEqual(result["error"]["kind"], "InvalidRequest")

    async def test_discover_zero_limit_is_rejected(self):
        result = await self.call(self.registry, "discover-sap-data", limit=0)
        self.assertEqual(result["error"]["kind"], "InvalidRequest")
        self.assertEqual(result["error"]["details"], {"limit": 0})

    async def test_entity_count_is_service_total(self):
        """entityCount counts every entity of the service even when only some matched."""
        result = await self.call(self.registry, "discover-sap-data", query="salesarea")
        self.assertFalse(result["fallback"])
        self.assertEqual(len(result["matches"]), 1)
        match = result["matches"][0]
        self.assertEqual(match["entities"], [{"entityName": "CustomerSalesArea"}])
        self.assertEqual(match["service"]["entityCount"], 2)

    async def test_get_metadata_customer(self):
        result = await self.call(self.registry, "get-entity-metadata",
                                 serviceId="API_BUSINESS_PARTNER", entityName="Customer")
        self.assertTrue(result["capabilities"]["updatable"])
        email = next(p for p in result["properties"] if p["name"] == "EmailAddress")
        self.assertEqual(email["maxLength"], 241)
        self.assertEqual(result["entity"]["keyProperties"], ["CustomerID"])
        self.assertFalse(result["parameterSchema"]["additionalProperties"])

    async def test_get_metadata_is_idempotent(self):
        first = await self.registry.tools["get-entity-metadata"](serviceId="API_BUSINESS_PARTNER",
                                                                 entityName="Customer")
        second = await self.registry.tools["get-entity-metadata"](serviceId="API_BUSINESS_PARTNER",
                                                                  entityName="Customer")
        self.assertEqual(first, second)
        self.assertEqual(len(self.fetcher.calls), 1)

    async def test_get_metadata_unknown_entity(self):
        result = await self.call(self.registry, "get-entity-metadata",
                                 serviceId="API_BUSINESS_PARTNER", entityName="Nope")
        self.assertEqual(result["error"]["kind"], "EntityNotFound")
        self.assertEqual(self.fetcher.calls, [])

    async def test_gemini_client_gets_schema_without_additional_properties(self):
        with patch('sap_mcp_lib.registry.get_http_headers', return_value={"user-agent": "Gemini-CLI/1.0"}):
            result = await self.call(self.registry, "get-entity-metadata",
                                     serviceId="API_BUSINESS_PARTNER", entityName="Customer")
        self.assertNotIn("additionalProperties", result["parameterSchema"])

    async def test_read_without_user_credential(self):
        result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                 entityName="Customer", operation="read", topNumber=5)
        self.assertEqual(result["results"], [{"CustomerID": "1000001"}])
        self.assertEqual(self.executor.execute.call_args.kwargs["params"]["$top"], 5)

    async def test_update_requires_credential(self):
        result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                 entityName="Customer", operation="update",
                                 parameters={"CustomerID": "1000001", "EmailAddress": "a@b.c"})
        self.assertEqual(result["error"]["kind"], "AuthenticationRequired")
        self.executor.execute.assert_not_called()

    async def test_update_with_session_credential(self):
        self.registry.set_credential("session-token")
        self.executor.execute.return_value = {"CustomerID": "1000001", "EmailAddress": "a@b.c"}
        result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                 entityName="Customer", operation="update",
                                 parameters={"CustomerID": "1000001", "EmailAddress": "a@b.c"})
        self.assertEqual(result["EmailAddress"], "a@b.c")
        credential = self.executor.execute.call_args.kwargs["credential"]
        self.assertEqual(credential.authorization_header, "Bearer session-token")

        self.registry.set_credential(None)
        result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                 entityName="Customer", operation="update",
                                 parameters={"CustomerID": "1000001", "EmailAddress": "a@b.c"})
        self.assertEqual(result["error"]["kind"], "AuthenticationRequired")

    async def test_authorization_header_wins_over_session_credential(self):
        self.registry.set_credential("session-token")
        self.executor.execute.return_value = {"CustomerID": "1000001"}
        with patch('sap_mcp_lib.registry.get_http_headers', return_value={"Authorization": "Bearer header-token"}):
            await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                            entityName="Customer", operation="update",
                            parameters={"CustomerID": "1000001", "CustomerName": "ACME"})
        credential = self.executor.execute.call_args_list[0].kwargs["credential"]
        self.assertEqual(credential.authorization_header, "Bearer header-token")

    async def test_explicit_auth_argument(self):
        self.executor.execute.return_value = {"CustomerID": "1000001"}
        auth = AuthContext(token="explicit")
        await self.registry.execute_operation("API_BUSINESS_PARTNER", "Customer", "update",
                                              parameters={"CustomerID": "1000001", "CustomerName": "ACME"},
                                              auth=auth)
        self.assertIs(self.executor.execute.call_args_list[0].kwargs["credential"], auth)

    async def test_capability_denied_issues_no_request(self):
        self.registry.set_credential("session-token")
        result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                 entityName="Customer", operation="delete", parameters={"CustomerID": "1"})
        self.assertEqual(result["error"]["kind"], "CapabilityDenied")
        self.executor.execute.assert_not_called()

    async def test_missing_key_issues_no_request(self):
        for operation in ("read-single", "update"):
            with self.subTest(operation=operation):
                result = await self.call(self.registry, "execute-sap-operation",
                                         serviceId="API_BUSINESS_PARTNER", entityName="Customer",
                                         operation=operation, parameters={"CustomerName": "ACME"})
                self.assertEqual(result["error"]["kind"], "MissingKey")
        self.executor.execute.assert_not_called()

    async def test_invalid_operation(self):
        result = await self.registry._run_tool("execute-sap-operation", self.registry.execute_operation,
                                               "API_BUSINESS_PARTNER", "Customer", "purge")
        self.assertEqual(json.loads(result)["error"]["kind"], "InvalidRequest")

    async def test_unexpected_errors_are_internal_errors(self):
        self.executor.execute.side_effect = RuntimeError("boom")
        with patch('sys.stderr'):
            result = await self.call(self.registry, "execute-sap-operation", serviceId="API_BUSINESS_PARTNER",
                                     entityName="Customer", operation="read")
        self.assertEqual(result["error"]["kind"], "InternalError")
        self.assertIn("boom", result["error"]["message"])

    def test_register_all_is_idempotent(self):
        mcp = MagicMock()
        registry = create_tool_registry(ServerConfig(), make_catalog(), mcp=mcp,
                                        fetcher=StubFetcher(), executor=_executor())
        first = registry.register_all()
        second = registry.register_all()
        self.assertEqual(first, second)
        self.assertEqual(mcp.tool.call_count, 3)
        self.assertEqual(mcp.resource.call_count, 2)
        mcp.add_middleware.assert_called_once()


class TestResources(RegistryTestCase):
    """Test the read-only catalog resources."""

    def setUp(self):
        self.registry = self.make_registry()

    def test_services_resource(self):
        data = self.registry.services_resource()
        self.assertEqual(data["totalServices"], 3)
        bp = data["services"][0]
        self.assertEqual(bp["serviceId"], "API_BUSINESS_PARTNER")
        self.assertEqual(bp["entities"], ["Customer", "CustomerSalesArea"])

    async def test_service_metadata_resource_tracks_resolved_entities(self):
        before = self.registry.service_metadata_resource("API_BUSINESS_PARTNER")
        self.assertEqual([e["resolved"] for e in before["entities"]], [False, False])
        await self.registry.get_metadata("API_BUSINESS_PARTNER", "Customer")
        after = self.registry.service_metadata_resource("API_BUSINESS_PARTNER")
        customer = after["entities"][0]
        self.assertTrue(customer["resolved"])
        self.assertEqual(customer["keyProperties"], ["CustomerID"])

    def test_unknown_service(self):
        with self.assertRaises(EntityNotFound):
            self.registry.service_metadata_resource("NOPE")


class TestFlatRegistry(RegistryTestCase):
    """Test per-entity tool exposure."""

    def test_tools_per_entity(self):
        registry = self.make_registry(registry_type="flat")
        self.assertIsInstance(registry, FlatToolRegistry)
        names = registry.tool_names
        self.assertEqual(len(names), 6 * 5)
        for name in ("filter_Customer_for_API_BUSINESS_PARTNER", "get_Customer_for_API_BUSINESS_PARTNER",
                     "create_Customer_for_API_BUSINESS_PARTNER", "update_Customer_for_API_BUSINESS_PARTNER",
                     "delete_Customer_for_API_BUSINESS_PARTNER"):
            self.assertIn(name, names)
        for name in names:
            self.assertLessEqual(len(name), 64)

    def test_read_entity_tool_can_be_disabled(self):
        registry = self.make_registry(registry_type="flat", disable_read_entity_tool=True)
        self.assertEqual(len(registry.tool_names), 6 * 4)
        self.assertFalse(any(name.startswith("get_") for name in registry.tool_names))

    async def test_filter_tool_executes_read(self):
        registry = self.make_registry(registry_type="flat")
        result = await self.call(registry, "filter_Customer_for_API_BUSINESS_PARTNER",
                                 filter="CustomerName eq 'ACME'", top=1)
        self.assertEqual(result["count"], 1)
        params = self.executor.execute.call_args.kwargs["params"]
        self.assertEqual(params["$filter"], "CustomerName eq 'ACME'")
        self.assertEqual(params["$top"], 1)

    async def test_get_tool_uses_key(self):
        registry = self.make_registry(registry_type="flat")
        self.executor.execute.return_value = {"CustomerID": "1000001"}
        await self.call(registry, "get_Customer_for_API_BUSINESS_PARTNER", key={"CustomerID": "1000001"})
        self.assertEqual(self.executor.execute.call_args[0][2], "Customer('1000001')")

    async def test_delete_tool_checks_capability(self):
        registry = self.make_registry(registry_type="flat")
        registry.set_credential("token")
        result = await self.call(registry, "delete_Customer_for_API_BUSINESS_PARTNER", key={"CustomerID": "1"})
        self.assertEqual(result["error"]["kind"], "CapabilityDenied")


class TestMakeToolName(unittest.TestCase):
    """Test tool name construction."""

    def test_short_name(self):
        self.assertEqual(make_tool_name("filter", "Customer", "API_BUSINESS_PARTNER"),
                         "filter_Customer_for_API_BUSINESS_PARTNER")

    def test_invalid_characters_replaced(self):
        self.assertEqual(make_tool_name("get", "A/B", "Z.SRV"), "get_A_B_for_Z_SRV")

    def test_long_names_truncated_and_distinct(self):
        a = make_tool_name("update", "A_PurchaseOrderScheduleLineConfirmation", "API_PURCHASEORDER_PROCESS_SRV")
        b = make_tool_name("update", "A_PurchaseOrderScheduleLineConfirmationText", "API_PURCHASEORDER_PROCESS_SRV")
        self.assertEqual(len(a), 64)
        self.assertEqual(len(b), 64)
        self.assertNotEqual(a, b)
        self.assertEqual(a, make_tool_name("update", "A_PurchaseOrderScheduleLineConfirmation",
                                           "API_PURCHASEORDER_PROCESS_SRV"))


if __name__ == "__main__":
    unittest.main()
