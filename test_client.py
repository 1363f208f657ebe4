#!/usr/bin/env python3
"""
Tests for the OData executor: query encoding, response unwrapping, CSRF
handling and classification of remote failures.
"""

import json
import unittest
from unittest.mock import MagicMock, patch

import requests

from sap_mcp_lib.client import ODataExecutor, convert_legacy_dates, encode_query_params, parse_legacy_date
from sap_mcp_lib.errors import RemoteFault, RemoteUnavailable, RemoteUnexpectedResponse
from sap_mcp_lib.models import AuthContext
from odata_fixtures import business_partner_service


def _response(status=200, body=None, text=None, headers=None, reason="OK"):
    response = MagicMock()
    response.status_code = status
    response.reason = reason
    response.headers = headers or {}
    if body is not None:
        text = json.dumps(body)
    response.text = text or ""
    response.content = response.text.encode('utf-8')
    if body is not None:
        response.json.return_value = body
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response


class TestQueryParamEncoding(unittest.TestCase):
    """Test query parameter encoding for OData compatibility."""

    def test_encode_query_params_function(self):
        test_cases = [
            ({"$filter": "CustomerName eq 'ACME'"}, "$filter=CustomerName%20eq%20%27ACME%27"),
            ({"$top": 10}, "$top=10"),
            ({"$filter": "CustomerName eq 'ACME'", "$top": 10},
             "$filter=CustomerName%20eq%20%27ACME%27&$top=10"),
        ]
        for input_params, expected in test_cases:
            with self.subTest(input_params=input_params):
                self.assertEqual(encode_query_params(input_params), expected)

    def test_spaces_encoded_as_percent20(self):
        result = encode_query_params({"$filter": "substringof('ACME CORP', CustomerName) eq true"})
        self.assertIn("%20", result)
        self.assertNotIn("+", result)


class TestLegacyDates(unittest.TestCase):
    """Test /Date(ms)/ conversion."""

    def test_parse_legacy_date(self):
        self.assertEqual(parse_legacy_date("/Date(1705276800000)/"), "2024-01-15T00:00:00Z")
        self.assertEqual(parse_legacy_date("/Date(1705276800000+0000)/"), "2024-01-15T00:00:00Z")
        self.assertIsNone(parse_legacy_date("2024-01-15"))

    def test_convert_drops_metadata_blocks(self):
        data = {"results": [{"__metadata": {"uri": "x"}, "CreationDate": "/Date(0)/", "Name": "A"}]}
        self.assertEqual(convert_legacy_dates(data),
                         {"results": [{"CreationDate": "1970-01-01T00:00:00Z", "Name": "A"}]})


class TestODataExecutor(unittest.IsolatedAsyncioTestCase):
    """Test request execution against a mocked requests session."""

    def setUp(self):
        self.executor = ODataExecutor(timeout=5)
        self.service = business_partner_service()
        self.credential = AuthContext(token="user-token")
        self.session = MagicMock()
        self.session.headers = {}
        patcher = patch('sap_mcp_lib.client.requests.Session', return_value=self.session)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_get_unwraps_v2_envelope(self):
        self.session.request.return_value = _response(body={"d": {"results": [{"CustomerID": "1"}], "__count": "1"}})
        data = await self.executor.execute('GET', self.service, 'Customer',
                                           params={'$top': 1, '$filter': "CustomerID eq '1'"},
                                           credential=self.credential)
        self.assertEqual(data, {"results": [{"CustomerID": "1"}], "__count": "1"})
        method, url = self.session.request.call_args[0]
        self.assertEqual(method, 'GET')
        self.assertTrue(url.startswith(
            "https://sap.example.com/sap/opu/odata/sap/API_BUSINESS_PARTNER/Customer?"))
        self.assertIn("$filter=CustomerID%20eq%20%271%27", url)
        self.assertEqual(self.session.headers['Authorization'], "Bearer user-token")

    async def test_no_content(self):
        self.session.request.return_value = _response(status=204, text="")
        self.session.get.return_value = _response(headers={'x-csrf-token': 'tok'})
        self.assertIsNone(await self.executor.execute('DELETE', self.service, "Customer('1')",
                                                      credential=self.credential))

    async def test_modifying_request_sends_csrf_token(self):
        self.session.get.return_value = _response(headers={'x-csrf-token': 'tok-123'})
        self.session.request.return_value = _response(status=201, body={"d": {"CustomerID": "2"}})
        data = await self.executor.execute('POST', self.service, 'Customer', payload={"CustomerID": "2"},
                                           credential=self.credential)
        self.assertEqual(data, {"CustomerID": "2"})
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs['headers']['X-CSRF-Token'], 'tok-123')
        self.assertEqual(json.loads(kwargs['data']), {"CustomerID": "2"})

    async def test_csrf_token_is_refetched_once(self):
        self.session.get.side_effect = [
            _response(headers={'x-csrf-token': 'stale'}),
            _response(headers={'x-csrf-token': 'fresh'}),
        ]
        self.session.request.side_effect = [
            _response(status=403, text="CSRF token validation failed", headers={'x-csrf-token': 'Required'},
                      reason="Forbidden"),
            _response(status=204, text=""),
        ]
        await self.executor.execute('MERGE', self.service, "Customer('1')", payload={"CustomerName": "A"},
                                    credential=self.credential)
        self.assertEqual(self.session.request.call_count, 2)
        self.assertEqual(self.session.request.call_args.kwargs['headers']['X-CSRF-Token'], 'fresh')

    async def test_structured_error_is_remote_fault(self):
        body = {"error": {"code": "CX_SADL_ENTITY/001", "message": {"lang": "en", "value": "Customer 9 not found"}}}
        self.session.request.return_value = _response(status=404, body=body, reason="Not Found")
        with self.assertRaises(RemoteFault) as ctx:
            await self.executor.execute('GET', self.service, "Customer('9')", credential=self.credential)
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.message, "Customer 9 not found")
        self.assertEqual(ctx.exception.details["code"], "CX_SADL_ENTITY/001")

    async def test_unstructured_error_is_unexpected_response(self):
        self.session.request.return_value = _response(status=502, text="<html>Bad Gateway</html>",
                                                      reason="Bad Gateway")
        with self.assertRaises(RemoteUnexpectedResponse) as ctx:
            await self.executor.execute('GET', self.service, 'Customer', credential=self.credential)
        self.assertEqual(ctx.exception.status, 502)

    async def test_non_json_success_is_unexpected_response(self):
        self.session.request.return_value = _response(status=200, text="<feed/>")
        with self.assertRaises(RemoteUnexpectedResponse):
            await self.executor.execute('GET', self.service, 'Customer', credential=self.credential)

    async def test_oversized_response(self):
        executor = ODataExecutor(max_response_size=10)
        self.session.request.return_value = _response(body={"d": {"results": ["x" * 100]}})
        with self.assertRaises(RemoteUnexpectedResponse):
            await executor.execute('GET', self.service, 'Customer', credential=self.credential)

    async def test_network_failures_are_remote_unavailable(self):
        for error in (requests.exceptions.ConnectionError("refused"), requests.exceptions.Timeout("slow")):
            with self.subTest(error=type(error).__name__):
                self.session.request.side_effect = error
                with self.assertRaises(RemoteUnavailable) as ctx:
                    await self.executor.execute('GET', self.service, 'Customer', credential=self.credential)
                self.assertEqual(ctx.exception.kind, "RemoteUnavailable")

    async def test_sessions_are_separated_per_credential(self):
        self.session.request.return_value = _response(body={"d": {"results": []}})
        await self.executor.execute('GET', self.service, 'Customer', credential=self.credential)
        await self.executor.execute('GET', self.service, 'Customer', credential=AuthContext(token="other"))
        self.assertEqual(len(self.executor._sessions), 2)


class TestSessionCache(unittest.IsolatedAsyncioTestCase):
    """Test that per-credential sessions stay bounded as tokens rotate."""

    def setUp(self):
        self.created = []

        def new_session():
            session = MagicMock()
            session.headers = {}
            session.request.return_value = _response(body={"d": {"results": []}})
            self.created.append(session)
            return session

        patcher = patch('sap_mcp_lib.client.requests.Session', side_effect=new_session)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.service = business_partner_service()

    async def test_rotating_tokens_keep_sessions_bounded(self):
        executor = ODataExecutor(max_sessions=4)
        for i in range(200):
            await executor.execute('GET', self.service, 'Customer', credential=AuthContext(token=f"jwt-{i}"))
        self.assertEqual(len(self.created), 200)
        self.assertEqual(len(executor._sessions), 4)
        for session in self.created[:-4]:
            session.close.assert_called_once()
        for session in self.created[-4:]:
            session.close.assert_not_called()

    async def test_recently_used_session_is_kept(self):
        executor = ODataExecutor(max_sessions=2)
        first = AuthContext(token="first")
        await executor.execute('GET', self.service, 'Customer', credential=first)
        await executor.execute('GET', self.service, 'Customer', credential=AuthContext(token="second"))
        await executor.execute('GET', self.service, 'Customer', credential=first)
        await executor.execute('GET', self.service, 'Customer', credential=AuthContext(token="third"))
        self.assertEqual(len(self.created), 3)
        self.created[0].close.assert_not_called()
        self.created[1].close.assert_called_once()

    async def test_evicted_session_drops_its_csrf_token(self):
        executor = ODataExecutor(max_sessions=1)
        first = AuthContext(token="first")
        await executor.execute('GET', self.service, 'Customer', credential=first)
        executor._csrf_tokens[next(iter(executor._sessions))] = "tok"
        await executor.execute('GET', self.service, 'Customer', credential=AuthContext(token="second"))
        self.assertEqual(executor._csrf_tokens, {})


if __name__ == "__main__":
    unittest.main()
