"""Tests for the JSON-RPC transport (replay_engine/ingestion/rpc_provider.py)."""

from __future__ import annotations

import json

import httpx
import pytest

from replay_engine.core.config import Settings
from replay_engine.core.errors import JsonRpcError
from replay_engine.ingestion.rpc_provider import JsonRpcProvider


def _provider(handler) -> JsonRpcProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JsonRpcProvider("http://node.test", client=client)


class TestJsonRpcProvider:
    @pytest.mark.asyncio
    async def test_send_returns_result(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"trace": []}})

        async with _provider(handler) as provider:
            result = await provider.send("trace_replayTransaction", ["0xabc", ["trace"]])

        assert result == {"trace": []}
        assert seen[0]["method"] == "trace_replayTransaction"
        assert seen[0]["params"] == ["0xabc", ["trace"]]
        assert seen[0]["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_request_ids_increment(self):
        ids: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            ids.append(body["id"])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": None})

        provider = _provider(handler)
        await provider.send("eth_blockNumber", [])
        await provider.send("eth_blockNumber", [])
        await provider.aclose()
        assert ids == [1, 2]

    @pytest.mark.asyncio
    async def test_error_object_raises_json_rpc_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "invalid params"}},
            )

        provider = _provider(handler)
        with pytest.raises(JsonRpcError) as info:
            await provider.send("trace_replayTransaction", [])
        assert info.value.code == -32602
        assert info.value.message == "invalid params"

    @pytest.mark.asyncio
    async def test_http_error_propagates(self):
        provider = _provider(lambda request: httpx.Response(429, text="slow down"))
        with pytest.raises(httpx.HTTPStatusError):
            await provider.send("trace_replayTransaction", [])

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        provider = _provider(lambda request: httpx.Response(200, json=[1, 2, 3]))
        with pytest.raises(JsonRpcError) as info:
            await provider.send("trace_replayTransaction", [])
        assert info.value.code == -32700

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        provider = _provider(lambda request: httpx.Response(200, text="<html>bad gateway page</html>"))
        with pytest.raises(JsonRpcError) as info:
            await provider.send("trace_replayTransaction", [])
        assert info.value.code == -32700

    def test_for_network_uses_override(self):
        provider = JsonRpcProvider.for_network("mainnet", Settings(_env_file=None, rpc_url="http://erigon:8545"))
        assert provider.url == "http://erigon:8545"
