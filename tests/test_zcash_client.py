#!/usr/bin/env python3
"""
ZECClient tests with a mocked HTTP transport.
"""

import json
import os
import sys
import unittest
from decimal import Decimal

import httpx

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from zhtlc.chains.zcash import ZECClient, ZECConfig
from zhtlc.errors import RPCError, TransportError


def rpc_client(handler) -> ZECClient:
    config = ZECConfig(rpc_url="http://node.test", explorer_api="http://explorer.test")
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ZECClient(config, http=http)


def rpc_reply(result=None, error=None, status=200) -> httpx.Response:
    return httpx.Response(status, json={"result": result, "error": error, "id": "zhtlc"})


class TestRPC(unittest.IsolatedAsyncioTestCase):

    async def test_block_count(self):
        calls = []

        def handler(request):
            calls.append(json.loads(request.content))
            return rpc_reply(2_500_000)

        client = rpc_client(handler)
        self.assertEqual(await client.get_block_count(), 2_500_000)
        self.assertEqual(calls[0]["method"], "getblockcount")
        await client.close()

    async def test_send_rejected(self):
        def handler(request):
            return rpc_reply(error={"code": -26, "message": "bad-txns"}, status=500)

        client = rpc_client(handler)
        with self.assertRaises(RPCError) as ctx:
            await client.send_raw_transaction("00")
        self.assertEqual(ctx.exception.code, -26)
        self.assertTrue(ctx.exception.retryable)

    async def test_unknown_tx_is_none(self):
        def handler(request):
            return rpc_reply(error={"code": -5, "message": "No such mempool or blockchain transaction"},
                             status=500)

        client = rpc_client(handler)
        self.assertIsNone(await client.get_transaction_confirmations("ab" * 32))

    async def test_mempool_tx_has_zero_confirmations(self):
        def handler(request):
            return rpc_reply({"txid": "ab" * 32})

        client = rpc_client(handler)
        self.assertEqual(await client.get_transaction_confirmations("ab" * 32), 0)

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = rpc_client(handler)
        with self.assertRaises(TransportError):
            await client.get_block_count()

    async def test_non_json(self):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        client = rpc_client(handler)
        with self.assertRaises(TransportError):
            await client.get_block_count()


class TestExplorer(unittest.IsolatedAsyncioTestCase):

    async def test_utxos(self):
        def handler(request):
            self.assertEqual(str(request.url), "http://explorer.test/address/tmAddr/utxo")
            return httpx.Response(200, json=[
                {"txid": "ab" * 32, "vout": 1, "value": 1_500_000,
                 "script_pubkey": "76a914", "confirmations": 3},
            ])

        utxos = await rpc_client(handler).get_utxos("tmAddr")
        self.assertEqual(len(utxos), 1)
        self.assertEqual(utxos[0].amount, Decimal("0.015"))
        self.assertEqual(utxos[0].vout, 1)
        self.assertEqual(utxos[0].address, "tmAddr")
        self.assertEqual(utxos[0].confirmations, 3)

    async def test_malformed_utxo(self):
        def handler(request):
            return httpx.Response(200, json=[{"vout": 0}])

        with self.assertRaises(TransportError):
            await rpc_client(handler).get_utxos("tmAddr")

    async def test_balance(self):
        def handler(request):
            self.assertEqual(str(request.url), "http://explorer.test/address/tmAddr")
            return httpx.Response(200, json={"balance": 1_500_000})

        self.assertEqual(await rpc_client(handler).get_balance("tmAddr"), Decimal("0.015"))

    async def test_http_error(self):
        def handler(request):
            return httpx.Response(404, json={})

        with self.assertRaises(TransportError):
            await rpc_client(handler).get_balance("tmAddr")


if __name__ == "__main__":
    unittest.main(verbosity=2)
