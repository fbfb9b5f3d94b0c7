import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.http_client import HttpxRequestClient


class TestHttpxRequestClient(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.seen.append(request)
            if request.url.path == "/json":
                return httpx.Response(200, json={"ok": True})
            if request.url.path == "/empty":
                return httpx.Response(204)
            return httpx.Response(404, text="nope")

        self.client = HttpxRequestClient(base_url="http://forms.test", transport=httpx.MockTransport(handler))

    async def asyncTearDown(self) -> None:
        await self.client.aclose()

    async def test_json_body(self) -> None:
        out = await self.client.request({"url": "/json", "method": "get", "headers": {"X-Trace": "1"}})
        self.assertEqual(out, {"status": 200, "body": {"ok": True}})
        self.assertEqual(self.seen[0].method, "GET")
        self.assertEqual(self.seen[0].headers["x-trace"], "1")

    async def test_text_and_empty_bodies(self) -> None:
        self.assertEqual(await self.client.request({"url": "/missing"}), {"status": 404, "body": "nope"})
        self.assertEqual(await self.client.request({"url": "/empty"}), {"status": 204, "body": None})


if __name__ == "__main__":
    unittest.main()
