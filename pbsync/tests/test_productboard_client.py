import unittest

import httpx
from tenacity import wait_none

from pbsync.errors import FatalCollectionError
from pbsync.productboard.client import FetchError, Found, NotFound, ProductBoardClient, _metric_endpoint

BASE_URL = "https://pb.test"


def _client(handler, **kwargs) -> ProductBoardClient:
    return ProductBoardClient(
        "secret-token",
        base_url=BASE_URL,
        wait=wait_none(),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class ProductBoardClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_collection_follows_next_links(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.params.get("pageCursor") == "2":
                return httpx.Response(200, json={"data": [{"id": "F3"}], "links": {"next": None}})
            return httpx.Response(
                200,
                json={
                    "data": [{"id": "F1"}, {"id": "F2"}],
                    "links": {"next": f"{BASE_URL}/features?pageCursor=2"},
                },
            )

        async with _client(handler) as client:
            result = await client.fetch_collection("/features")

        self.assertEqual(result, Found([{"id": "F1"}, {"id": "F2"}, {"id": "F3"}]))
        self.assertEqual(len(seen), 2)
        self.assertEqual(seen[0].headers["Authorization"], "Bearer secret-token")
        self.assertEqual(seen[0].headers["X-Version"], "1")

    async def test_sub_features_query_by_parent_id(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"id": "F2"}], "links": {}})

        async with _client(handler) as client:
            result = await client.get_sub_features("F1")

        self.assertEqual(result, Found([{"id": "F2"}]))
        self.assertEqual(seen[0].url.path, "/features")
        self.assertEqual(seen[0].url.params["parent.id"], "F1")

    async def test_cursor_loop_stops_pagination(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                200, json={"data": [{"id": "C1"}], "links": {"next": f"{BASE_URL}/components"}}
            )

        async with _client(handler) as client:
            result = await client.fetch_collection(f"{BASE_URL}/components")

        self.assertIsInstance(result, Found)
        self.assertEqual(len(calls), 1)

    async def test_404_is_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"errors": []})

        async with _client(handler) as client:
            result = await client.get_components()

        self.assertIsInstance(result, NotFound)

    async def test_404_on_later_page_is_an_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageCursor"):
                return httpx.Response(404)
            return httpx.Response(
                200, json={"data": [{"id": "F1"}], "links": {"next": f"{BASE_URL}/features?pageCursor=x"}}
            )

        async with _client(handler) as client:
            result = await client.fetch_collection("/features")

        self.assertIsInstance(result, FetchError)

    async def test_server_error_is_fetch_error_without_retry(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async with _client(handler) as client:
            result = await client.get_component_features("C1")

        self.assertIsInstance(result, FetchError)
        self.assertIn("HTTP 500", result.error)
        self.assertEqual(len(calls), 1)

    async def test_rate_limit_is_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429, headers={"Retry-After": "1"})
            return httpx.Response(200, json={"data": [{"id": "I1"}]})

        async with _client(handler) as client:
            result = await client.get_initiatives()

        self.assertEqual(result, Found([{"id": "I1"}]))
        self.assertEqual(len(calls), 3)

    async def test_exhausted_retries_become_fetch_error(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        async with _client(handler, max_attempts=2) as client:
            result = await client.get_initiative_features("I1")

        self.assertIsInstance(result, FetchError)
        self.assertEqual(len(calls), 2)

    async def test_required_fetch_raises_on_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with _client(handler) as client:
            with self.assertRaises(FatalCollectionError) as ctx:
                await client.get_products("P404")

        self.assertIn("product P404", str(ctx.exception))

    async def test_single_entity_is_wrapped_in_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/products/P1")
            return httpx.Response(200, json={"data": {"id": "P1", "name": "Core"}})

        async with _client(handler) as client:
            result = await client.get_products("P1")

        self.assertEqual(result, Found([{"id": "P1", "name": "Core"}]))

    async def test_non_list_data_is_fetch_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"id": "oops"}})

        async with _client(handler) as client:
            result = await client.fetch_collection("/components")

        self.assertIsInstance(result, FetchError)


class MetricEndpointTests(unittest.TestCase):
    def test_entity_ids_are_collapsed(self) -> None:
        self.assertEqual(
            _metric_endpoint(f"{BASE_URL}/links/initiatives/I-42/features"),
            "/links/initiatives/{id}/features",
        )
        self.assertEqual(_metric_endpoint("/components/C1/features"), "/components/{id}/features")
        self.assertEqual(_metric_endpoint("/products"), "/products")


if __name__ == "__main__":
    unittest.main()
