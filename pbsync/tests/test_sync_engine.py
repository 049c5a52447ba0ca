import asyncio
import unittest
import uuid

import aiosqlite

from pbsync.db.sqlite_migrations import run_migrations
from pbsync.db.sync_engine import SyncEngine
from pbsync.errors import FatalCollectionError
from pbsync.models import SyncRequest
from pbsync.productboard.client import FetchError, Found, NotFound

WORKSPACE = str(uuid.UUID("3f0c2f5e-5a55-4a0e-9d8f-2d2f1d0b7c11"))


class _FakeClient:
    """Async-context-managed source serving a small fixed hierarchy."""

    def __init__(
        self, *, components=None, products=None, initiative_features=None, delay=0.0, products_error=None
    ):
        self.components = components if components is not None else Found([{"id": "C1", "name": "Checkout"}])
        self.products = products if products is not None else Found([{"id": "P1", "name": "Core"}])
        self.initiative_features = initiative_features
        self.delay = delay
        self.products_error = products_error
        self.closed = False
        self.api_keys: list[str] = []

    def __call__(self, api_key: str):
        self.api_keys.append(api_key)
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def get_products(self, product_id=None, *, required=True):
        if self.products_error is not None:
            raise self.products_error
        if required and not isinstance(self.products, Found):
            raise FatalCollectionError("products", "HTTP 500 for /products")
        return self.products

    async def get_initiatives(self, initiative_id=None, *, required=True):
        return Found([{"id": "I1", "name": "Growth"}])

    async def get_components(self, *, required=False):
        return self.components

    async def get_initiative_features(self, initiative_id, *, required=False):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.initiative_features is not None:
            return self.initiative_features
        return Found([{"id": "F1", "name": "Cart", "product": {"id": "P1"}}])

    async def get_component_features(self, component_id, *, required=False):
        return Found([{"id": "F1", "name": "Cart"}])

    async def get_sub_features(self, feature_id, *, required=False):
        if feature_id == "F1":
            return Found([{"id": "F2", "name": "Cart badge"}])
        return NotFound("HTTP 404")


class _FailingLinkRepository:
    def __init__(self, repo):
        self._repo = repo

    async def insert_links(self, table, rows):
        raise RuntimeError("disk I/O error")

    def __getattr__(self, name):
        return getattr(self._repo, name)


class _CompletionFailingRunRepository:
    """Fails to record a completed run but records failures normally."""

    def __init__(self, repo):
        self._repo = repo

    async def finish(self, run_id, status, counts=None, error=None, stats=None):
        if status == "completed":
            raise RuntimeError("database is locked")
        return await self._repo.finish(run_id, status, counts, error, stats)

    def __getattr__(self, name):
        return getattr(self._repo, name)


def _request(**overrides) -> SyncRequest:
    return SyncRequest(workspace_id=WORKSPACE, api_key="pb-token", **overrides)


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _engine(self, client: _FakeClient, **kwargs) -> SyncEngine:
        return SyncEngine(self.db, client_factory=client, **kwargs)

    async def test_successful_run_is_completed_with_counts(self) -> None:
        client = _FakeClient()
        engine = self._engine(client)

        outcome = await engine.run(_request())

        self.assertTrue(outcome.success)
        self.assertTrue(client.closed)
        self.assertEqual(client.api_keys, ["pb-token"])
        body = outcome.to_response()
        self.assertEqual(
            body["results"],
            {
                "products": 1,
                "initiatives": 1,
                "components": 1,
                "features": 2,
                "subFeatures": 1,
                "initiativeFeatures": 1,
                "componentFeatures": 1,
                "relationships": outcome.results.relationships,
            },
        )
        self.assertEqual(body["relationshipCounts"]["initiativeComponents"], 1)
        self.assertEqual(body["relationshipCounts"]["featureParents"], 1)
        self.assertEqual(body["stats"]["entities"]["features"]["inserted"], 2)

        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "completed")
        self.assertEqual(run["features_count"], 2)
        self.assertEqual(run["relationships_count"], outcome.results.relationships)
        self.assertNotIn("api_key", run["parameters"])
        self.assertEqual(run["parameters"]["workspace_id"], WORKSPACE)

    async def test_second_run_is_idempotent(self) -> None:
        engine = self._engine(_FakeClient())
        await engine.run(_request())

        outcome = await engine.run(_request())

        entities = outcome.stats["entities"]
        self.assertTrue(all(s["inserted"] == 0 and s["updated"] == 0 for s in entities.values()))
        self.assertEqual(outcome.stats["parent_links"]["unchanged"], 1)
        self.assertEqual(len(await engine.list_runs(WORKSPACE)), 2)

    async def test_missing_components_still_complete(self) -> None:
        engine = self._engine(_FakeClient(components=NotFound("HTTP 404 for /components")))

        outcome = await engine.run(_request())

        self.assertTrue(outcome.success)
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "completed")
        self.assertEqual(run["components_count"], 0)

    async def test_relation_failures_are_reported_not_fatal(self) -> None:
        engine = self._engine(_FakeClient(initiative_features=FetchError("HTTP 500")))

        outcome = await engine.run(_request())

        self.assertTrue(outcome.success)
        failures = outcome.stats["partial_failures"]
        self.assertEqual(failures[0]["entity_type"], "initiative")

    async def test_fatal_products_failure_marks_run_failed(self) -> None:
        engine = self._engine(_FakeClient(products=FetchError("HTTP 500 for /products")))

        outcome = await engine.run(_request())

        self.assertFalse(outcome.success)
        body = outcome.to_response()
        self.assertEqual(body["details"], "FatalCollectionError")
        self.assertIn("Failed to fetch products", body["error"])
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["products_count"], 0)
        self.assertIn("Failed to fetch products", run["error_message"])

    async def test_timeout_marks_run_failed(self) -> None:
        engine = self._engine(_FakeClient(delay=1.0), timeout_seconds=0.05)

        outcome = await engine.run(_request())

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.details, "SyncTimeoutError")
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "failed")
        self.assertIn("timeout", run["error_message"])

    async def test_inner_timeout_is_not_reported_as_run_timeout(self) -> None:
        client = _FakeClient(products_error=TimeoutError("pool acquire timed out"))
        engine = self._engine(client, timeout_seconds=60)

        outcome = await engine.run(_request())

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.details, "TimeoutError")
        self.assertEqual(outcome.error, "pool acquire timed out")
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "failed")
        self.assertNotIn("exceeded timeout", run["error_message"])

    async def test_unrecorded_completion_falls_back_to_failed(self) -> None:
        engine = self._engine(_FakeClient())
        engine.run_repo = _CompletionFailingRunRepository(engine.run_repo)

        outcome = await engine.run(_request())

        self.assertFalse(outcome.success)
        body = outcome.to_response()
        self.assertEqual(body["success"], False)
        self.assertEqual(body["details"], "RuntimeError")
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["error_message"], "database is locked")

    async def test_row_errors_complete_by_default(self) -> None:
        engine = self._engine(_FakeClient())
        engine.hierarchy_repo = _FailingLinkRepository(engine.hierarchy_repo)

        outcome = await engine.run(_request())

        self.assertTrue(outcome.success)
        self.assertGreater(outcome.stats["error_count"], 0)

    async def test_row_errors_fail_run_when_configured(self) -> None:
        engine = self._engine(_FakeClient(), fail_on_persist_errors=True)
        engine.hierarchy_repo = _FailingLinkRepository(engine.hierarchy_repo)

        outcome = await engine.run(_request())

        self.assertFalse(outcome.success)
        self.assertRegex(outcome.error, r"^\d+ row\(s\) failed to persist$")
        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["features_count"], 2)

    async def test_max_depth_is_recorded(self) -> None:
        engine = self._engine(_FakeClient())

        outcome = await engine.run(_request(max_depth=3, include_components=False))

        run = await engine.get_run(outcome.run_id)
        self.assertEqual(run["parameters"]["max_depth"], 3)
        self.assertFalse(run["parameters"]["include_components"])


if __name__ == "__main__":
    unittest.main()
