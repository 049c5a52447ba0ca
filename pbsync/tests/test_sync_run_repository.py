import unittest

import aiosqlite

from pbsync.db.repositories.sync_runs import SqliteSyncRunRepository
from pbsync.db.sqlite_migrations import run_migrations


class SyncRunRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteSyncRunRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_create_starts_in_progress(self) -> None:
        run_id = await self.repo.create("ws-1", {"workspace_id": "ws-1", "max_depth": 5})

        run = await self.repo.get(run_id)
        self.assertEqual(run["status"], "in_progress")
        self.assertEqual(run["parameters"], {"workspace_id": "ws-1", "max_depth": 5})
        self.assertIsNone(run["completed_at"])

    async def test_finish_records_counts_and_stats(self) -> None:
        run_id = await self.repo.create("ws-1")

        finished = await self.repo.finish(
            run_id,
            "completed",
            {"products": 2, "initiatives": 3, "components": 4, "features": 5, "relationships": 6},
            None,
            {"error_count": 0},
        )

        self.assertTrue(finished)
        run = await self.repo.get(run_id)
        self.assertEqual(run["status"], "completed")
        self.assertEqual(
            (run["products_count"], run["initiatives_count"], run["components_count"],
             run["features_count"], run["relationships_count"]),
            (2, 3, 4, 5, 6),
        )
        self.assertEqual(run["stats"], {"error_count": 0})
        self.assertIsNotNone(run["completed_at"])

    async def test_finished_run_is_immutable(self) -> None:
        run_id = await self.repo.create("ws-1")
        await self.repo.finish(run_id, "failed", None, "Failed to fetch products: HTTP 500", None)

        self.assertFalse(await self.repo.finish(run_id, "completed", {"products": 9}))

        run = await self.repo.get(run_id)
        self.assertEqual(run["status"], "failed")
        self.assertEqual(run["error_message"], "Failed to fetch products: HTTP 500")
        self.assertEqual(run["products_count"], 0)

    async def test_finish_rejects_non_final_status(self) -> None:
        run_id = await self.repo.create("ws-1")
        with self.assertRaises(ValueError):
            await self.repo.finish(run_id, "in_progress")

    async def test_list_filters_by_workspace(self) -> None:
        first = await self.repo.create("ws-1")
        await self.repo.create("ws-2")
        second = await self.repo.create("ws-1")

        runs = await self.repo.list("ws-1")
        self.assertEqual({r["id"] for r in runs}, {first, second})
        self.assertEqual(len(await self.repo.list(None, limit=10)), 3)
        self.assertEqual(len(await self.repo.list("ws-1", limit=1)), 1)
        self.assertIsNone(await self.repo.get("missing"))


if __name__ == "__main__":
    unittest.main()
