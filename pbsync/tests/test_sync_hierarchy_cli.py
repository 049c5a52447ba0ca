import io
import json
import unittest
from contextlib import redirect_stdout
from unittest.mock import AsyncMock, patch

from pbsync.db.sync_engine import SyncOutcome
from pbsync.models import SyncResults
from pbsync.scripts import sync_hierarchy

WORKSPACE = "3f0c2f5e-5a55-4a0e-9d8f-2d2f1d0b7c11"


class _FakeEngine:
    def __init__(self, outcome: SyncOutcome) -> None:
        self.outcome = outcome
        self.requests = []

    async def run(self, request):
        self.requests.append(request)
        return self.outcome


class SyncHierarchyCliTests(unittest.TestCase):
    def _main(self, argv, outcome):
        engine = _FakeEngine(outcome)
        out = io.StringIO()
        with patch.object(sync_hierarchy.connection, "get_connection", AsyncMock(return_value=object())), \
                patch.object(sync_hierarchy.connection, "close_connection", AsyncMock()) as close, \
                patch.object(sync_hierarchy.migrations, "run_migrations", AsyncMock()), \
                patch.object(sync_hierarchy.sync_engine, "SyncEngine", return_value=engine), \
                redirect_stdout(out):
            code = sync_hierarchy.main(argv)
        close.assert_awaited_once()
        return code, engine, out.getvalue()

    def test_flags_map_to_request(self) -> None:
        args = sync_hierarchy.build_parser().parse_args(
            [
                "--workspace-id", WORKSPACE,
                "--api-key", "pb-token",
                "--product-id", "P1",
                "--no-components",
                "--max-depth", "3",
            ]
        )

        request = sync_hierarchy.build_request(args)

        self.assertEqual(str(request.workspace_id), WORKSPACE)
        self.assertEqual(request.product_id, "P1")
        self.assertFalse(request.include_components)
        self.assertTrue(request.include_features)
        self.assertEqual(request.max_depth, 3)

    def test_invalid_request_exits_2_without_running(self) -> None:
        out = io.StringIO()
        with patch.object(sync_hierarchy, "_run") as run, redirect_stdout(out):
            code = sync_hierarchy.main(["--workspace-id", "nope", "--api-key", "k", "--json"])

        self.assertEqual(code, sync_hierarchy.EXIT_INVALID)
        run.assert_not_called()
        self.assertEqual(json.loads(out.getvalue())["error"], "Invalid request")

    def test_completed_run_exits_0(self) -> None:
        outcome = SyncOutcome(success=True, run_id="run-1", results=SyncResults(products=1))

        code, engine, output = self._main(["--workspace-id", WORKSPACE, "--api-key", "k", "--json"], outcome)

        self.assertEqual(code, 0)
        self.assertEqual(engine.requests[0].api_key, "k")
        self.assertEqual(json.loads(output)["results"]["products"], 1)

    def test_failed_run_exits_1(self) -> None:
        outcome = SyncOutcome(success=False, run_id="run-2", error="boom", details="RuntimeError")

        code, _, output = self._main(["--workspace-id", WORKSPACE, "--api-key", "k"], outcome)

        self.assertEqual(code, sync_hierarchy.EXIT_FAILED)
        self.assertIn("run-2 failed: boom", output)


if __name__ == "__main__":
    unittest.main()
