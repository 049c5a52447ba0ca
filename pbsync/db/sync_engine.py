"""ProductBoard → DB hierarchy sync engine.

One run is a strict sequence: collect entities from the source API,
derive the relationship graph, persist both, then close the run record.
The run record is opened before any work and always closed exactly once.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from pbsync import config
from pbsync.db.factory import get_hierarchy_repository, get_sync_run_repository
from pbsync.db.persistence import PersistenceEngine, PersistResult
from pbsync.errors import SyncTimeoutError
from pbsync.models import SyncRequest, SyncResults
from pbsync.observability import record_sync_run, start_span
from pbsync.productboard.client import ProductBoardClient
from pbsync.relationships import RelationshipMaps, build_relationships
from pbsync.services.collector import CollectedEntities, CollectionFilters, EntityCollector

logger = logging.getLogger("pbsync.sync")


@dataclass
class SyncOutcome:
    success: bool
    run_id: str | None
    results: SyncResults = field(default_factory=SyncResults)
    relationship_counts: dict[str, int] = field(default_factory=dict)
    stats: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    details: str | None = None

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "run_id": self.run_id,
                "results": self.results.model_dump(),
                "relationshipCounts": self.relationship_counts,
                "stats": self.stats,
            }
        body: dict[str, Any] = {"success": False, "run_id": self.run_id, "error": self.error}
        if self.details:
            body["details"] = self.details
        return body


@dataclass
class _RunProgress:
    collected: CollectedEntities | None = None
    relationships: RelationshipMaps | None = None
    persisted: PersistResult | None = None


def _filters(request: SyncRequest) -> CollectionFilters:
    return CollectionFilters(
        product_id=request.product_id,
        initiative_id=request.initiative_id,
        include_features=request.include_features,
        include_components=request.include_components,
        include_initiatives=request.include_initiatives,
        max_depth=request.max_depth,
    )


def _run_counts(progress: _RunProgress) -> dict[str, int]:
    collected = progress.collected
    if collected is None:
        return {}
    return {
        "products": len(collected.products),
        "initiatives": len(collected.initiatives),
        "components": len(collected.components),
        "features": len(collected.features),
        "relationships": progress.relationships.total() if progress.relationships else 0,
    }


def _results(progress: _RunProgress) -> SyncResults:
    collected = progress.collected
    if collected is None:
        return SyncResults()
    counts = collected.counts
    return SyncResults(
        products=counts.products,
        initiatives=counts.initiatives,
        components=counts.components,
        features=counts.features,
        subFeatures=counts.sub_features,
        initiativeFeatures=counts.initiative_features,
        componentFeatures=counts.component_features,
        relationships=progress.relationships.total() if progress.relationships else 0,
    )


def _stats(progress: _RunProgress) -> dict[str, Any]:
    stats: dict[str, Any] = progress.persisted.to_dict() if progress.persisted else {}
    if progress.collected is not None:
        stats["partial_failures"] = [asdict(f) for f in progress.collected.partial_failures]
    return stats


class SyncEngine:
    """Run ProductBoard hierarchy syncs and keep their history."""

    def __init__(
        self,
        db: Any,  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        *,
        client_factory: Callable[[str], Any] | None = None,
        concurrency: int | None = None,
        batch_size: int | None = None,
        timeout_seconds: float | None = None,
        fail_on_persist_errors: bool | None = None,
    ):
        self.db = db
        self.hierarchy_repo = get_hierarchy_repository(db)
        self.run_repo = get_sync_run_repository(db)
        self.client_factory = client_factory or ProductBoardClient
        self.concurrency = concurrency or config.COLLECT_CONCURRENCY
        self.batch_size = batch_size or config.PERSIST_BATCH_SIZE
        self.timeout_seconds = timeout_seconds or config.RUN_TIMEOUT_SECONDS
        self.fail_on_persist_errors = (
            config.FAIL_ON_PERSIST_ERRORS if fail_on_persist_errors is None else fail_on_persist_errors
        )

    async def run(self, request: SyncRequest) -> SyncOutcome:
        workspace_id = str(request.workspace_id)
        run_id = await self.run_repo.create(workspace_id, request.parameters())
        logger.info("Sync run %s started for workspace %s", run_id, workspace_id)

        t0 = time.monotonic()
        progress = _RunProgress()
        try:
            await asyncio.wait_for(self._execute(request, progress), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            # Only the run deadline becomes SyncTimeoutError; inner timeouts keep their own error.
            deadline_hit = time.monotonic() - t0 >= self.timeout_seconds
            cause = SyncTimeoutError(self.timeout_seconds) if deadline_hit else exc
            outcome = await self._fail(run_id, cause, progress)
        except Exception as exc:
            outcome = await self._fail(run_id, exc, progress)
        else:
            outcome = await self._complete(run_id, progress)

        elapsed = int((time.monotonic() - t0) * 1000)
        record_sync_run(
            "completed" if outcome.success else "failed", elapsed, workspace_id=workspace_id
        )
        logger.info(
            "Sync run %s finished status=%s in %sms",
            run_id, "completed" if outcome.success else "failed", elapsed,
        )
        return outcome

    async def _execute(self, request: SyncRequest, progress: _RunProgress) -> None:
        workspace_id = str(request.workspace_id)
        filters = _filters(request)

        with start_span("pbsync.collect", {"workspace_id": workspace_id}):
            async with self.client_factory(request.api_key) as client:
                collector = EntityCollector(client, concurrency=self.concurrency)
                progress.collected = await collector.collect(filters)
        collected = progress.collected

        with start_span("pbsync.relationships", {"workspace_id": workspace_id}):
            progress.relationships = build_relationships(
                collected.products, collected.initiatives, collected.components, collected.features
            )
        logger.info("Built %s relationship edges", progress.relationships.total())

        with start_span("pbsync.persist", {"workspace_id": workspace_id}):
            engine = PersistenceEngine(self.hierarchy_repo, batch_size=self.batch_size)
            progress.persisted = await engine.persist(
                workspace_id,
                collected.products,
                collected.initiatives,
                collected.components,
                collected.features,
                progress.relationships,
            )

    async def _complete(self, run_id: str, progress: _RunProgress) -> SyncOutcome:
        counts = _run_counts(progress)
        stats = _stats(progress)
        persisted = progress.persisted
        error_count = persisted.error_count if persisted else 0

        if error_count and self.fail_on_persist_errors:
            error = f"{error_count} row(s) failed to persist"
            logger.error("Sync run %s failed: %s", run_id, error)
            try:
                await self.run_repo.finish(run_id, "failed", counts, error, stats)
            except Exception as exc:
                logger.exception("Could not record failure of sync run %s", run_id)
                return await self._fail(run_id, exc, progress)
            return SyncOutcome(
                success=False,
                run_id=run_id,
                results=_results(progress),
                stats=stats,
                error=error,
                details="PersistenceError",
            )

        if error_count:
            logger.warning("Sync run %s completed with %s persistence error(s)", run_id, error_count)
        try:
            await self.run_repo.finish(run_id, "completed", counts, None, stats)
        except Exception as exc:
            logger.exception("Could not record completion of sync run %s", run_id)
            return await self._fail(run_id, exc, progress)
        return SyncOutcome(
            success=True,
            run_id=run_id,
            results=_results(progress),
            relationship_counts=progress.relationships.counts() if progress.relationships else {},
            stats=stats,
        )

    async def _fail(self, run_id: str, exc: BaseException, progress: _RunProgress) -> SyncOutcome:
        error = str(exc) or type(exc).__name__
        logger.error("Sync run %s failed: %s", run_id, error)
        try:
            await self.run_repo.finish(run_id, "failed", _run_counts(progress), error, _stats(progress))
        except Exception:
            logger.exception("Could not record failure of sync run %s", run_id)
        return SyncOutcome(
            success=False,
            run_id=run_id,
            results=_results(progress),
            error=error,
            details=type(exc).__name__,
        )

    async def list_runs(self, workspace_id: str | None = None, limit: int = 20) -> list[dict]:
        return await self.run_repo.list(workspace_id, limit)

    async def get_run(self, run_id: str) -> dict | None:
        return await self.run_repo.get(run_id)
