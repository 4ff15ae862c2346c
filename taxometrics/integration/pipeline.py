"""TAXOMETRICS — Integration Orchestrator.

Runs one (tenant, date) integration:
  load catalog → fetch sources (parallel) → match → combine → aggregate → persist

Every run returns an ``IntegrationResult``; nothing is raised past ``run``.
Runs for the same (tenant, date) are serialized; different keys run freely.
"""

import asyncio
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from taxometrics.config import settings
from taxometrics.connectors.base import CatalogLoader, MetricSources
from taxometrics.core.errors import (
    CatalogLoadError,
    IntegrationError,
    MatchingFailureError,
    PersistenceError,
    RunInProgressError,
    SourceUnavailableError,
)
from taxometrics.core.logging import get_logger
from taxometrics.integration.aggregator import HierarchicalAggregator
from taxometrics.integration.combiner import combine_by_entity
from taxometrics.integration.repository import MetricsRepository, SQLMetricsRepository
from taxometrics.matching.confidence import ConfidenceScorer
from taxometrics.matching.resolver import RecordResolver
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationResult,
    IntegrationStats,
    RunState,
    UnmatchedEntry,
)
from taxometrics.models.match_models import MatchedRecord, MatchResult
from taxometrics.models.raw_models import RawMetricRecord

logger = get_logger("integration.pipeline")

RunKey = Tuple[str, str]
# (record, best candidate, failure message)
_Outcome = Tuple[RawMetricRecord, Optional[MatchResult], Optional[str]]


def validate_date(d: Optional[str]) -> Optional[str]:
    """Return the date string if valid YYYY-MM-DD, else None."""
    if not d:
        return None
    try:
        datetime.strptime(d, "%Y-%m-%d")
        return d
    except ValueError:
        return None


def yesterday() -> str:
    return (datetime.now(timezone.utc).date() - timedelta(days=1)).strftime("%Y-%m-%d")


# ── Single-flight guard ──


class RunGuard:
    """One lock per (tenant, date), dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[RunKey, asyncio.Lock] = {}
        self._users: Dict[RunKey, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: RunKey, timeout: float):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            try:
                async with asyncio.timeout(timeout):
                    await lock.acquire()
            except TimeoutError as e:
                raise RunInProgressError(
                    f"run for tenant {key[0]} on {key[1]} still in progress after {timeout}s"
                ) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


# ── Run context ──


@dataclass
class _RunContext:
    tenant_id: str
    metrics_date: str
    state: RunState = RunState.LOADING_CATALOG
    stats: IntegrationStats = field(default_factory=IntegrationStats)
    errors: List[str] = field(default_factory=list)

    @property
    def log_extra(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "metrics_date": self.metrics_date,
            "run_state": self.state.value,
        }

    def advance(self, state: RunState) -> None:
        self.state = state
        logger.info(f"Run state: {state.value}", extra=self.log_extra)


def _match_chunk(
    resolver: RecordResolver, records: Sequence[RawMetricRecord]
) -> List[_Outcome]:
    """Worker body. One bad record never aborts its chunk."""
    try:
        matches = resolver.resolve_batch(records)
    except Exception as e:
        logger.warning(f"Batch matching failed, retrying {len(records)} records one by one: {e}")
    else:
        return [(record, match, None) for record, match in zip(records, matches)]

    outcomes: List[_Outcome] = []
    for record in records:
        try:
            outcomes.append((record, resolver.resolve(record), None))
        except Exception as e:
            failure = MatchingFailureError(record.source, record.identifier, str(e))
            logger.warning(
                str(failure),
                extra={"source": record.source, "identifier": record.identifier},
            )
            outcomes.append((record, None, str(failure)))
    return outcomes


class IntegrationOrchestrator:
    """Wires the matchers, combiner and aggregator to injected collaborators."""

    def __init__(
        self,
        catalog_loader: CatalogLoader,
        sources: MetricSources,
        repository: MetricsRepository,
        scorer: Optional[ConfidenceScorer] = None,
        max_workers: Optional[int] = None,
        chunk_size: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        guard: Optional[RunGuard] = None,
    ):
        self.catalog_loader = catalog_loader
        self.sources = sources
        self.repository = repository
        self.scorer = scorer or ConfidenceScorer()
        self.max_workers = max_workers or settings.match_workers
        self.chunk_size = chunk_size or settings.match_chunk_size
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else settings.run_lock_timeout_seconds
        )
        self.guard = guard or RunGuard()

    async def run(self, tenant_id: str, metrics_date: str) -> IntegrationResult:
        """Execute one run and report its outcome."""
        started = time.perf_counter()
        ctx = _RunContext(tenant_id=tenant_id, metrics_date=metrics_date)
        logger.info("Integration run starting", extra=ctx.log_extra)

        try:
            async with self.guard.hold((tenant_id, metrics_date), self.lock_timeout):
                await self._execute(ctx)
            ctx.advance(RunState.DONE)
        except IntegrationError as e:
            ctx.errors.append(str(e))
            ctx.advance(RunState.FAILED)
            logger.error(f"Integration run failed: {e}", extra=ctx.log_extra)
        except Exception as e:
            ctx.errors.append(f"unexpected error: {e}")
            ctx.advance(RunState.FAILED)
            logger.error(f"Integration run failed unexpectedly: {e}", extra=ctx.log_extra)

        duration_ms = int((time.perf_counter() - started) * 1000)
        result = IntegrationResult(
            success=ctx.state == RunState.DONE,
            tenant_id=tenant_id,
            metrics_date=metrics_date,
            state=ctx.state,
            stats=ctx.stats,
            errors=ctx.errors,
            duration_ms=duration_ms,
        )
        logger.info(
            f"Integration run finished: {ctx.stats.matched}/{ctx.stats.total_processed} matched, "
            f"{ctx.stats.aggregated} categories aggregated",
            extra={**ctx.log_extra, "duration_ms": duration_ms},
        )
        await self._save_run(result)
        return result

    async def _execute(self, ctx: _RunContext) -> None:
        # ── Step 1: Catalog ──
        ctx.advance(RunState.LOADING_CATALOG)
        try:
            nodes, products = await self.catalog_loader.load_catalog(ctx.tenant_id)
        except Exception as e:
            raise CatalogLoadError(f"catalog could not be loaded: {e}") from e
        if not nodes or not products:
            raise CatalogLoadError(
                f"tenant {ctx.tenant_id} has {len(nodes)} taxonomy nodes "
                f"and {len(products)} products"
            )
        mappings = await asyncio.to_thread(self.repository.load_mappings, ctx.tenant_id)

        # ── Step 2: Sources ──
        ctx.advance(RunState.FETCHING_SOURCES)
        records = await self._fetch_sources(ctx)

        # ── Step 3: Matching ──
        ctx.advance(RunState.MATCHING)
        resolver = RecordResolver.from_catalog(nodes, products, mappings, self.scorer)
        outcomes = await self._match_all(resolver, records)
        accepted, unmatched = self._split(ctx, outcomes)

        # ── Step 4: Combine ──
        ctx.advance(RunState.COMBINING)
        combined = combine_by_entity(
            ctx.tenant_id,
            ctx.metrics_date,
            accepted,
            {product.id: product.price for product in products},
        )

        # ── Step 5: Aggregate ──
        ctx.advance(RunState.AGGREGATING)
        aggregator = HierarchicalAggregator(
            nodes, products, resolver.category_matcher, self.scorer
        )
        aggregated = aggregator.aggregate(combined, ctx.tenant_id, ctx.metrics_date)
        ctx.stats.aggregated = len(aggregated)

        rows: Dict[Tuple[str, str], IntegratedMetric] = dict(combined)
        for node_id, row in aggregated.items():
            # The rollup already includes the node's own direct metrics
            rows[("node", node_id)] = row

        # ── Step 6: Persist ──
        ctx.advance(RunState.PERSISTING)
        await self._persist(ctx, list(rows.values()), list(unmatched.values()))

    async def _fetch_sources(self, ctx: _RunContext) -> List[RawMetricRecord]:
        fetches = {
            "gsc": self.sources.fetch_search_metrics(ctx.tenant_id, ctx.metrics_date),
            "ga4": self.sources.fetch_analytics_metrics(ctx.tenant_id, ctx.metrics_date),
            "market": self.sources.fetch_market_metrics(ctx.tenant_id, ctx.metrics_date),
        }
        results = await asyncio.gather(*fetches.values(), return_exceptions=True)

        records: List[RawMetricRecord] = []
        for source, result in zip(fetches, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                error = SourceUnavailableError(source, str(result) or type(result).__name__)
                ctx.errors.append(str(error))
                logger.warning(str(error), extra={**ctx.log_extra, "source": source})
                continue
            logger.info(
                f"Fetched {len(result)} {source} records",
                extra={**ctx.log_extra, "source": source},
            )
            records.extend(result)
        return records

    async def _match_all(
        self, resolver: RecordResolver, records: List[RawMetricRecord]
    ) -> List[_Outcome]:
        if not records:
            return []
        chunks = [
            records[i : i + self.chunk_size]
            for i in range(0, len(records), self.chunk_size)
        ]
        loop = asyncio.get_running_loop()
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="taxometrics-match"
        ) as executor:
            results = await asyncio.gather(
                *(loop.run_in_executor(executor, _match_chunk, resolver, chunk) for chunk in chunks)
            )
        return [outcome for chunk in results for outcome in chunk]

    def _split(
        self, ctx: _RunContext, outcomes: List[_Outcome]
    ) -> Tuple[Dict[str, List[MatchedRecord]], Dict[Tuple[str, str], UnmatchedEntry]]:
        accepted: Dict[str, List[MatchedRecord]] = defaultdict(list)
        unmatched: Dict[Tuple[str, str], UnmatchedEntry] = {}
        confidences: List[float] = []

        for record, match, failure in outcomes:
            if failure is None and self.scorer.accepts(match):
                accepted[record.source].append(MatchedRecord(record=record, match=match))
                confidences.append(match.confidence)
                continue
            if failure:
                reason = failure
            elif match is None:
                reason = "no candidate"
            else:
                reason = f"best candidate {match.strategy.value} below threshold"
            # One review-queue entry per identifier per run
            unmatched[(record.source, record.identifier)] = UnmatchedEntry(
                source=record.source,
                identifier=record.identifier,
                identifier_type=record.identifier_type,
                payload=record.model_dump(mode="json"),
                best_confidence=match.confidence if match else None,
                reason=reason,
            )

        ctx.stats.total_processed = len(outcomes)
        ctx.stats.matched = len(confidences)
        ctx.stats.unmatched = len(outcomes) - len(confidences)
        ctx.stats.avg_confidence = (
            round(sum(confidences) / len(confidences), 4) if confidences else 0.0
        )
        logger.info(
            f"Matched {ctx.stats.matched}/{ctx.stats.total_processed} records, "
            f"{len(unmatched)} identifiers sent to review",
            extra=ctx.log_extra,
        )
        return accepted, unmatched

    async def _persist(
        self,
        ctx: _RunContext,
        rows: List[IntegratedMetric],
        unmatched: List[UnmatchedEntry],
    ) -> None:
        # A started write is finished even if the caller stops waiting
        write = asyncio.ensure_future(
            asyncio.to_thread(
                self.repository.persist_run,
                ctx.tenant_id,
                ctx.metrics_date,
                rows,
                unmatched,
            )
        )
        try:
            await asyncio.shield(write)
        except PersistenceError:
            raise
        except asyncio.CancelledError:
            await write
            raise
        except Exception as e:
            raise PersistenceError(f"Batched write failed: {e}") from e

    async def _save_run(self, result: IntegrationResult) -> None:
        try:
            await asyncio.to_thread(self.repository.save_run, result)
        except Exception as e:
            logger.warning(
                f"Run history not stored: {e}",
                extra={"tenant_id": result.tenant_id, "metrics_date": result.metrics_date},
            )


# ── Factory ──

_shared_guard = RunGuard()


def build_sources(engine: Engine) -> MetricSources:
    if settings.source_mode == "google":
        from taxometrics.connectors.google.sources import GoogleMetricSources

        return GoogleMetricSources()
    from taxometrics.connectors.stored import StoredMetricSources

    return StoredMetricSources(engine)


def build_orchestrator(
    engine: Optional[Engine] = None, sources: Optional[MetricSources] = None
) -> IntegrationOrchestrator:
    """Orchestrator wired to the configured database and sources."""
    from taxometrics.connectors.stored import DatabaseCatalogLoader

    if engine is None:
        from taxometrics.database import engine
    return IntegrationOrchestrator(
        catalog_loader=DatabaseCatalogLoader(engine),
        sources=sources or build_sources(engine),
        repository=SQLMetricsRepository(engine),
        guard=_shared_guard,
    )


async def run_integration(
    tenant_id: str, metrics_date: Optional[str] = None, engine: Optional[Engine] = None
) -> IntegrationResult:
    """Run one integration with configured collaborators; defaults to yesterday."""
    metrics_date = validate_date(metrics_date) or yesterday()
    orchestrator = build_orchestrator(engine)
    try:
        return await orchestrator.run(tenant_id, metrics_date)
    finally:
        await orchestrator.sources.close()
