from __future__ import annotations

import threading

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from taxometrics.core.errors import PersistenceError
from taxometrics.integration.repository import SQLMetricsRepository
from taxometrics.integration.review import (
    ReviewError,
    integration_status,
    list_runs,
    list_unmatched,
    resolve_unmatched,
)
from taxometrics.models.integrated_models import (
    IntegratedMetric,
    IntegrationResult,
    IntegrationStats,
    MetricMapping,
    RunState,
    UnmatchedEntry,
    UnmatchedMetric,
)

DATE = "2026-03-01"


def _row(entity_id: str, clicks: int, entity_type: str = "product") -> IntegratedMetric:
    return IntegratedMetric(
        tenant_id="acme",
        metrics_date=DATE,
        entity_type=entity_type,
        entity_id=entity_id,
        gsc_clicks=clicks,
        gsc_match_confidence=1.0,
    )


def _count(engine, model) -> int:
    with Session(engine) as session:
        return len(session.exec(select(model)).all())


def test_upsert_overwrites_instead_of_duplicating(engine):
    repo = SQLMetricsRepository(engine)
    assert repo.upsert_integrated_metrics("acme", DATE, [_row("p1", 5), _row("n1", 9, "node")]) == 2
    repo.upsert_integrated_metrics("acme", DATE, [_row("p1", 7)])

    with Session(engine) as session:
        rows = session.exec(select(IntegratedMetric).order_by(IntegratedMetric.entity_id)).all()
    assert len(rows) == 2
    assert {r.entity_id: r.gsc_clicks for r in rows} == {"n1": 9, "p1": 7}


def test_record_unmatched_increments_attempts(engine):
    repo = SQLMetricsRepository(engine)
    first = repo.record_unmatched("acme", "market", "012345678905", "gtin", {"gtin": "012345678905"})
    second = repo.record_unmatched("acme", "market", "012345678905", "gtin", {"gtin": "012345678905"})
    other_tenant = repo.record_unmatched("globex", "market", "012345678905", "gtin", {})

    assert first.match_attempts == 1
    assert second.match_attempts == 2
    assert other_tenant.match_attempts == 1
    assert _count(engine, UnmatchedMetric) == 2


def test_persist_run_writes_rows_and_unmatched_together(engine):
    repo = SQLMetricsRepository(engine)
    unmatched = [
        UnmatchedEntry(source="gsc", identifier="/blog/post", identifier_type="url", best_confidence=None),
        UnmatchedEntry(source="market", identifier="012345678905", identifier_type="gtin"),
    ]
    repo.persist_run("acme", DATE, [_row("p1", 5)], unmatched)
    repo.persist_run("acme", DATE, [_row("p1", 6)], unmatched)

    assert _count(engine, IntegratedMetric) == 1
    with Session(engine) as session:
        attempts = {u.identifier: u.match_attempts for u in session.exec(select(UnmatchedMetric)).all()}
    assert attempts == {"/blog/post": 2, "012345678905": 2}


def test_concurrent_runs_for_different_dates_share_one_unmatched_row(engine):
    repo = SQLMetricsRepository(engine)
    entry = UnmatchedEntry(source="market", identifier="012345678905", identifier_type="gtin")
    start = threading.Barrier(2)
    errors = []

    def run(metrics_date):
        start.wait()
        try:
            repo.persist_run("acme", metrics_date, [], [entry])
        except PersistenceError as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(d,)) for d in (DATE, "2026-03-02")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with Session(engine) as session:
        row = session.exec(select(UnmatchedMetric)).one()
    assert row.match_attempts == 2


def test_resolved_identifier_reopens_when_seen_again(engine):
    repo = SQLMetricsRepository(engine)
    row = repo.record_unmatched("acme", "gsc", "/outlet/parkas", "url", {})
    with Session(engine) as session:
        stored = session.get(UnmatchedMetric, row.id)
        stored.resolved = True
        session.add(stored)
        session.commit()

    again = repo.record_unmatched("acme", "gsc", "/outlet/parkas", "url", {"clicks": 2})
    assert again.id == row.id
    assert again.resolved is False
    assert again.match_attempts == 2
    assert again.payload == {"clicks": 2}


def test_failed_persist_rolls_back_everything(engine, monkeypatch):
    repo = SQLMetricsRepository(engine)

    def broken(session, tenant_id, entries):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(SQLMetricsRepository, "_record_unmatched", staticmethod(broken))
    with pytest.raises(PersistenceError):
        repo.persist_run(
            "acme",
            DATE,
            [_row("p1", 5)],
            [UnmatchedEntry(source="gsc", identifier="/x", identifier_type="url")],
        )
    assert _count(engine, IntegratedMetric) == 0


def test_load_mappings_returns_only_active_for_tenant(engine):
    with Session(engine) as session:
        session.add(MetricMapping(tenant_id="acme", source_identifier="/old", source_type="url", entity_type="node", entity_id="n1"))
        session.add(MetricMapping(tenant_id="acme", source_identifier="/gone", source_type="url", entity_type="node", entity_id="n2", active=False))
        session.add(MetricMapping(tenant_id="globex", source_identifier="/old", source_type="url", entity_type="node", entity_id="n3"))
        session.commit()

    mappings = SQLMetricsRepository(engine).load_mappings("acme")
    assert [m.entity_id for m in mappings] == ["n1"]


def test_run_history_and_status(engine):
    repo = SQLMetricsRepository(engine)
    repo.persist_run(
        "acme",
        DATE,
        [_row("p1", 5), _row("n1", 5, "node")],
        [UnmatchedEntry(source="gsc", identifier="/blog/post", identifier_type="url")],
    )
    repo.save_run(
        IntegrationResult(
            success=True,
            tenant_id="acme",
            metrics_date=DATE,
            state=RunState.DONE,
            stats=IntegrationStats(total_processed=3, matched=2, unmatched=1, avg_confidence=0.95),
        )
    )

    with Session(engine) as session:
        runs = list_runs(session, "acme")
        status = integration_status(session, "acme")

    assert len(runs) == 1
    assert runs[0]["result"]["stats"]["matched"] == 2
    assert status["last_run"]["success"] is True
    assert status["last_run"]["confidence_level"] == "high"
    assert status["integrated_rows"] == {"direct": 2}
    assert status["unmatched"]["by_source"] == {"gsc": 1}
    assert status["unmatched"]["top"][0]["identifier"] == "/blog/post"
    assert status["unmatched"]["top"][0]["recommended_action"] == "reject"


def test_status_without_runs(engine):
    with Session(engine) as session:
        status = integration_status(session, "acme")
    assert status["last_run"] is None
    assert status["unmatched"]["total"] == 0


def test_resolve_unmatched_creates_mapping(engine, nodes):
    repo = SQLMetricsRepository(engine)
    row = repo.record_unmatched("acme", "gsc", "/outlet/parkas", "url", {})
    with Session(engine) as session:
        for node in nodes:
            session.add(node)
        session.commit()

    with Session(engine) as session:
        mapping = resolve_unmatched(session, row.id, "node", "n-winter", confidence=90)
        assert mapping.confidence == pytest.approx(0.9)
        assert list_unmatched(session, "acme") == []
        assert len(list_unmatched(session, "acme", include_resolved=True)) == 1

    assert [m.entity_id for m in repo.load_mappings("acme")] == ["n-winter"]


def test_resolve_unmatched_rejects_unknown_targets(engine):
    row = SQLMetricsRepository(engine).record_unmatched("acme", "gsc", "/x", "url", {})
    with Session(engine) as session:
        with pytest.raises(ReviewError):
            resolve_unmatched(session, row.id, "node", "missing")
        with pytest.raises(ReviewError):
            resolve_unmatched(session, 9999, "node", "n-winter")
        with pytest.raises(ReviewError):
            resolve_unmatched(session, row.id, "brand", "n-winter")
