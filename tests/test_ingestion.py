"""Tests for services.capture.ingestion."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from services.capture.errors import NoDocumentDetected, UnknownDocument
from services.capture.ingestion import IngestionCoordinator
from services.capture.models import DocProperties, IngestState, LinkOutcome, Verdict


def test_invoice_scenario(coordinator, make_page, photograph):
    invoice = make_page(100)
    unrelated = make_page(200)

    first = coordinator.ingest_sync(photograph(invoice))
    assert first.verdict is Verdict.CREATED
    d1 = first.document_id

    second = coordinator.ingest_sync(photograph(invoice, angle_deg=6.0, keystone=0.04, brightness=0.9))
    assert second.verdict is Verdict.MATCHED
    assert second.document_id == d1
    assert second.match.confidence > 0.8

    third = coordinator.ingest_sync(photograph(unrelated))
    assert third.verdict is Verdict.CREATED
    d2 = third.document_id
    assert d2 != d1

    assert coordinator.create_link(d1, d2) is True
    assert [e.other(d1) for e in coordinator.list_links(d1)] == [d2]
    assert [e.other(d2) for e in coordinator.list_links(d2)] == [d1]

    assert coordinator.remove_link(d1, d2) is True
    assert coordinator.list_links(d1) == []
    assert coordinator.list_links(d2) == []


def test_reingesting_identical_capture_matches(coordinator, make_page, photograph):
    capture = photograph(make_page(101))
    first = coordinator.ingest_sync(capture)
    again = coordinator.ingest_sync(capture)

    assert again.verdict is Verdict.MATCHED
    assert again.document_id == first.document_id
    assert len(coordinator.store) == 1


def test_no_document_creates_nothing(coordinator, blank_capture, small_square_capture):
    transitions = []
    coordinator.listener = lambda capture_id, state, detail: transitions.append((state, detail))

    for capture in (blank_capture, small_square_capture):
        with pytest.raises(NoDocumentDetected):
            coordinator.ingest_sync(capture)

    assert len(coordinator.store) == 0
    assert (IngestState.FAILED, "no_document_detected") in transitions


def test_trace_follows_state_machine(coordinator, make_page, photograph):
    created = coordinator.ingest_sync(photograph(make_page(102)))
    assert created.trace == [
        IngestState.RECEIVED,
        IngestState.RECTIFYING,
        IngestState.FINGERPRINTING,
        IngestState.MATCHING,
        IngestState.CREATING,
        IngestState.LINK_CHECK,
        IngestState.DONE,
    ]

    matched = coordinator.ingest_sync(photograph(make_page(102)))
    assert IngestState.UPDATING in matched.trace
    assert IngestState.CREATING not in matched.trace


def test_match_refreshes_image(coordinator, make_page, photograph):
    first = coordinator.ingest_sync(photograph(make_page(103)))
    before = coordinator.get_document(first.document_id)

    second = coordinator.ingest_sync(photograph(make_page(103), angle_deg=-4.0))
    after = coordinator.get_document(first.document_id)

    assert second.verdict is Verdict.MATCHED
    assert after.image is second.rectified
    assert after.created_at == before.created_at


def test_new_document_gets_default_author(coordinator, make_page, photograph):
    result = coordinator.ingest_sync(
        photograph(make_page(104)),
        properties=DocProperties(label="Invoice-1"),
    )
    props = coordinator.get_document(result.document_id).properties

    assert props.label == "Invoice-1"
    assert props.author == coordinator.settings.default_author


def test_matched_capture_merges_properties(coordinator, make_page, photograph):
    first = coordinator.ingest_sync(
        photograph(make_page(105)),
        properties=DocProperties(label="keep", description="old"),
    )
    coordinator.ingest_sync(photograph(make_page(105)), properties=DocProperties(description="new"))

    props = coordinator.get_document(first.document_id).properties
    assert props.label == "keep"
    assert props.description == "new"


def test_link_hint_links_new_document(coordinator, make_page, photograph):
    anchor = coordinator.ingest_sync(photograph(make_page(106)))
    result = coordinator.ingest_sync(photograph(make_page(107)), link_hint=anchor.document_id)

    assert result.link_outcome is LinkOutcome.LINKED
    assert result.warnings == []
    assert set(coordinator.links.neighbors(anchor.document_id)) == {result.document_id}


def test_repeated_link_hint_is_already_linked(coordinator, make_page, photograph):
    anchor = coordinator.ingest_sync(photograph(make_page(108)))
    coordinator.ingest_sync(photograph(make_page(109)), link_hint=anchor.document_id)
    again = coordinator.ingest_sync(photograph(make_page(109)), link_hint=anchor.document_id)

    assert again.verdict is Verdict.MATCHED
    assert again.link_outcome is LinkOutcome.ALREADY_LINKED
    assert coordinator.links.edge_count() == 1


def test_unknown_link_hint_degrades_to_warning(coordinator, make_page, photograph):
    result = coordinator.ingest_sync(photograph(make_page(110)), link_hint="stale-id")

    assert result.verdict is Verdict.CREATED
    assert result.link_outcome is LinkOutcome.REJECTED
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("unknown_document")
    assert coordinator.store.exists(result.document_id)


def test_self_link_hint_degrades_to_warning(coordinator, make_page, photograph):
    first = coordinator.ingest_sync(photograph(make_page(111)))
    again = coordinator.ingest_sync(photograph(make_page(111)), link_hint=first.document_id)

    assert again.document_id == first.document_id
    assert again.link_outcome is LinkOutcome.REJECTED
    assert again.warnings[0].startswith("self_link_rejected")
    assert coordinator.links.edge_count() == 0


def test_concurrent_ingest_of_distinct_documents(coordinator, make_page, photograph):
    captures = [photograph(make_page(seed)) for seed in (120, 121, 122, 123)]

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(coordinator.ingest_sync, captures))

    assert all(r.verdict is Verdict.CREATED for r in results)
    assert len({r.document_id for r in results}) == 4
    assert len(coordinator.store) == 4


def test_async_ingest(coordinator, make_page, photograph):
    async def run():
        return await asyncio.gather(
            coordinator.ingest(photograph(make_page(130))),
            coordinator.ingest(photograph(make_page(131))),
        )

    first, second = asyncio.run(run())
    assert first.document_id != second.document_id
    assert {first.verdict, second.verdict} == {Verdict.CREATED}


def test_match_does_not_write(coordinator, make_page, photograph):
    stored = coordinator.ingest_sync(photograph(make_page(140)))

    _rectified, hit = coordinator.match_sync(photograph(make_page(140), angle_deg=3.0))
    _rectified, miss = coordinator.match_sync(photograph(make_page(141)))

    assert hit.matched and hit.document_id == stored.document_id
    assert not miss.matched
    assert len(coordinator.store) == 1


def test_list_links_unknown_document(coordinator):
    with pytest.raises(UnknownDocument):
        coordinator.list_links("missing")


def test_listener_failure_does_not_break_ingest(coordinator, make_page, photograph):
    def broken(capture_id, state, detail):
        raise RuntimeError("listener down")

    coordinator.listener = broken
    result = coordinator.ingest_sync(photograph(make_page(150)))
    assert result.verdict is Verdict.CREATED


def test_documents_persist_across_coordinators(settings, make_page, photograph):
    first = IngestionCoordinator(settings)
    created = first.ingest_sync(photograph(make_page(160)))

    second = IngestionCoordinator(settings)
    again = second.ingest_sync(photograph(make_page(160), angle_deg=5.0))

    assert again.verdict is Verdict.MATCHED
    assert again.document_id == created.document_id


def test_corpus_of_distinct_pages_all_created(coordinator, make_page, photograph):
    results = [coordinator.ingest_sync(photograph(make_page(seed))) for seed in range(300, 340)]

    false_matches = [(r.document_id, r.match.distance) for r in results if r.verdict is not Verdict.CREATED]
    assert false_matches == []
    assert len(coordinator.store) == 40


class ExplodingCorrector:
    def rectify(self, capture, background=None):
        raise ValueError("Degenerate quadrilateral")


def test_unexpected_error_reaches_failed_state(settings, make_page, photograph):
    transitions = []
    coordinator = IngestionCoordinator(
        settings,
        corrector=ExplodingCorrector(),
        listener=lambda capture_id, state, detail: transitions.append((state, detail)),
    )

    with pytest.raises(ValueError):
        coordinator.ingest_sync(photograph(make_page(170)))
    with pytest.raises(ValueError):
        coordinator.match_sync(photograph(make_page(170)))

    assert transitions.count((IngestState.FAILED, "ValueError")) == 2
    assert len(coordinator.store) == 0


def test_store_failure_reaches_failed_state(coordinator, make_page, photograph, monkeypatch):
    transitions = []
    coordinator.listener = lambda capture_id, state, detail: transitions.append(state)

    def broken_create(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(coordinator.store, "create", broken_create)

    with pytest.raises(OSError):
        coordinator.ingest_sync(photograph(make_page(171)))
    assert transitions[-1] is IngestState.FAILED
    assert IngestState.DONE not in transitions


def test_matched_capture_with_properties_is_one_write(coordinator, make_page, photograph, monkeypatch):
    first = coordinator.ingest_sync(photograph(make_page(172)), properties=DocProperties(label="keep"))
    writes = []
    original_write = coordinator.store._write

    def counting_write(record, *, image_changed):
        writes.append((record.properties.description, image_changed))
        original_write(record, image_changed=image_changed)

    monkeypatch.setattr(coordinator.store, "_write", counting_write)

    again = coordinator.ingest_sync(photograph(make_page(172)), properties=DocProperties(description="new"))

    assert again.document_id == first.document_id
    assert writes == [("new", True)]
    record = coordinator.get_document(first.document_id)
    assert record.image is again.rectified
    assert record.properties.label == "keep"
    assert record.properties.description == "new"
