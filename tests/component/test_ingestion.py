"""L2 Component Tests: ingestion agent (importance gate, chunking, embedding, index outages)."""

import pytest

from tests.fixtures.seeds import axis
from tiermem.core.errors import IndexUnavailable, ProviderError, ValidationError
from tiermem.memory.types import ChunkStatus, ContentType, RawEvent
from tiermem.scheduler.jobs import JOB_ATTACH, JOB_INGEST
from tiermem.scheduler.queue import JobStatus


def event(text, **kwargs):
    return RawEvent(user_id="u1", content=text, session_id="s1", **kwargs)


def paragraphs(n, size=15):
    return "\n\n".join(" ".join(f"p{p}w{i}" for i in range(size)) for p in range(n))


class TestImportanceGate:
    async def test_important_event_is_chunked_and_indexed(self, manager, mock_provider, vector_index):
        mock_provider.set_vector("I start my new job on Monday", axis(0))
        result = await manager.ingest_now(event("I start my new job on Monday"))

        assert result.status == "ingested"
        assert result.importance == 0.8
        assert result.processed == 1
        chunk = manager.storage.get_chunk(result.chunk_ids[0])
        assert chunk.status == ChunkStatus.PROCESSED
        assert chunk.embedding == axis(0)
        assert chunk.session_id == "s1"
        assert vector_index.ids("ChunkEmbedding") == {chunk.id}
        props = vector_index.records["ChunkEmbedding"][chunk.id][1]
        assert props["user_id"] == "u1"
        assert props["importance"] == 0.8

    async def test_attach_job_per_processed_chunk(self, manager):
        result = await manager.ingest_now(event("I start my new job on Monday"))
        jobs = manager.queue.list_jobs(name=JOB_ATTACH)
        assert [j.payload["chunk_id"] for j in jobs] == result.chunk_ids

    async def test_below_threshold_creates_nothing(self, manager, mock_provider):
        mock_provider.set_response("importance", "0.1")
        result = await manager.ingest_now(event("ok thanks"))
        assert result.status == "below_threshold"
        assert manager.storage.get_chunks_for_event(result.event_id) == []
        assert mock_provider.embed_calls == []
        assert manager.queue.list_jobs(name=JOB_ATTACH) == []

    async def test_force_important_bypasses_gate(self, manager, mock_provider):
        mock_provider.set_response("importance", "0.0")
        result = await manager.ingest_now(event("remember this", force_important=True))
        assert result.status == "ingested"
        assert result.importance == 1.0
        assert mock_provider.calls_of("importance") == []

    async def test_unknown_score_uses_default(self, manager, mock_provider):
        mock_provider.set_response("importance", "no idea")
        result = await manager.ingest_now(event("something happened"))
        assert result.status == "ingested"
        assert result.importance == 0.5

    async def test_unknown_score_heuristic_fallback(self, manager_factory, mock_provider):
        mgr = manager_factory(importance_fallback="heuristic")
        mock_provider.fail("importance")
        result = await mgr.ingest_now(event("remember the dentist"))
        assert result.importance == pytest.approx(0.6)

    async def test_empty_content(self, manager, mock_provider):
        result = await manager.ingest_now(event("   "))
        assert result.status == "empty"
        assert mock_provider.total_calls == 0

    async def test_content_type_reaches_prompt(self, manager, mock_provider):
        await manager.ingest_now(event("scan.pdf", content_type=ContentType.UPLOADED_FILE_EVENT))
        assert "uploaded_file_event" in mock_provider.calls_of("importance")[0]


class TestEmbedding:
    async def test_one_batched_call_per_event(self, manager, mock_provider):
        result = await manager.ingest_now(event(paragraphs(3)))
        assert len(result.chunk_ids) == 3
        assert len(mock_provider.embed_calls) == 1
        assert len(mock_provider.embed_calls[0]) == 3

    async def test_chunks_keep_order_and_token_counts(self, manager):
        result = await manager.ingest_now(event(paragraphs(3)))
        chunks = manager.storage.get_chunks_for_event(result.event_id)
        assert [c.index for c in chunks] == [0, 1, 2]
        assert all(c.token_count == 15 for c in chunks)
        assert "".join(c.text for c in chunks) == paragraphs(3)

    async def test_blank_fragments_fold_into_neighbours(self, manager, monkeypatch):
        content = "\n  first part\n   \n\nsecond part"
        fragments = ["\n  ", "first part\n", "   \n\n", "second part"]
        monkeypatch.setattr(manager.chunker, "split", lambda text: list(fragments))

        result = await manager.ingest_now(event(content))

        chunks = manager.storage.get_chunks_for_event(result.event_id)
        assert [c.text for c in chunks] == ["\n  first part\n   \n\n", "second part"]
        assert "".join(c.text for c in chunks) == content
        assert result.processed == 2

    async def test_partial_embeddings(self, manager, mock_provider):
        mock_provider.embed_limit = 2
        result = await manager.ingest_now(event(paragraphs(3)))
        assert result.processed == 2
        assert result.errored == 1
        statuses = [c.status for c in manager.storage.get_chunks_for_event(result.event_id)]
        assert statuses == [ChunkStatus.PROCESSED, ChunkStatus.PROCESSED, ChunkStatus.ERROR]
        assert len(manager.queue.list_jobs(name=JOB_ATTACH)) == 2

    async def test_wrong_dimension_is_error(self, manager, mock_provider):
        mock_provider.set_vector("short vector text", [1.0, 0.0, 0.0])
        result = await manager.ingest_now(event("short vector text"))
        assert result.errored == 1
        assert result.processed == 0
        chunk = manager.storage.get_chunk(result.chunk_ids[0])
        assert chunk.status == ChunkStatus.ERROR

    async def test_redelivery_is_idempotent(self, manager, mock_provider):
        ev = event(paragraphs(2))
        first = await manager.ingest_now(ev)
        second = await manager.ingest_now(ev)
        assert second.chunk_ids == first.chunk_ids
        assert len(manager.storage.get_chunks_for_event(ev.id)) == 2
        assert len(mock_provider.embed_calls) == 1
        assert len(mock_provider.calls_of("importance")) == 1

    async def test_embed_failure_propagates(self, manager, mock_provider):
        mock_provider.embed_error = ProviderError("provider down")
        ev = event("I start my new job on Monday")
        with pytest.raises(ProviderError):
            await manager.ingest_now(ev)
        chunks = manager.storage.get_chunks_for_event(ev.id)
        assert [c.status for c in chunks] == [ChunkStatus.PENDING]

        # retry resumes the same pending chunks
        mock_provider.embed_error = None
        result = await manager.ingest_now(ev)
        assert result.chunk_ids == [chunks[0].id]
        assert result.processed == 1


class TestIndexOutage:
    async def test_pending_index_then_reconcile(self, manager, vector_index):
        vector_index.available = False
        result = await manager.ingest_now(event(paragraphs(2)))
        assert result.pending_index == 2
        chunks = manager.storage.get_chunks_for_event(result.event_id)
        assert all(c.status == ChunkStatus.PENDING_INDEX for c in chunks)
        assert all(c.embedding for c in chunks)
        assert manager.queue.list_jobs(name=JOB_ATTACH) == []

        report = await manager.reconcile()
        assert report.chunks == 0

        vector_index.available = True
        report = await manager.reconcile()
        assert report.chunks == 2
        chunks = manager.storage.get_chunks_for_event(result.event_id)
        assert all(c.status == ChunkStatus.PROCESSED for c in chunks)
        assert vector_index.ids("ChunkEmbedding") == {c.id for c in chunks}
        assert len(manager.queue.list_jobs(name=JOB_ATTACH)) == 2

    async def test_index_down_at_startup_then_reconcile(self, manager_factory, vector_index):
        vector_index.available = False
        mgr = manager_factory()
        ack = await mgr.ingest("u1", paragraphs(2), session_id="s1")
        await mgr.run_pending()

        assert mgr.queue.get_job(ack.job_id).status == JobStatus.COMPLETED
        chunks = mgr.storage.get_chunks_for_event(ack.event_id)
        assert [c.status for c in chunks] == [ChunkStatus.PENDING_INDEX] * 2

        vector_index.available = True
        report = await mgr.reconcile()
        assert report.chunks == 2
        chunks = mgr.storage.get_chunks_for_event(ack.event_id)
        assert [c.status for c in chunks] == [ChunkStatus.PROCESSED] * 2
        assert vector_index.ids("ChunkEmbedding") == {c.id for c in chunks}

        await mgr.run_pending()
        attach_jobs = mgr.queue.list_jobs(name=JOB_ATTACH)
        assert [j.status for j in attach_jobs] == [JobStatus.COMPLETED] * 2

    async def test_ingest_now_before_schema_declared(self, manager_factory, vector_index):
        vector_index.available = False
        mgr = manager_factory()
        result = await mgr.ingest_now(event("I start my new job on Monday"))
        assert result.pending_index == 1
        assert result.errored == 0

    async def test_class_declared_during_outage_reports_unavailable(self, vector_index):
        vector_index.available = False
        with pytest.raises(IndexUnavailable):
            vector_index.declare_class("ChunkEmbedding", 4)
        vector_index.available = True
        with pytest.raises(IndexUnavailable):
            vector_index.upsert("ChunkEmbedding", "c1", axis(0), {})
        with pytest.raises(ValidationError):
            vector_index.upsert("ThoughtEmbedding", "t1", axis(0), {})


class TestQueuedIngestion:
    async def test_ingest_ack_and_job(self, manager):
        ack = await manager.ingest("u1", "I start my new job on Monday", session_id="s1")
        assert ack.accepted
        job = manager.queue.get_job(ack.job_id)
        assert job.name == JOB_INGEST
        assert job.payload == {"event_id": ack.event_id}

        await manager.run_pending()
        assert manager.queue.get_job(ack.job_id).status == JobStatus.COMPLETED
        chunks = manager.storage.get_chunks_for_event(ack.event_id)
        assert [c.status for c in chunks] == [ChunkStatus.PROCESSED]

    async def test_empty_event_not_accepted(self, manager):
        ack = await manager.ingest("u1", "  ")
        assert not ack.accepted
        assert manager.queue.counts() == {}

    async def test_ingest_never_raises(self, manager):
        manager.storage.close()
        ack = await manager.ingest("u1", "hello there")
        assert not ack.accepted

    async def test_retries_exhausted_marks_chunks_error(self, manager, mock_provider):
        mock_provider.embed_error = ProviderError("provider down")
        ack = await manager.ingest("u1", "I start my new job on Monday")
        await manager.run_pending()

        job = manager.queue.get_job(ack.job_id)
        assert job.status == JobStatus.DEAD
        assert job.attempts == 3
        assert len(mock_provider.embed_calls) == 3
        chunks = manager.storage.get_chunks_for_event(ack.event_id)
        assert [c.status for c in chunks] == [ChunkStatus.ERROR]

    async def test_non_retryable_error_dies_once(self, manager, mock_provider):
        mock_provider.embed_error = ProviderError("bad request", retryable=False)
        ack = await manager.ingest("u1", "I start my new job on Monday")
        await manager.run_pending()
        assert manager.queue.get_job(ack.job_id).status == JobStatus.DEAD
        assert len(mock_provider.embed_calls) == 1
