"""L2 Component Tests: three-tier retrieval, degradation and result merging."""

import sqlite3

import pytest

from tests.fixtures.seeds import axis, blend, seed_chunk, seed_episode, whitespace_counter
from tiermem.core.errors import ProviderError
from tiermem.memory.retrieval import format_memory_context
from tiermem.memory.types import ChunkEpisodeLink, RetrievedMemory, Tier

QUERY = "where did we go hiking"


@pytest.fixture
def seeded(manager, mock_provider, vector_index):
    """
    Query vector is axis(0).

    episode 1.0 (member chunk 0.95), loose chunk 0.9, thought 0.85,
    low-importance chunk 0.97, far chunk 0.0, another user's chunk 1.0
    """
    storage = manager.storage
    mock_provider.set_vector(QUERY, axis(0))

    episode, _ = seed_episode(
        storage, "u1", axis(0), title="Hiking weekend", narrative="We hiked up the ridge."
    )
    vector_index.upsert("EpisodeEmbedding", episode.id, episode.centroid, episode.index_properties())

    member = seed_chunk(storage, "u1", blend(axis(0), 0.95, axis(1)), text="ridge trail notes")
    storage.attach_chunks(episode.id, [ChunkEpisodeLink(member.id, episode.id, 0.95)])
    loose = seed_chunk(storage, "u1", blend(axis(0), 0.9, axis(2)), text="bought new boots")
    quiet = seed_chunk(storage, "u1", blend(axis(0), 0.97, axis(3)), text="ok", importance=0.1)
    far = seed_chunk(storage, "u1", axis(1), text="tax forms")
    foreign = seed_chunk(storage, "u2", axis(0), text="someone else")
    for c in (member, loose, quiet, far, foreign):
        vector_index.upsert("ChunkEmbedding", c.id, c.embedding, c.index_properties())

    vector_index.upsert(
        "ThoughtEmbedding",
        "t1",
        blend(axis(0), 0.85, axis(3)),
        {"user_id": "u1", "title": "Loves the outdoors", "text": "Plans trips outside."},
    )
    return {"episode": episode, "member": member, "loose": loose, "quiet": quiet}


class TestRanking:
    async def test_merged_and_sorted(self, manager, seeded):
        results = await manager.retrieve(QUERY, "u1")
        assert [r.id for r in results] == [seeded["episode"].id, seeded["loose"].id, "t1"]
        assert [r.tier for r in results] == [Tier.EPISODE, Tier.CHUNK, Tier.THOUGHT]
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    async def test_episode_fields(self, manager, seeded):
        top = (await manager.retrieve(QUERY, "u1"))[0]
        assert top.title == "Hiking weekend"
        assert top.content == "We hiked up the ridge."
        assert top.score == pytest.approx(1.0)
        assert top.to_dict()["tier"] == "episode"

    async def test_episode_hides_member_chunks(self, manager, seeded):
        ids = {r.id for r in await manager.retrieve(QUERY, "u1")}
        assert seeded["member"].id not in ids

    async def test_importance_floor(self, manager, seeded):
        ids = {r.id for r in await manager.retrieve(QUERY, "u1")}
        assert seeded["quiet"].id not in ids
        ids = {r.id for r in await manager.retrieve(QUERY, "u1", min_importance=0.0)}
        assert seeded["quiet"].id in ids

    async def test_limit(self, manager, seeded):
        results = await manager.retrieve(QUERY, "u1", limit=1)
        assert [r.tier for r in results] == [Tier.EPISODE]

    async def test_zero_limit(self, manager, seeded, mock_provider):
        assert await manager.retrieve(QUERY, "u1", limit=0) == []
        assert mock_provider.embed_calls == []

    async def test_certainty_cutoff(self, manager, seeded):
        results = await manager.retrieve(QUERY, "u1", certainty=0.95)
        assert [r.id for r in results] == [seeded["episode"].id]

    async def test_user_scoped(self, manager, seeded, vector_index):
        results = await manager.retrieve(QUERY, "u2")
        assert [r.content for r in results] == ["someone else"]
        assert [cls for cls, _ in vector_index.queries] == [
            "EpisodeEmbedding",
            "ThoughtEmbedding",
            "ChunkEmbedding",
        ]
        assert all(f["user_id"] == "u2" for _, f in vector_index.queries)

    async def test_empty_query(self, manager, seeded, mock_provider):
        assert await manager.retrieve("   ", "u1") == []
        assert mock_provider.embed_calls == []


class TestDegradation:
    async def test_query_embedding_failure_returns_empty(self, manager, seeded, mock_provider):
        mock_provider.embed_error = ProviderError("down")
        assert await manager.retrieve(QUERY, "u1") == []

    async def test_failed_chunk_stage_keeps_other_tiers(self, manager, seeded, vector_index):
        vector_index.failing.add("ChunkEmbedding")
        results = await manager.retrieve(QUERY, "u1")
        assert [r.tier for r in results] == [Tier.EPISODE, Tier.THOUGHT]

    async def test_failed_episode_stage_does_not_hide_chunks(self, manager, seeded, vector_index):
        vector_index.failing.add("EpisodeEmbedding")
        ids = {r.id for r in await manager.retrieve(QUERY, "u1")}
        assert seeded["member"].id in ids
        assert seeded["episode"].id not in ids

    async def test_members_from_index_when_storage_fails(
        self, manager, seeded, vector_index, monkeypatch
    ):
        episode, member = seeded["episode"], seeded["member"]
        chunk_ids = manager.storage.episode_chunk_ids(episode.id)
        assert member.id in chunk_ids
        vector_index.upsert(
            "EpisodeEmbedding", episode.id, episode.centroid, episode.index_properties(chunk_ids)
        )

        def locked(episode_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(manager.storage, "episode_chunk_ids", locked)
        results = await manager.retrieve(QUERY, "u1")
        assert member.id not in {r.id for r in results}
        assert "chunk_ids" not in results[0].metadata

    async def test_slow_stage_times_out(self, manager_factory, seeded, vector_index):
        mgr = manager_factory(retrieval_stage_timeout_seconds=0.05)
        vector_index.delays["ChunkEmbedding"] = 0.5
        results = await mgr.retrieve(QUERY, "u1")
        assert [r.tier for r in results] == [Tier.EPISODE, Tier.THOUGHT]

    async def test_index_down_at_startup(self, manager_factory, mock_provider, vector_index):
        vector_index.available = False
        mgr = manager_factory()
        assert await mgr.retrieve(QUERY, "u1") == []
        assert mock_provider.embed_calls == []

        # schema is declared on the first call after the index comes back
        vector_index.available = True
        assert await mgr.retrieve(QUERY, "u1") == []
        assert set(vector_index.dimensions) == {
            "ChunkEmbedding",
            "EpisodeEmbedding",
            "ThoughtEmbedding",
        }


class TestContextFormatting:
    @staticmethod
    def items():
        return [
            RetrievedMemory(Tier.EPISODE, "e1", "We hiked.", 0.9, title="Hiking"),
            RetrievedMemory(Tier.THOUGHT, "t1", "Plans trips.", 0.8, title="Outdoors"),
            RetrievedMemory(Tier.CHUNK, "c1", "bought boots", 0.7),
        ]

    def test_renders_labels(self):
        text = format_memory_context(self.items(), 100, whitespace_counter)
        assert text.splitlines() == [
            "## Relevant memories",
            "- [Episode] Hiking: We hiked.",
            "- [Thought] Outdoors: Plans trips.",
            "- [Memory] bought boots",
        ]

    def test_token_budget(self):
        text = format_memory_context(self.items(), 10, whitespace_counter)
        assert text.splitlines() == ["## Relevant memories", "- [Episode] Hiking: We hiked."]

    def test_nothing_fits(self):
        assert format_memory_context(self.items(), 3, whitespace_counter) == ""

    def test_empty(self):
        assert format_memory_context([]) == ""

    async def test_manager_context(self, manager, seeded):
        text = await manager.retrieve_context(QUERY, "u1")
        assert text.startswith("## Relevant memories")
        assert "- [Episode] Hiking weekend: We hiked up the ridge." in text
