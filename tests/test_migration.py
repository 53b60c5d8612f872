"""
Offline shard migration tests.
"""

from noor_index.db.embedding_repository import EmbeddingRepository
from noor_index.shards.manager import ShardManager
from noor_index.shards.migration import ShardMigrator

from conftest import count_rows, make_row, sqlite_shard_configs


async def shard_ids(repo, shard_id):
    rows = await repo.shard_manager.execute(shard_id, "SELECT id FROM document_embeddings ORDER BY id")
    return [r["id"] for r in rows]


class TestShardMigrator:
    """Tests for offline row migration between shards."""

    async def test_retiring_a_shard_moves_its_rows(self, tmp_path):
        """Verify retiring a shard moves its rows to their new owners."""
        before = ShardManager(configs=sqlite_shard_configs(tmp_path, 3))
        repo = EmbeddingRepository(before)
        await repo.initialize_schema()
        await repo.insert_batch([make_row(i) for i in range(12)])
        await before.shutdown()

        after = ShardManager(configs=sqlite_shard_configs(tmp_path, 3), retired_shard_id=0)
        repo = EmbeddingRepository(after)
        try:
            report = await ShardMigrator(repo, batch_size=5).migrate()

            assert await count_rows(repo, 0) == 0
            for doc_id in range(12):
                assert doc_id in await shard_ids(repo, after.route_document(doc_id))
            assert await repo.get_existing_document_ids() == set(range(12))
            assert report.moved == sum(1 for i in range(12) if after.route_document(i) != i % 3)
        finally:
            await after.shutdown()

    async def test_rows_already_in_place_are_untouched(self, repository):
        """Verify correctly placed rows are not moved."""
        await repository.insert_batch([make_row(i) for i in range(9)])

        report = await ShardMigrator(repository).migrate()

        assert report.moved == 0
        assert report.scanned == 9
        assert report.progress == {0: 6, 1: 7, 2: 8}

    async def test_resume_skips_scanned_ids(self, tmp_path):
        """Verify a resumed migration starts after the recorded id."""
        before = ShardManager(configs=sqlite_shard_configs(tmp_path, 2))
        repo = EmbeddingRepository(before)
        await repo.initialize_schema()
        await repo.insert_batch([make_row(i) for i in range(10)])
        await before.shutdown()

        after = ShardManager(configs=sqlite_shard_configs(tmp_path, 2), retired_shard_id=0)
        repo = EmbeddingRepository(after)
        try:
            report = await ShardMigrator(repo).migrate(resume_from={0: 4, 1: 9})

            assert await shard_ids(repo, 0) == [0, 2, 4]
            assert await shard_ids(repo, 1) == [1, 3, 5, 6, 7, 8, 9]
            assert report.moved == 2
        finally:
            await after.shutdown()

    async def test_progress_callback_per_batch(self, repository):
        """Verify progress is reported after every batch."""
        await repository.insert_batch([make_row(i) for i in range(9)])
        seen = []

        await ShardMigrator(repository, batch_size=2).migrate(
            on_batch=lambda r: seen.append(dict(r.progress))
        )

        assert seen[0] == {0: 3}
        assert seen[-1] == {0: 6, 1: 7, 2: 8}
