"""
Build (or resume) the ANN index in the foreground.

Usage: python scripts/build_index.py [--max-documents N] [--mirror]
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv
load_dotenv()

from noor_index.config import settings
from noor_index.corpus import CachedCorpusSource
from noor_index.db.embedding_repository import EmbeddingRepository
from noor_index.embeddings.embedder import EmbeddingError
from noor_index.embeddings.providers import create_embedding_provider
from noor_index.index.ann import AnnIndexRepository
from noor_index.index.blob_store import create_blob_store
from noor_index.index.builder import IndexBuilder
from noor_index.runtime import create_shard_manager


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--max-documents", type=int, default=settings.max_documents_to_index)
    parser.add_argument("--batch-size", type=int, default=settings.embedding_batch_size)
    parser.add_argument("--delay-ms", type=int, default=settings.embedding_delay_ms)
    parser.add_argument("--mirror", action="store_true", default=settings.mirror_to_shards)
    return parser.parse_args()


async def main() -> int:
    args = parse_args()

    try:
        provider = create_embedding_provider()
    except EmbeddingError as e:
        print(f"Cannot build index: {e}")
        return 1

    shard_manager = create_shard_manager()
    if args.mirror and shard_manager is None:
        print("--mirror requires at least one shard URL (SHARD_PRIMARY_URL).")
        return 1

    repository = EmbeddingRepository(shard_manager) if shard_manager else None
    try:
        if repository is not None and args.mirror:
            await repository.initialize_schema()

        ann = AnnIndexRepository(provider.dimension(), create_blob_store(shard_manager))
        builder = IndexBuilder(
            provider,
            CachedCorpusSource(),
            ann,
            repository,
            max_documents=args.max_documents,
            batch_size=args.batch_size,
            delay_ms=args.delay_ms,
            mirror=args.mirror,
        )
        result = await builder.build()
        print(
            f"Index ready: {len(result.metadata)} documents "
            f"({result.embedded} embedded, {result.reused} reused, resumed at {result.resumed_from})."
        )
        return 0
    except Exception as e:
        print(f"Index build failed: {type(e).__name__}: {e}")
        return 1
    finally:
        if shard_manager is not None:
            await shard_manager.shutdown()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    sys.exit(asyncio.run(main()))
