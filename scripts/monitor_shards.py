"""
Report shard storage usage against configured limits and shard health.

Exits with status 1 when any shard crosses SHARD_USAGE_THRESHOLD or is
unreachable.
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv
load_dotenv()

from noor_index.db.embedding_repository import EmbeddingRepository
from noor_index.runtime import create_shard_manager
from noor_index.shards.monitor import ShardMonitor, format_report


async def main() -> int:
    shard_manager = create_shard_manager()
    if shard_manager is None:
        print("No shards configured.")
        return 1

    try:
        report = await ShardMonitor(EmbeddingRepository(shard_manager)).check()
        for line in format_report(report):
            print(line)
        return 1 if report.has_alerts else 0
    except Exception as e:
        print(f"Failed to monitor shards: {e}")
        return 1
    finally:
        await shard_manager.shutdown()


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    sys.exit(asyncio.run(main()))
