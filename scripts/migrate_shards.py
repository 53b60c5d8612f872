"""
Offline migration: move every stored row to the shard that owns it under the
current routing shard set (e.g. after setting SHARD_RETIRED_ID or adding a
shard URL).

Progress is written to a JSON state file after every batch; re-running the
script resumes from it.

Usage: python scripts/migrate_shards.py [--state data/migration_state.json]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()

from noor_index.db.embedding_repository import EmbeddingRepository
from noor_index.runtime import create_shard_manager
from noor_index.shards.migration import DEFAULT_MIGRATION_BATCH_SIZE, MigrationReport, ShardMigrator


def load_state(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return {int(k): int(v) for k, v in json.load(f).items()}


def save_state(path: Path, report: MigrationReport) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump({str(k): v for k, v in report.progress.items()}, f)


async def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--state", default="data/migration_state.json")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_MIGRATION_BATCH_SIZE)
    parser.add_argument("--keep-source", action="store_true", help="copy rows without deleting them")
    parser.add_argument("--restart", action="store_true", help="ignore saved progress")
    args = parser.parse_args()

    shard_manager = create_shard_manager()
    if shard_manager is None:
        print("No shards configured.")
        return 1

    state_path = Path(args.state)
    resume_from = {} if args.restart else load_state(state_path)

    repository = EmbeddingRepository(shard_manager)
    migrator = ShardMigrator(
        repository,
        batch_size=args.batch_size,
        delete_source=not args.keep_source,
    )

    try:
        await repository.initialize_schema()
        report = await migrator.migrate(
            resume_from=resume_from,
            on_batch=lambda r: save_state(state_path, r),
        )
    except Exception as e:
        print(f"Migration failed: {type(e).__name__}: {e}")
        return 1
    finally:
        await shard_manager.shutdown()

    print(f"Scanned {report.scanned} rows, moved {report.moved}.")
    for target, count in sorted(report.moved_by_target.items()):
        print(f"  -> shard {target}: {count}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(main()))
