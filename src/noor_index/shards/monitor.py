"""
Shard storage and health monitoring.

Compares each shard's database size against its configured maximum and
reports unreachable shards. Used by ``scripts/monitor_shards.py``; the
``/health/shards`` route reports probe results only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import settings
from ..db.embedding_repository import EmbeddingRepository
from .manager import ShardHealth, ShardManager

logger = logging.getLogger("noor.monitor")


@dataclass(frozen=True)
class ShardUsage:
    shard_id: int
    database: str
    size_bytes: int
    max_bytes: Optional[int]

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    @property
    def usage_ratio(self) -> Optional[float]:
        if not self.max_bytes or self.max_bytes <= 0:
            return None
        return self.size_bytes / self.max_bytes


@dataclass
class MonitorReport:
    usage: List[ShardUsage] = field(default_factory=list)
    health: List[ShardHealth] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)

    @property
    def has_alerts(self) -> bool:
        return bool(self.alerts)


class ShardMonitor:

    def __init__(
        self,
        repository: EmbeddingRepository,
        usage_threshold: Optional[float] = None,
        health_timeout_ms: int = 5000,
    ) -> None:
        self._repository = repository
        self._shards: ShardManager = repository.shard_manager
        self._threshold = (
            usage_threshold if usage_threshold is not None else settings.shard_usage_threshold
        )
        self._health_timeout_ms = health_timeout_ms

    async def check(self) -> MonitorReport:
        report = MonitorReport()

        try:
            storage = await self._repository.get_storage_usage_bytes()
        except Exception as exc:
            logger.error("Failed to read shard storage usage: %s", exc)
            report.alerts.append(f"Storage usage query failed: {exc}")
            storage = []

        for entry in storage:
            usage = ShardUsage(
                shard_id=entry.shard_id,
                database=entry.database,
                size_bytes=entry.size_bytes,
                max_bytes=self._shards.get_config(entry.shard_id).max_storage_bytes,
            )
            report.usage.append(usage)

            ratio = usage.usage_ratio
            if ratio is not None and ratio >= self._threshold:
                report.alerts.append(
                    f"Shard {usage.shard_id} is at {ratio * 100:.1f}% of configured capacity"
                )

        report.health = await self._shards.health_check(timeout_ms=self._health_timeout_ms)
        for shard in report.health:
            if not shard.active:
                report.alerts.append(f"Shard {shard.id} ({shard.role.value}) is unavailable")

        if report.has_alerts:
            logger.warning("Shard monitor raised %d alert(s)", len(report.alerts))
        return report


def format_report(report: MonitorReport) -> List[str]:
    """Render a report as printable lines."""
    lines = ["Shard storage usage:"]
    for usage in report.usage:
        lines.append(f"  Shard {usage.shard_id} ({usage.database}): {usage.size_mb:.2f} MB")
        ratio = usage.usage_ratio
        if ratio is not None:
            lines.append(f"    {ratio * 100:.1f}% of {usage.max_bytes} bytes")

    lines.append("")
    lines.append("Shard health and query performance:")
    for shard in report.health:
        status = "healthy" if shard.active else "unavailable"
        lines.append(
            f"  Shard {shard.id} ({shard.role.value}) - {status}, "
            f"queries={shard.total_queries}, avgQueryTime={shard.avg_latency_ms:.2f}ms"
        )
        if shard.last_error:
            lines.append(f"    Last error: {shard.last_error}")

    if report.alerts:
        lines.append("")
        lines.extend(f"ALERT: {alert}" for alert in report.alerts)
    return lines
