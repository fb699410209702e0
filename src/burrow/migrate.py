"""Bring existing agent directories up to the five-area mailbox layout.

Each subdirectory of the agents root is treated as one agent. Migration:
- creates inbox/outbox/memory/workspace/logs (+ .gitkeep)
- writes `memory/agent-metadata.json` (optional)
- appends a line to `logs/migration.log`

Already migrated agents are skipped unless `force` is set.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path

from burrow.directory import AgentDirectory, AgentSubdirectory

logger = logging.getLogger(__name__)

LAYOUT_VERSION = "1.0"


class MigrationStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class AgentMigrationResult:
    agent_path: Path
    agent_name: str
    status: MigrationStatus = MigrationStatus.SKIPPED
    message: str = ""
    directories: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def duration(self) -> timedelta:
        return (self.finished_at or self.started_at) - self.started_at


@dataclass
class BatchMigrationResult:
    agents_root: Path
    results: list[AgentMigrationResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def _count(self, status: MigrationStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return self._count(MigrationStatus.SUCCESS)

    @property
    def skipped_count(self) -> int:
        return self._count(MigrationStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(MigrationStatus.FAILED)

    @property
    def all_successful(self) -> bool:
        return self.failed_count == 0


def is_migrated(agent_path: Path) -> bool:
    return all((agent_path / area.value).is_dir() for area in AgentSubdirectory)


def existing_areas(agent_path: Path) -> list[str]:
    return [area.value for area in AgentSubdirectory if (agent_path / area.value).is_dir()]


class DirectoryMigrator:
    def __init__(self, *, force: bool = False, create_initial_memory: bool = True) -> None:
        self.force = force
        self.create_initial_memory = create_initial_memory

    async def migrate_agent(self, agent_path: Path) -> AgentMigrationResult:
        result = AgentMigrationResult(agent_path=agent_path, agent_name=agent_path.name)
        try:
            directory = AgentDirectory.open(agent_path)
            if directory is None:
                result.message = "not a directory"
            elif is_migrated(agent_path) and not self.force:
                result.message = "already has the mailbox layout"
            elif not await directory.ensure_structure():
                result.status = MigrationStatus.FAILED
                result.message = "could not create mailbox areas"
            else:
                if self.create_initial_memory:
                    await directory.write_file(
                        AgentSubdirectory.MEMORY,
                        "agent-metadata.json",
                        _initial_memory(directory.agent_name),
                    )
                await directory.append_to_log("migration.log", f"migrated to mailbox layout v{LAYOUT_VERSION}")
                result.status = MigrationStatus.SUCCESS
                result.message = "migrated"
                result.directories = existing_areas(agent_path)
        except OSError as e:
            logger.warning("migration failed for %s", agent_path, exc_info=True)
            result.status = MigrationStatus.FAILED
            result.message = f"{type(e).__name__}: {e}"

        result.finished_at = datetime.now(timezone.utc)
        return result

    async def migrate_all(self, agents_root: Path) -> BatchMigrationResult:
        batch = BatchMigrationResult(agents_root=agents_root)
        if agents_root.is_dir():
            for p in sorted(agents_root.iterdir()):
                if not p.is_dir() or p.name.startswith("."):
                    continue
                batch.results.append(await self.migrate_agent(p))
        batch.finished_at = datetime.now(timezone.utc)
        return batch


def render_report(batch: BatchMigrationResult) -> str:
    finished = batch.finished_at or batch.started_at
    lines = [
        "# mailbox migration",
        "",
        f"- root: {batch.agents_root}",
        f"- started: {batch.started_at:%Y-%m-%d %H:%M:%S}",
        f"- duration: {(finished - batch.started_at).total_seconds():.2f}s",
        f"- total: {batch.total}  success: {batch.success_count}  "
        f"skipped: {batch.skipped_count}  failed: {batch.failed_count}",
    ]

    for status, title, mark in [
        (MigrationStatus.SUCCESS, "migrated", "✓"),
        (MigrationStatus.SKIPPED, "skipped", "○"),
        (MigrationStatus.FAILED, "failed", "✗"),
    ]:
        rows = [r for r in batch.results if r.status is status]
        if not rows:
            continue
        lines += ["", f"## {title}", ""]
        for r in rows:
            if status is MigrationStatus.SUCCESS:
                lines.append(f"- {mark} {r.agent_name} ({', '.join(r.directories)})")
            else:
                lines.append(f"- {mark} {r.agent_name}: {r.message}")

    return "\n".join(lines) + "\n"


def _initial_memory(agent_name: str) -> str:
    meta = {
        "agentName": agent_name,
        "migratedAt": datetime.now(timezone.utc).isoformat(),
        "version": LAYOUT_VERSION,
    }
    return json.dumps(meta, ensure_ascii=False, indent=2)
