"""Per-agent mailbox directories.

Directory layout (per agents root):
- `<agents_root>/<agent>/inbox/`      anyone may drop messages here
- `<agents_root>/<agent>/outbox/`     results published by the agent
- `<agents_root>/<agent>/memory/`     notes kept across sessions
- `<agents_root>/<agent>/workspace/`  scratch area, may be wiped
- `<agents_root>/<agent>/logs/`       append-only logs

Every area holds a `.gitkeep` so an empty mailbox survives in git.

NOTE:
- This module knows nothing about message records. It only maps
  (area, file name) to a path and does the I/O.
- File names are validated before any path is built; a bad name is a
  programming error or hostile input and raises immediately.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from burrow.errors import InvalidFileNameError

logger = logging.getLogger(__name__)

PLACEHOLDER = ".gitkeep"
TMP_SUFFIX = ".tmp"
CLAIM_MARKER = ".claim-"

_RESERVED_CHARS = set('<>:"|?*')
# `.{name}.{hex8}.tmp`, as written by AgentDirectory._write_sync
_TMP_RE = re.compile(r"^\..+\.[0-9a-f]{8}" + re.escape(TMP_SUFFIX) + "$")


class AgentSubdirectory(str, Enum):
    INBOX = "inbox"
    OUTBOX = "outbox"
    MEMORY = "memory"
    WORKSPACE = "workspace"
    LOGS = "logs"


@dataclass(frozen=True)
class DirectoryInfo:
    agent_name: str
    root: Path
    file_counts: dict[AgentSubdirectory, int]
    sizes: dict[AgentSubdirectory, int]
    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_size_bytes(self) -> int:
        return sum(self.sizes.values())

    @property
    def total_files(self) -> int:
        return sum(self.file_counts.values())


def validate_file_name(name: str) -> None:
    if not name or not name.strip():
        raise InvalidFileNameError(name, "empty")
    if ".." in name:
        raise InvalidFileNameError(name, "path traversal")
    if "/" in name or "\\" in name or os.sep in name:
        raise InvalidFileNameError(name, "path separator")
    if any(ord(ch) < 32 for ch in name):
        raise InvalidFileNameError(name, "control character")
    if any(ch in _RESERVED_CHARS for ch in name):
        raise InvalidFileNameError(name, "reserved character")


def _validate_pattern(pattern: str) -> None:
    if ".." in pattern or "/" in pattern or "\\" in pattern:
        raise InvalidFileNameError(pattern, "pattern must stay inside the area")


def _is_hidden_artifact(name: str) -> bool:
    return name == PLACEHOLDER or _TMP_RE.match(name) is not None or CLAIM_MARKER in name


class AgentDirectory:
    """Filesystem mailbox for one agent."""

    def __init__(self, agent_name: str, root: Path | str) -> None:
        if not agent_name or not str(agent_name).strip():
            raise ValueError("agent_name is required")
        if not str(root).strip():
            raise ValueError("root is required")
        self.agent_name = agent_name
        self.root = Path(root).resolve()
        self._log_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"AgentDirectory({self.agent_name!r}, {str(self.root)!r})"

    @classmethod
    async def create(cls, agents_root: Path | str, agent_name: str) -> AgentDirectory:
        validate_file_name(agent_name)
        d = cls(agent_name, Path(agents_root) / agent_name)
        await d.ensure_structure()
        return d

    @classmethod
    def open(cls, agent_path: Path | str) -> AgentDirectory | None:
        p = Path(agent_path)
        if not p.is_dir():
            return None
        return cls(p.name, p)

    def subdirectory_path(self, area: AgentSubdirectory) -> Path:
        return self.root / AgentSubdirectory(area).value

    @property
    def inbox(self) -> Path:
        return self.subdirectory_path(AgentSubdirectory.INBOX)

    @property
    def outbox(self) -> Path:
        return self.subdirectory_path(AgentSubdirectory.OUTBOX)

    @property
    def memory(self) -> Path:
        return self.subdirectory_path(AgentSubdirectory.MEMORY)

    @property
    def workspace(self) -> Path:
        return self.subdirectory_path(AgentSubdirectory.WORKSPACE)

    @property
    def logs(self) -> Path:
        return self.subdirectory_path(AgentSubdirectory.LOGS)

    async def ensure_structure(self) -> bool:
        """Create the root and all five areas. Safe to call repeatedly.

        Returns False instead of raising when the filesystem refuses, so a
        caller can abort its startup cleanly.
        """

        try:
            await asyncio.to_thread(self._ensure_structure_sync)
        except OSError:
            logger.warning("could not create mailbox for %s at %s", self.agent_name, self.root, exc_info=True)
            return False
        return True

    def _ensure_structure_sync(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        for area in AgentSubdirectory:
            d = self.subdirectory_path(area)
            d.mkdir(exist_ok=True)
            keep = d / PLACEHOLDER
            if not keep.exists():
                keep.write_text("", encoding="utf-8")

    async def write_file(self, area: AgentSubdirectory, name: str, content: str | bytes) -> Path:
        validate_file_name(name)
        return await asyncio.to_thread(self._write_sync, self._path(area, name), content)

    async def read_file(self, area: AgentSubdirectory, name: str) -> str | None:
        validate_file_name(name)
        return await asyncio.to_thread(_read_text_or_none, self._path(area, name))

    async def read_bytes(self, area: AgentSubdirectory, name: str) -> bytes | None:
        validate_file_name(name)
        return await asyncio.to_thread(_read_bytes_or_none, self._path(area, name))

    async def delete_file(self, area: AgentSubdirectory, name: str) -> bool:
        validate_file_name(name)
        return await asyncio.to_thread(_unlink_if_exists, self._path(area, name))

    async def exists(self, area: AgentSubdirectory, name: str) -> bool:
        validate_file_name(name)
        return await asyncio.to_thread(self._path(area, name).is_file)

    async def list_files(self, area: AgentSubdirectory, pattern: str = "*") -> list[str]:
        """File names in `area` matching `pattern`, sorted.

        Placeholders and in-flight temporary/claim files are never listed.
        """

        _validate_pattern(pattern)
        return await asyncio.to_thread(self._list_sync, self.subdirectory_path(area), pattern)

    async def rename_file(self, area: AgentSubdirectory, src: str, dst: str) -> bool:
        """Atomically rename within one area. False when `src` is gone."""

        validate_file_name(src)
        validate_file_name(dst)
        try:
            await asyncio.to_thread(os.replace, self._path(area, src), self._path(area, dst))
        except FileNotFoundError:
            return False
        return True

    async def move_to_subdir(
        self, area: AgentSubdirectory, name: str, subdir: str, dest_name: str | None = None
    ) -> Path | None:
        """Atomically move `area/name` into `area/subdir/<dest_name or name>`."""

        validate_file_name(name)
        validate_file_name(subdir)
        if dest_name is not None:
            validate_file_name(dest_name)
        return await asyncio.to_thread(self._move_sync, area, name, subdir, dest_name or name)

    async def append_to_log(self, name: str, line: str) -> None:
        validate_file_name(name)
        await asyncio.to_thread(self._append_sync, self._path(AgentSubdirectory.LOGS, name), line)

    async def clean_workspace(self) -> int:
        return await asyncio.to_thread(self._clean_workspace_sync)

    async def get_info(self) -> DirectoryInfo:
        return await asyncio.to_thread(self._info_sync)

    def _path(self, area: AgentSubdirectory, name: str) -> Path:
        return self.subdirectory_path(area) / name

    def _write_sync(self, p: Path, content: str | bytes) -> Path:
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(f".{p.name}.{uuid.uuid4().hex[:8]}{TMP_SUFFIX}")
        try:
            if isinstance(content, bytes):
                tmp.write_bytes(content)
            else:
                tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, p)
        finally:
            _unlink_if_exists(tmp)
        return p

    def _list_sync(self, d: Path, pattern: str) -> list[str]:
        if not d.is_dir():
            return []
        return sorted(p.name for p in d.glob(pattern) if p.is_file() and not _is_hidden_artifact(p.name))

    def _move_sync(self, area: AgentSubdirectory, name: str, subdir: str, dest_name: str) -> Path | None:
        src = self._path(area, name)
        dst_dir = self.subdirectory_path(area) / subdir
        dst_dir.mkdir(parents=True, exist_ok=True)
        dst = dst_dir / dest_name
        try:
            os.replace(src, dst)
        except FileNotFoundError:
            return None
        return dst

    def _append_sync(self, p: Path, line: str) -> None:
        p.parent.mkdir(parents=True, exist_ok=True)
        ts = datetime.now(timezone.utc).isoformat()
        with self._log_lock:
            with p.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {line}\n")

    def _clean_workspace_sync(self) -> int:
        ws = self.workspace
        if not ws.is_dir():
            return 0
        removed = 0
        for p in sorted(ws.iterdir()):
            if p.name == PLACEHOLDER:
                continue
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            else:
                p.unlink()
            removed += 1
        logger.debug("workspace cleaned for %s: %d entries", self.agent_name, removed)
        return removed

    def _info_sync(self) -> DirectoryInfo:
        counts: dict[AgentSubdirectory, int] = {}
        sizes: dict[AgentSubdirectory, int] = {}
        for area in AgentSubdirectory:
            d = self.subdirectory_path(area)
            files = [p for p in d.iterdir() if p.is_file() and p.name != PLACEHOLDER] if d.is_dir() else []
            counts[area] = len(files)
            sizes[area] = sum(p.stat().st_size for p in files)
        return DirectoryInfo(agent_name=self.agent_name, root=self.root, file_counts=counts, sizes=sizes)


def _read_text_or_none(p: Path) -> str | None:
    try:
        return p.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError):
        return None


def _read_bytes_or_none(p: Path) -> bytes | None:
    try:
        return p.read_bytes()
    except (FileNotFoundError, IsADirectoryError):
        return None


def _unlink_if_exists(p: Path) -> bool:
    try:
        p.unlink()
    except FileNotFoundError:
        return False
    return True
