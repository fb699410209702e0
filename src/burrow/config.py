"""config: where mailboxes live and how they are watched.

Config file: `burrow.toml` (default, optional)

```toml
[mailbox]
agents_root = "agents"

[watch]
enabled = false
settle_delay = 0.05
event_queue_size = 256

[logging]
level = "INFO"
```

`BURROW_AGENTS_ROOT` overrides `mailbox.agents_root`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib  # type: ignore[no-redef]

from burrow.registry import MessageQueueRegistry

DEFAULT_CONFIG_PATH = Path("burrow.toml")
AGENTS_ROOT_ENV = "BURROW_AGENTS_ROOT"


@dataclass
class WatchConfig:
    enabled: bool = False
    settle_delay: float = 0.05
    event_queue_size: int = 256


@dataclass
class BurrowConfig:
    agents_root: Path = Path("agents")
    watch: WatchConfig = field(default_factory=WatchConfig)
    log_level: str = "INFO"

    def registry(self, *, enable_watchers: bool | None = None) -> MessageQueueRegistry:
        return MessageQueueRegistry(
            self.agents_root,
            enable_watchers=self.watch.enabled if enable_watchers is None else enable_watchers,
            settle_delay=self.watch.settle_delay,
            event_queue_size=self.watch.event_queue_size,
        )


def load_config(path: Path | None = None) -> BurrowConfig:
    if path is None:
        path = DEFAULT_CONFIG_PATH

    raw: dict = {}
    if path.exists():
        raw = tomllib.loads(path.read_text(encoding="utf-8"))

    mailbox = raw.get("mailbox", {})
    watch = raw.get("watch", {})
    logging_ = raw.get("logging", {})

    agents_root = Path(str(mailbox.get("agents_root", "agents")))
    env_root = os.environ.get(AGENTS_ROOT_ENV, "")
    if env_root:
        agents_root = Path(env_root)
    elif not agents_root.is_absolute() and path.exists():
        # relative roots are relative to the config file
        agents_root = path.parent / agents_root

    return BurrowConfig(
        agents_root=agents_root,
        watch=WatchConfig(
            enabled=bool(watch.get("enabled", False)),
            settle_delay=max(0.0, float(watch.get("settle_delay", 0.05))),
            event_queue_size=max(1, int(watch.get("event_queue_size", 256))),
        ),
        log_level=str(logging_.get("level", "INFO")),
    )
