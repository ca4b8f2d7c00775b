"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

ALL_EVENTS = [
    "participant_joined",
    "participant_updated",
    "election_updated",
    "round_started",
    "vote_status",
    "all_voted",
    "voting_closed",
    "round_ended",
    "round_cancelled",
]


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DatabaseConfig:
    path: str = ".tellr/tellr.db"


@dataclass
class ElectionsConfig:
    code_length: int = 6
    token_length: int = 32
    expiry_days: int = 7
    cleanup_interval_sec: int = 3600
    max_body_size: int = 1000


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    heartbeat_sec: float = 15.0


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: list(ALL_EVENTS))


@dataclass
class LoggingConfig:
    environment: str = "development"  # "production" → JSON lines


@dataclass
class Config:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    elections: ElectionsConfig = field(default_factory=ElectionsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_root: str = ""

    @property
    def db_path(self) -> str:
        """Database path resolved against the project root."""
        path = self.database.path
        if path == ":memory:" or os.path.isabs(path) or not self.project_root:
            return path
        return str(Path(self.project_root) / path)


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _section(data: dict, name: str) -> dict | None:
    value = data.get(name)
    return value if isinstance(value, dict) else None


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    d = _section(data, "database")
    if d is not None:
        cfg.database = DatabaseConfig(path=d.get("path", cfg.database.path))

    e = _section(data, "elections")
    if e is not None:
        cfg.elections = ElectionsConfig(
            code_length=e.get("code_length", cfg.elections.code_length),
            token_length=e.get("token_length", cfg.elections.token_length),
            expiry_days=e.get("expiry_days", cfg.elections.expiry_days),
            cleanup_interval_sec=e.get("cleanup_interval_sec", cfg.elections.cleanup_interval_sec),
            max_body_size=e.get("max_body_size", cfg.elections.max_body_size),
        )

    s = _section(data, "server")
    if s is not None:
        cfg.server = ServerConfig(
            host=s.get("host", cfg.server.host),
            port=s.get("port", cfg.server.port),
            heartbeat_sec=s.get("heartbeat_sec", cfg.server.heartbeat_sec),
        )

    n = _section(data, "notify")
    if n is not None:
        cfg.notify = NotifyConfig(
            webhook_url=n.get("webhook_url", "") or "",
            events=n.get("events", cfg.notify.events),
        )

    lg = _section(data, "logging")
    if lg is not None:
        cfg.logging = LoggingConfig(
            environment=lg.get("environment", cfg.logging.environment),
        )

    return cfg


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (TELLR_DB_PATH, TELLR_WEBHOOK_URL, TELLR_ENV)
      2. .tellr/local.config.yaml
      3. .tellr/config.yaml
    """
    project_root = Path(project_root)
    tellr_dir = project_root / ".tellr"

    # Layer 1: base config
    base_path = tellr_dir / "config.yaml"
    base_data: dict = {}
    if base_path.exists():
        parsed = yaml.safe_load(base_path.read_text())
        if parsed is None:
            base_data = {}
        elif not isinstance(parsed, dict):
            raise ValueError(f"Invalid config.yaml: expected mapping, got {type(parsed).__name__}")
        else:
            base_data = parsed

    # Layer 2: local override
    local_path = tellr_dir / "local.config.yaml"
    local_data: dict = {}
    if local_path.exists():
        parsed = yaml.safe_load(local_path.read_text())
        if isinstance(parsed, dict):
            local_data = parsed

    cfg = _dict_to_config(deep_merge(base_data, local_data), str(project_root))

    # Layer 3: env vars
    env_db = os.environ.get("TELLR_DB_PATH")
    if env_db:
        cfg.database.path = env_db

    env_webhook = os.environ.get("TELLR_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    env_mode = os.environ.get("TELLR_ENV")
    if env_mode:
        cfg.logging.environment = env_mode

    return cfg
