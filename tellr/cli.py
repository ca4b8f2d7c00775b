"""tellr CLI: typer-based command interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

app = typer.Typer(
    name="tellr",
    help="tellr: real-time officer elections with anonymous ballots",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .tellr/config.yaml: team-shared configuration
database:
  path: .tellr/tellr.db

elections:
  code_length: 6
  token_length: 32
  expiry_days: 7
  cleanup_interval_sec: 3600
  max_body_size: 1000

server:
  host: 127.0.0.1
  port: 3000
  heartbeat_sec: 15

notify:
  webhook_url: ""
  events:
    - round_started
    - round_ended
    - round_cancelled

logging:
  environment: development
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .tellr/local.config.yaml: personal overrides (DO NOT commit)
# server:
#   port: 8080
# notify:
#   webhook_url: https://hooks.example.com/tellr
"""

GITIGNORE_ENTRIES = [
    ".tellr/local.config.yaml",
    ".tellr/tellr.db",
    ".tellr/tellr.db-wal",
    ".tellr/tellr.db-shm",
]


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


async def _get_db(db_path: str):
    from .db import Database
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = Database(db_path)
    await db.init()
    return db


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize tellr in the current directory."""
    root = _get_project_root()

    tellr_dir = root / ".tellr"
    tellr_dir.mkdir(exist_ok=True)

    config_path = tellr_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = tellr_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# tellr\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  tellr initialized. Run `tellr serve` to start the server.")


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind address (default from config)"),
    port: int = typer.Option(None, help="Port (default from config)"),
):
    """Run the HTTP + SSE server."""
    import uvicorn

    from .api import create_app
    from .config import load_config
    from .logging import configure_logging

    config = load_config(_get_project_root())
    configure_logging(config.logging.environment)
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@app.command()
def sweep():
    """Delete expired elections now."""
    from .cleanup import sweep_expired
    from .config import load_config

    config = load_config(_get_project_root())

    async def _sweep() -> int:
        db = await _get_db(config.db_path)
        try:
            return await sweep_expired(db)
        finally:
            await db.close()

    removed = asyncio.run(_sweep())
    typer.echo(f"  Removed {removed} expired election(s).")


@app.command()
def status(code: str = typer.Argument(..., help="Election join code")):
    """Show roster and round history of an election. Never shows tallies."""
    from .codes import normalize_code
    from .config import load_config

    config = load_config(_get_project_root())

    async def _status() -> bool:
        db = await _get_db(config.db_path)
        try:
            election = await db.get_election_by_code(normalize_code(code))
            if election is None:
                return False
            participants = await db.list_participants(election.id)
            rounds = await db.list_rounds(election.id)

            typer.echo(f"\n  {election.name} [{election.code}]")
            typer.echo(f"  Expires: {election.expires_at}")
            if election.body_size:
                typer.echo(f"  Body size: {election.body_size}")
            typer.echo("  " + "─" * 50)
            typer.echo(f"  Participants ({len(participants)}):")
            for p in participants:
                typer.echo(f"    {p.name:<30} {p.role.value}")
            typer.echo(f"  Rounds ({len(rounds)}):")
            for r in rounds:
                level = r.disclosure_level.value if r.disclosure_level else "-"
                typer.echo(f"    {r.office:<30} {r.status.value:<10} {level}")
            return True
        finally:
            await db.close()

    if not asyncio.run(_status()):
        typer.echo(f"  Election '{code}' not found.", err=True)
        raise typer.Exit(1)


@app.command("config")
def config_show():
    """Show merged configuration."""
    from dataclasses import asdict

    import yaml

    from .config import load_config

    config = load_config(_get_project_root())
    data = asdict(config)
    if data["notify"]["webhook_url"]:
        data["notify"]["webhook_url"] = data["notify"]["webhook_url"][:24] + "..."

    typer.echo("\n  tellr: Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))
