"""CLI for parley administration.

Runs against the local store named by PARLEY_DB (or ``--db``):
- serve: run the API and WebSocket gateway with uvicorn
- init-db: create the schema and apply migrations
- identity create/list: issue and inspect local credentials
- jobs sweep: expire messages whose ``expires_at`` has passed
- config: show the effective server configuration

Clients talk to the server directly; the CLI never needs a running server.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys

import cyclopts

from .config import ParleyConfig, ParleyConfigError, get_config_path

app = cyclopts.App(
    name="parley",
    help="Direct and group messaging with real-time delivery",
)

identity_app = cyclopts.App(name="identity", help="Local identity (credential) management")
jobs_app = cyclopts.App(name="jobs", help="Scheduled job operations")

app.command(identity_app)
app.command(jobs_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _use_db(db: str | None) -> None:
    if db:
        os.environ["PARLEY_DB"] = db


def _load_config() -> ParleyConfig:
    try:
        return ParleyConfig.load()
    except ParleyConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    db: str | None = None,
):
    """Run the parley server.

    Admin endpoints need PARLEY_ADMIN_TOKEN (or admin_token in the config
    file). Client credentials are verified locally unless PARLEY_AUTH_URL or
    PARLEY_AUTH_MODULE is set.
    """
    import uvicorn

    _use_db(db)
    cfg = _load_config()
    if not (cfg.admin_token or os.environ.get("PARLEY_ADMIN_TOKEN")):
        print("WARNING: No admin token configured. Admin endpoints are disabled.")
        print("         Set PARLEY_ADMIN_TOKEN to create identities over HTTP.\n")
    if os.environ.get("PARLEY_DB", ":memory:") == ":memory:":
        print("WARNING: Using an in-memory database. Data is lost on restart.\n")

    uvicorn.run(
        "parley.api:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command
def init_db(*, db: str | None = None):
    """Create the database schema and apply pending migrations."""
    from . import db as store

    _use_db(db)
    store.init_db()
    version = store.get_schema_version()
    print(f"Database ready at {os.environ.get('PARLEY_DB', ':memory:')} (schema v{version})")


@app.command
def config(*, write: bool = False):
    """Show the effective configuration.

    --write: Save it to the config file (creating the file if needed)
    """
    cfg = _load_config()
    if write:
        path = cfg.save()
        print(f"Config written to {path}")
    else:
        print(f"# {get_config_path()}")
        print_json(cfg.to_dict())


# --- Identity Commands ---


@identity_app.command(name="create")
def identity_create(
    *,
    display_name: str | None = None,
    metadata_json: str | None = None,
    db: str | None = None,
):
    """Issue a local credential.

    The secret is printed once and never stored; hand it to the client.
    """
    from . import db as store

    _use_db(db)
    store.init_db()

    metadata = {}
    if metadata_json:
        try:
            metadata.update(json.loads(metadata_json))
        except json.JSONDecodeError as e:
            raise cyclopts.ValidationError(f"--metadata-json is not valid JSON: {e}") from e
    if display_name:
        metadata["display_name"] = display_name

    created = store.create_identity(metadata)

    print("Identity created!")
    print(f"  ID:     {created['id']}")
    print(f"  Secret: {created['secret']}")
    print("\nThe secret is not stored. Save it now.")


@identity_app.command(name="list")
def identity_list(*, db: str | None = None):
    """List identities in the local store."""
    from . import db as store

    _use_db(db)
    store.init_db()
    identities = store.list_identities()

    if not identities:
        print("No identities found.")
        return

    for identity in identities:
        name = identity["metadata"].get("display_name", "(unnamed)")
        seen = identity["last_seen_at"] or "never"
        print(f"  {identity['id']}  {name}  last seen: {seen}")


# --- Jobs ---


@jobs_app.command
def sweep(
    *,
    archive_path: str | None = None,
    dry_run: bool = False,
    batch_size: int = 1000,
    db: str | None = None,
):
    """Expire messages whose expires_at has passed.

    --archive-path: Save expired messages to JSONL files before expiring them
    --dry-run: Show what would be expired without making changes
    """
    from . import db as store
    from . import jobs

    _use_db(db)
    store.init_db()

    result = asyncio.run(
        jobs.sweep_expired_messages(
            archive_path=archive_path,
            dry_run=dry_run,
            batch_size=batch_size,
        )
    )

    if dry_run:
        print(f"Would expire {result} messages")
    else:
        print(f"Expired {result} messages")


@jobs_app.command(name="show-archive")
def show_archive(archive_file: str):
    """Print the messages stored in a JSONL archive file."""
    from . import jobs

    print_json(jobs.load_archive(archive_file))


if __name__ == "__main__":
    app()
