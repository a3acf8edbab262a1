import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from tenantdb.core.config import Settings, load_env_if_present
from tenantdb.core.errors import DatabaseError
from tenantdb.core.logger import configure_logging, setup_logger
from tenantdb.db.database import create_database

logger = setup_logger(__name__, include_location=True)
cli = typer.Typer(no_args_is_help=True, help="tenantdb database tooling")


def _echo(payload, err: bool = False) -> None:
    typer.echo(json.dumps(payload, default=str), err=err)


def _settings() -> Settings:
    load_env_if_present()
    try:
        settings = Settings.from_env()
    except ValidationError as e:
        _echo({"status": "error", "code": "CONFIGURATION_ERROR", "details": str(e)}, err=True)
        raise typer.Exit(code=1)
    configure_logging(settings.log_level, settings.log_json)
    return settings


def _run(coro):
    try:
        return asyncio.run(coro)
    except DatabaseError as e:
        _echo({"status": "error", **e.to_dict()}, err=True)
        raise typer.Exit(code=1)


@cli.command("probe")
def probe(
    retries: Optional[int] = typer.Option(None, help="Attempts before giving up (default DB_CONNECT_RETRIES)."),
    delay: Optional[float] = typer.Option(None, help="Seconds between attempts (default DB_CONNECT_RETRY_DELAY)."),
):
    """Check that the database answers."""
    settings = _settings()

    async def main():
        db = create_database(settings)
        await db.pool.open()
        try:
            name = await db.pool.probe(
                retries if retries is not None else settings.connect_retries,
                delay if delay is not None else settings.connect_retry_delay,
            )
            return {"status": "ok", "database": name, "pool": db.pool.stats()}
        finally:
            await db.close()

    _echo(_run(main()))


@cli.command("migrate")
def migrate(
    directory: Optional[Path] = typer.Option(
        None, "--dir", "-d", help="Migrations directory (default DB_MIGRATIONS_DIR).", file_okay=False
    ),
):
    """Apply pending migrations."""
    settings = _settings()

    async def main():
        db = create_database(settings, migrations_dir=directory)
        try:
            report = await db.initialize()
        finally:
            await db.close()
        if report is None:
            return {"status": "skipped", "reason": "skip-validation"}
        return {"status": "ok", **report.to_dict()}

    _echo(_run(main()))


@cli.command("status")
def status(
    directory: Optional[Path] = typer.Option(
        None, "--dir", "-d", help="Migrations directory (default DB_MIGRATIONS_DIR).", file_okay=False
    ),
):
    """List migration artifacts and whether each is applied."""
    settings = _settings()

    async def main():
        db = create_database(settings, migrations_dir=directory)
        await db.pool.open()
        try:
            return await db.migrations.status()
        finally:
            await db.close()

    rows = _run(main())
    for artifact, applied in rows:
        kind = "bootstrap" if artifact.bootstrap else ("special" if artifact.special else "transactional")
        typer.echo(f"{'applied' if applied else 'pending':8} {artifact.version:20} {artifact.file} ({kind})")
    pending = sum(1 for _, applied in rows if not applied)
    typer.echo(f"{len(rows)} migrations, {pending} pending")


if __name__ == "__main__":
    cli()
