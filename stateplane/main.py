"""
stateplane — CLI entrypoint.

Inspects recorded state, run history and health for the scope declared
in stateplane.yml. Applying resources happens in Python code through
``open_scope``; the CLI never calls providers.

Usage:
    python -m stateplane.main --help
    python -m stateplane.main status
    python -m stateplane.main state list
    python -m stateplane.main config check
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from stateplane import __version__
from stateplane.core.observability.logging_config import setup_logging_from_env


@click.group()
@click.version_option(version=__version__, prog_name="stateplane")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to stateplane.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """stateplane — inspect recorded infrastructure state."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None

    setup_logging_from_env(level)


# ── Helpers ─────────────────────────────────────────────────────────


def _fail(message: str, as_json: bool) -> NoReturn:
    if as_json:
        click.echo(json.dumps({"error": message}, indent=2))
    else:
        click.secho(f"❌ {message}", fg="red")
    sys.exit(1)


def _load(ctx: click.Context, as_json: bool) -> tuple[Any, Path]:
    """Load stateplane.yml, or exit with its error."""
    from stateplane.core.config.loader import ConfigError, config_root, find_config_file, load_config

    path = ctx.obj.get("config_path") or find_config_file()
    try:
        config = load_config(path)
    except ConfigError as e:
        _fail(str(e), as_json)
    assert path is not None
    return config, config_root(path)


def _open_store(config: Any, base_dir: Path) -> Any:
    from stateplane.core.persistence.factory import create_store

    store = create_store(config.scope, config.state, base_dir)
    store.init()
    return store


def _audit(config: Any, base_dir: Path) -> Any:
    from stateplane.core.engine.scope import audit_path_for
    from stateplane.core.persistence.audit import AuditWriter

    return AuditWriter(audit_path_for(config, base_dir))


def _resolve_path(config: Any, path: str) -> str:
    """Accept either a full path or one relative to the scope."""
    if path.startswith(config.scope + "/"):
        return path
    return f"{config.scope}/{path}"


# ── Status ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show scope identity and recorded state summary."""
    from stateplane.core.errors import StoreIOError

    config, base_dir = _load(ctx, as_json)
    try:
        records = _open_store(config, base_dir).all()
    except StoreIOError as e:
        _fail(str(e), as_json)

    by_status: dict[str, int] = {}
    for record in records.values():
        by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
    recent = _audit(config, base_dir).read_recent(1) if config.audit.enabled else []
    last_run = recent[0] if recent else None

    if as_json:
        click.echo(json.dumps({
            "scope": config.scope,
            "backend": config.state.backend,
            "records": {"total": len(records), "by_status": by_status},
            "last_run": last_run.model_dump(mode="json") if last_run else None,
        }, indent=2))
        return

    click.secho(f"\n📋 {config.scope}", fg="cyan", bold=True)
    if config.description:
        click.echo(f"   {config.description}")
    click.echo(f"   State: {config.state.backend} ({config.state.root})")
    click.echo()
    click.secho(f"   Records: {len(records)}", fg="white", bold=True)
    for name, count in sorted(by_status.items()):
        click.echo(f"     • {name}: {count}")

    if last_run is not None:
        click.echo()
        click.secho("   Last run:", fg="white", bold=True)
        status_color = {"ok": "green", "partial": "yellow", "failed": "red"}.get(
            last_run.status, "white"
        )
        click.echo(f"     {last_run.run_id} ({last_run.phase}) — ", nl=False)
        click.secho(last_run.status, fg=status_color)
        click.echo(f"     at {last_run.timestamp}")

    click.echo()


# ── State inspection ────────────────────────────────────────────────


@cli.group()
def state() -> None:
    """Inspect and edit recorded state."""


@state.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_list(ctx: click.Context, as_json: bool) -> None:
    """List recorded resources."""
    from stateplane.core.errors import StoreIOError

    config, base_dir = _load(ctx, as_json)
    try:
        records = _open_store(config, base_dir).all()
    except StoreIOError as e:
        _fail(str(e), as_json)

    if as_json:
        click.echo(json.dumps([
            {
                "path": path,
                "type": rec.type,
                "id": rec.id,
                "status": rec.status.value,
                "seq": rec.seq,
                "updated_at": rec.updated_at,
            }
            for path, rec in records.items()
        ], indent=2))
        return

    if not records:
        click.echo(f"No recorded resources in {config.scope}.")
        return

    markers = {"committed": "✓", "pending": "…", "error": "✗"}
    for path, rec in records.items():
        marker = markers.get(rec.status.value, "?")
        click.echo(f"  {marker} {path}  [{rec.status.value}]  {rec.updated_at}")


@state.command("show")
@click.argument("path")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_show(ctx: click.Context, path: str, as_json: bool) -> None:
    """Show one record. Secrets are masked."""
    from stateplane.core.errors import StoreIOError
    from stateplane.core.secrets.serde import redact

    config, base_dir = _load(ctx, as_json)
    full_path = _resolve_path(config, path)
    try:
        record = _open_store(config, base_dir).get(full_path)
    except StoreIOError as e:
        _fail(str(e), as_json)

    if record is None:
        _fail(f"No record at {full_path}", as_json)

    data = record.to_json()
    data["output"] = redact(data["output"])
    data["pendingDeletions"] = redact(data["pendingDeletions"])

    if as_json:
        click.echo(json.dumps({"path": full_path, "record": data}, indent=2))
        return

    click.secho(f"\n{full_path}", fg="cyan", bold=True)
    for key, value in data.items():
        rendered = json.dumps(value) if isinstance(value, (dict, list)) else value
        click.echo(f"   {key}: {rendered}")
    click.echo()


@state.command("rm")
@click.argument("path")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def state_rm(ctx: click.Context, path: str, yes: bool, as_json: bool) -> None:
    """Forget a record. The physical resource is left untouched."""
    from stateplane.core.errors import StoreIOError

    config, base_dir = _load(ctx, as_json)
    full_path = _resolve_path(config, path)
    try:
        store = _open_store(config, base_dir)
        if store.get(full_path) is None:
            _fail(f"No record at {full_path}", as_json)
        if not yes and not as_json:
            click.confirm(f"Forget {full_path}?", abort=True)
        store.delete(full_path)
    except StoreIOError as e:
        _fail(str(e), as_json)

    if as_json:
        click.echo(json.dumps({"removed": full_path}, indent=2))
        return
    click.secho(f"✓ Forgot {full_path}", fg="green")


# ── Health + history ────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def health(ctx: click.Context, as_json: bool) -> None:
    """Check state store and last run health."""
    from stateplane.core.observability.health import check_system_health
    from stateplane.core.persistence.factory import create_store

    config, base_dir = _load(ctx, as_json)
    store = create_store(config.scope, config.state, base_dir)
    audit = _audit(config, base_dir) if config.audit.enabled else None
    result = check_system_health(store=store, audit=audit)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.status != "unhealthy" else 1)
        return

    icons = {"healthy": "✅", "degraded": "⚠️ ", "unhealthy": "❌", "unknown": "❔"}
    click.secho(f"\n{icons.get(result.status, '')} {result.status}", bold=True)
    for component in result.components:
        click.echo(f"   {icons.get(component.status, '')} {component.name}: {component.message}")
    click.echo()

    if result.status == "unhealthy":
        sys.exit(1)


@cli.command()
@click.option("-n", "count", default=10, show_default=True, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, as_json: bool) -> None:
    """Show recent runs from the audit ledger."""
    config, base_dir = _load(ctx, as_json)
    entries = _audit(config, base_dir).read_recent(count)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No runs recorded.")
        return

    for entry in reversed(entries):
        ops = ", ".join(f"{k}={v}" for k, v in sorted(entry.operations.items())) or "no changes"
        status_color = {"ok": "green", "partial": "yellow", "failed": "red"}.get(
            entry.status, "white"
        )
        click.echo(f"  {entry.timestamp}  {entry.run_id}  {entry.phase:<7} ", nl=False)
        click.secho(f"{entry.status:<8}", fg=status_color, nl=False)
        click.echo(f"  {ops}")
        if entry.deleted:
            click.echo(f"      deleted: {', '.join(entry.deleted)}")
        for err in entry.errors:
            click.echo(f"      ✗ {err}")


# ── Config ──────────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Project configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate stateplane.yml configuration."""
    from stateplane.core.config.loader import ConfigError, find_config_file, load_config

    path = ctx.obj.get("config_path") or find_config_file()
    warnings: list[str] = []
    try:
        cfg = load_config(path)
    except ConfigError as e:
        if as_json:
            click.echo(json.dumps({"valid": False, "errors": [str(e)], "warnings": []}, indent=2))
            sys.exit(1)
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        click.echo(f"   • {e}")
        click.echo()
        sys.exit(1)

    if cfg.secrets.kdf_iterations < 100_000:
        warnings.append(
            f"secrets.kdf_iterations={cfg.secrets.kdf_iterations} is low for production use"
        )
    if cfg.state.backend == "memory":
        warnings.append("state.backend=memory keeps no state between processes")

    if as_json:
        click.echo(json.dumps({
            "valid": True,
            "scope": cfg.scope,
            "config": cfg.model_dump(mode="json"),
            "warnings": warnings,
        }, indent=2))
        return

    click.secho("✅ Configuration is valid", fg="green", bold=True)
    click.echo(f"   Scope: {cfg.scope}")
    click.echo(f"   State: {cfg.state.backend} ({cfg.state.root})")
    click.echo(f"   Key material from: ${cfg.secrets.password_env}")

    if warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in warnings:
            click.echo(f"   • {warn}")

    click.echo()


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
