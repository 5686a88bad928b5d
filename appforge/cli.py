"""CLI entrypoint for appforge."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, TextIO

import click

from appforge.core.config import load_config
from appforge.core.exceptions import AppForgeError, ConfigError
from appforge.core.factory import ComponentBundle, ComponentFactory
from appforge.core.models import BackendResponse
from appforge.llm.client import SendOptions
from appforge.llm.credentials import looks_like_api_key
from appforge.recovery import ErrorClassifier, FixAdvisor


def _setup_logging(verbose: bool = False, config_dir: Optional[Path] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    try:
        config = load_config(config_dir=config_dir)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True))


def _bundle(ctx: click.Context) -> ComponentBundle:
    try:
        return ComponentFactory.create(config_dir=ctx.obj.get("config_dir"))
    except AppForgeError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Config directory containing default.yaml.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path]) -> None:
    """appforge command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    _setup_logging(verbose=verbose, config_dir=config_dir)


# ---------------------------------------------------------------------------
# Credential management
# ---------------------------------------------------------------------------

@cli.group("keys")
def keys() -> None:
    """Manage the primary and backup backend credentials."""


def _warn_unusual_key(secret: str) -> None:
    if secret.strip() and not looks_like_api_key(secret):
        click.echo(
            "Warning: key does not look like a backend API key "
            "(expected an AIza... key longer than 20 characters). Storing anyway.",
            err=True,
        )


@keys.command("set-primary")
@click.option("--secret", prompt=True, hide_input=True, help="Primary API key.")
@click.pass_context
def keys_set_primary(ctx: click.Context, secret: str) -> None:
    """Store the primary credential and make it active."""
    _warn_unusual_key(secret)
    bundle = _bundle(ctx)
    try:
        bundle.vault.set_primary(secret)
        bundle.vault.mark_setup_complete()
    except AppForgeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Primary credential stored ({bundle.vault.status().primary_masked})")


@keys.command("set-backup")
@click.option("--secret", prompt=True, hide_input=True, help="Backup API key.")
@click.pass_context
def keys_set_backup(ctx: click.Context, secret: str) -> None:
    """Store the backup credential used for auth failover."""
    _warn_unusual_key(secret)
    bundle = _bundle(ctx)
    try:
        bundle.vault.set_backup(secret)
    except AppForgeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Backup credential stored ({bundle.vault.status().backup_masked})")


@keys.command("status")
@click.option("--json", "json_out", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def keys_status(ctx: click.Context, json_out: bool) -> None:
    """Show masked credentials, failure counts and the active role."""
    status = _bundle(ctx).vault.status()
    if json_out:
        _echo_json(status.model_dump(mode="json"))
        return

    click.echo(click.style("Credentials:", bold=True))
    click.echo(
        f"  Primary:  {status.primary_masked if status.primary_configured else '(not set)'}"
        f"  failures={status.primary_failures}"
    )
    click.echo(
        f"  Backup:   {status.backup_masked if status.backup_configured else '(not set)'}"
        f"  failures={status.backup_failures}"
    )
    click.echo(f"  Active:   {status.active_role.value}")
    click.echo(f"  Setup:    {'complete' if status.setup_complete else 'incomplete'}")


@keys.command("failover")
@click.pass_context
def keys_failover(ctx: click.Context) -> None:
    """Make the backup credential active."""
    if not _bundle(ctx).vault.failover():
        raise click.ClickException("No backup credential configured.")
    click.echo("Backup credential is now active.")


@keys.command("restore-primary")
@click.pass_context
def keys_restore_primary(ctx: click.Context) -> None:
    """Make the primary credential active again."""
    _bundle(ctx).vault.restore_primary()
    click.echo("Primary credential is now active.")


@keys.command("clear")
@click.confirmation_option(prompt="Remove all stored credentials?")
@click.pass_context
def keys_clear(ctx: click.Context) -> None:
    """Remove every stored credential and counter."""
    _bundle(ctx).vault.clear()
    click.echo("All credentials cleared.")


# ---------------------------------------------------------------------------
# Build-log triage
# ---------------------------------------------------------------------------

@cli.command("triage")
@click.argument("logfile", type=click.File("r", encoding="utf-8", errors="replace"))
@click.option(
    "--attempts",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Auto-fix attempts already made for this build.",
)
@click.option("--json", "json_out", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def triage(ctx: click.Context, logfile: TextIO, attempts: int, json_out: bool) -> None:
    """Classify a build log and recommend a fix (use - for stdin)."""
    try:
        config = load_config(config_dir=ctx.obj.get("config_dir"))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    classifier = ErrorClassifier()
    advisor = FixAdvisor(max_auto_fix_attempts=config.orchestrator.max_auto_fix_attempts)
    error = classifier.classify(logfile.read())
    suggestion = advisor.suggest(error)
    recommendation = advisor.recommend_retry(attempts, error)

    if json_out:
        _echo_json({
            "error": error.model_dump(mode="json"),
            "suggestion": {
                "fix_text": suggestion.fix_text,
                "action": suggestion.action.value,
                "confidence": suggestion.confidence,
            },
            "recommendation": recommendation.model_dump(mode="json"),
        })
        return

    click.echo(click.style(f"[{error.severity.value}] {error.type.value}", bold=True))
    click.echo(f"  Message:     {error.message}")
    if error.details:
        click.echo(f"  Details:     {error.details}")
    click.echo(f"  Fix:         {suggestion.fix_text}")
    click.echo(f"  Action:      {suggestion.action.value} (confidence {suggestion.confidence}%)")
    color = "green" if recommendation.can_retry else "yellow"
    click.echo(click.style(
        f"  Retry:       {'yes' if recommendation.can_retry else 'no'} - {recommendation.reason}",
        fg=color,
    ))


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------

@cli.command("ask")
@click.argument("prompt")
@click.option("--system", "system_instruction", default="", help="System instruction.")
@click.option("--thinking", is_flag=True, default=False, help="Enable thinking mode.")
@click.option("--model", default=None, help="Override the configured model.")
@click.pass_context
def ask(
    ctx: click.Context,
    prompt: str,
    system_instruction: str,
    thinking: bool,
    model: Optional[str],
) -> None:
    """Send one prompt through rate limiting, quota and failover."""
    bundle = _bundle(ctx)
    try:
        result = bundle.backend_client.generate_text(
            prompt,
            system_instruction=system_instruction,
            options=SendOptions(use_thinking=thinking, model=model),
        )
    finally:
        ComponentFactory.close(bundle)

    if not result.ok:
        error = result.error
        raise click.ClickException(f"{error.kind.value} ({error.code}): {error.message}")
    click.echo(_response_text(result.response))
    click.echo(bundle.quota.usage_stats(), err=True)


def _response_text(response: Optional[BackendResponse]) -> str:
    if response is None:
        return ""
    return response.text or json.dumps(response.candidates, indent=2)


def main() -> None:
    """Entry point used by `appforge` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env", override=False)
    cli()


if __name__ == "__main__":
    main()
