"""CLI commands for parsing model edits and running generation against a project."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .models import ChatClient, HintCache, LLMClientError, ModelRegistry, OpenAIChatStreamClient
from .orchestrator import RunOrchestrator, RunResult
from .protocol.parser import StreamUpdate, parse_response
from .settings import (
    DEFAULT_CONFIG_NAME,
    GenerationSettings,
    SettingsError,
    copy_config_template,
    load_config,
    resolve_settings,
    write_config,
)
from .tools.workspace import read_project_files, write_project_files
from .validation import run_preview_preflight, validate_project

APP_HELP = "Streaming edit-protocol parser and generation runner."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging for every command."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Unknown log level: {log_level}")
        raise typer.Exit(code=1)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load_settings(config: str) -> GenerationSettings:
    config_path = Path(config)
    try:
        return resolve_settings(load_config(config_path))
    except SettingsError as error:
        typer.echo(f"Invalid configuration: {error}")
        raise typer.Exit(code=1) from error


def _load_project(project: str) -> tuple[Path, Dict[str, str]]:
    root = Path(project)
    if not root.is_dir():
        typer.echo(f"Project directory not found: {root}")
        raise typer.Exit(code=1)
    return root, read_project_files(root, ignore=[DEFAULT_CONFIG_NAME])


def _build_registry(settings: GenerationSettings, config: str) -> tuple[ModelRegistry, Optional[Path]]:
    cache_path: Optional[Path] = None
    if settings.hint_cache_path:
        cache_path = Path(settings.hint_cache_path)
        if not cache_path.is_absolute():
            cache_path = Path(config).resolve().parent / cache_path
        cache = HintCache.load(cache_path, settings.lookup_ttl_hours)
    else:
        cache = HintCache(settings.lookup_ttl_hours)
    return ModelRegistry(lookup_mode=settings.lookup_mode, cache=cache), cache_path


def _build_client(settings: GenerationSettings) -> ChatClient:
    return OpenAIChatStreamClient(api_url=settings.api_url, model=settings.model, timeout=settings.timeout)


def _load_history(history: Optional[str]) -> List[Dict[str, str]]:
    if not history:
        return []
    try:
        data = json.loads(Path(history).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        typer.echo(f"Failed to read history: {error}")
        raise typer.Exit(code=1) from error
    if not isinstance(data, list):
        typer.echo("History must be a JSON list of {role, content} messages.")
        raise typer.Exit(code=1)
    return [
        {"role": str(item.get("role", "")), "content": str(item.get("content", ""))}
        for item in data
        if isinstance(item, dict)
    ]


def _render_update(update: StreamUpdate) -> None:
    typer.echo(f"Stage: {update.parser_stage.value} (confidence {update.confidence:.2f})")
    typer.echo(f"Markers: {update.marker_count} | Applied operations: {update.applied_ops}")
    typer.echo(f"Changed files: {', '.join(update.changed_files) if update.changed_files else 'none'}")
    if update.warnings:
        typer.echo("Warnings:")
        for warning in update.warnings:
            typer.echo(f"  - {warning}")
    if update.failed_patches:
        typer.echo("Failures:")
        for failure in update.failed_patches:
            typer.echo(f"  - {failure}")
    if update.repair_hints:
        typer.echo(f"Repair hints: {', '.join(update.repair_hints)}")


def _render_run_result(result: RunResult) -> None:
    typer.echo(f"Outcome: {result.phase.value}")
    typer.echo(f"Attempts: {len(result.attempts)}")
    for attempt in result.attempts:
        label = attempt.selected_label or "-"
        typer.echo(
            f"  - #{attempt.attempt_index} {attempt.attempt_type.value}: selected {label} (score {attempt.score})"
        )
    typer.echo(f"Decision: {result.decision_reason}")
    typer.echo(f"Updated files: {', '.join(result.changed_files) if result.changed_files else 'none'}")
    typer.echo(f"Applied operations: {result.applied_ops}")
    if result.warnings:
        typer.echo("Warnings:")
        for warning in result.warnings:
            typer.echo(f"  - {warning}")
    if result.alternative is not None:
        typer.echo(f"Alternative candidate available: {result.alternative.label}")
    if result.failure_message:
        typer.echo(result.failure_message)
    if result.repair_from_evidence_prompt:
        typer.echo("Repair prompt:")
        typer.echo(result.repair_from_evidence_prompt)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write the default configuration template."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, copy_config_template())
    typer.echo(f"Wrote configuration to {config_path}.")


@app.command()
def apply(
    response: str = typer.Argument(..., help="Saved model response text, or '-' to read stdin."),
    project: str = typer.Option(".", "--project", "-p", help="Project directory to patch."),
    write: bool = typer.Option(False, "--write", help="Write changed files back to the project."),
    as_json: bool = typer.Option(False, "--json", help="Print the parse result as JSON."),
) -> None:
    """Parse a saved model response against a project (final pass)."""
    root, files = _load_project(project)
    if response == "-":
        text = sys.stdin.read()
    else:
        try:
            text = Path(response).read_text(encoding="utf-8")
        except OSError as error:
            typer.echo(f"Failed to read response: {error}")
            raise typer.Exit(code=1) from error

    update = parse_response(text, base_files=files, is_final=True, raw_model_text=text)
    written: List[str] = []
    if write and update.changed_files:
        written = write_project_files(root, update.files, update.changed_files)

    if as_json:
        payload: Dict[str, Any] = update.to_dict()
        payload["written"] = written
        typer.echo(json.dumps(payload, indent=2))
    else:
        _render_update(update)
        if write:
            typer.echo(f"Wrote {len(written)} file(s).")
    if update.failed_patches:
        raise typer.Exit(code=2)


@app.command()
def validate(
    project: str = typer.Option(".", "--project", "-p", help="Project directory to validate."),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON."),
) -> None:
    """Run structural validation and preview preflight on a project."""
    _, files = _load_project(project)
    validation = validate_project(files)
    preflight = run_preview_preflight(files)
    if as_json:
        typer.echo(json.dumps({"validation": validation.to_dict(), "preflight": preflight.to_dict()}, indent=2))
    else:
        typer.echo(f"Validation: {'ok' if validation.valid else 'failed'}")
        for error in validation.errors:
            typer.echo(f"  - {error}")
        typer.echo(f"Preflight: {'ok' if preflight.ok else 'failed'}")
        for error in preflight.fatal_errors:
            typer.echo(f"  - {error}")
        for warning in preflight.warnings:
            typer.echo(f"  ~ {warning}")
    if not validation.valid or not preflight.ok:
        raise typer.Exit(code=1)


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Change request for the model."),
    project: str = typer.Option(".", "--project", "-p", help="Project directory to update."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    history: Optional[str] = typer.Option(
        None,
        "--history",
        help="JSON file with prior chat messages.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Do not write accepted files."),
    as_json: bool = typer.Option(False, "--json", help="Print the run result as JSON."),
) -> None:
    """Generate, select, retry and repair edits for PROMPT, then write accepted files."""
    settings = _load_settings(config)
    root, files = _load_project(project)
    registry, cache_path = _build_registry(settings, config)
    orchestrator = RunOrchestrator.from_client(_build_client(settings), settings, registry=registry)
    try:
        result = asyncio.run(orchestrator.run(prompt, files, _load_history(history)))
    except LLMClientError as error:
        typer.echo(f"Generation failed: {error}")
        raise typer.Exit(code=1) from error
    finally:
        if cache_path is not None and len(registry.cache):
            registry.cache.save(cache_path)

    written: List[str] = []
    if not dry_run and result.kept_generated_files and result.changed_files:
        written = write_project_files(root, result.files, result.changed_files)
    if as_json:
        payload = result.to_dict()
        payload["written"] = written
        typer.echo(json.dumps(payload, indent=2))
    else:
        _render_run_result(result)
    if not result.kept_generated_files:
        raise typer.Exit(code=2)


@app.command()
def models(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print models as JSON."),
) -> None:
    """List models served by the configured endpoint with size hints."""
    settings = _load_settings(config)
    registry, cache_path = _build_registry(settings, config)
    try:
        model_ids = asyncio.run(registry.discover_models(settings.api_url))
    except LLMClientError as error:
        typer.echo(f"Model discovery failed: {error}")
        raise typer.Exit(code=1) from error
    if cache_path is not None and len(registry.cache):
        registry.cache.save(cache_path)

    profiles = [registry.profile_for(model_id) for model_id in model_ids]
    if as_json:
        typer.echo(json.dumps([profile.to_dict() for profile in profiles], indent=2))
        return
    if not profiles:
        typer.echo("No models reported by the server.")
        return
    for profile in profiles:
        params = f"{profile.approx_params_b:g}B" if profile.approx_params_b is not None else "unknown size"
        typer.echo(f"- {profile.id}: {profile.tier.value} ({params}, {profile.source.value})")


if __name__ == "__main__":
    app()
