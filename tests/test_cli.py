from __future__ import annotations

import json
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import httpx
import pytest
import yaml
from typer.testing import CliRunner

from patchstream import cli
from patchstream.models.chat_stream import ChatDelta, StreamFrame
from patchstream.models.llm_client import ChatClient, ChatRequest
from patchstream.models.registry import LookupMode, ModelRegistry
from patchstream.settings import GenerationSettings

runner = CliRunner()

TITLE_PATCH = "<!-- patch: App.tsx -->\n<replace><find>Tailwind v3</find><with>Patchstream</with></replace>"


class CannedClient(ChatClient):
    def __init__(self, text: str) -> None:
        super().__init__("qwen2.5-coder-7b")
        self._text = text
        self.requests: List[ChatRequest] = []

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamFrame]:
        self.requests.append(request)
        yield StreamFrame(delta=ChatDelta(content=self._text), wire_line="data: {}")
        yield StreamFrame(wire_line="data: [DONE]", done=True)


def _write_config(tmp_path: Path, model: str = "qwen2.5-coder-7b") -> Path:
    path = tmp_path / "patchstream.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "model": {"name": model, "lookup_mode": "off", "hint_cache_path": "hints.json"},
                "run": {"quality_mode": "single-pass", "auto_repair_attempts": 0},
            }
        ),
        encoding="utf-8",
    )
    return path


def test_init_writes_template_once(tmp_path: Path) -> None:
    path = tmp_path / "patchstream.yaml"

    first = runner.invoke(cli.app, ["init", "--config", str(path)])
    second = runner.invoke(cli.app, ["init", "--config", str(path)])
    forced = runner.invoke(cli.app, ["init", "--config", str(path), "--force"])

    assert first.exit_code == 0, first.output
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["run"]["quality_mode"] == "adaptive-best-of-2"
    assert second.exit_code == 1
    assert "already exists" in second.output
    assert forced.exit_code == 0


def test_apply_writes_patched_files(tmp_path: Path, project_dir: Path) -> None:
    response = tmp_path / "response.txt"
    response.write_text(TITLE_PATCH, encoding="utf-8")

    result = runner.invoke(cli.app, ["apply", str(response), "--project", str(project_dir), "--write"])

    assert result.exit_code == 0, result.output
    assert "Changed files: App.tsx" in result.output
    assert "Wrote 1 file(s)." in result.output
    assert "Patchstream" in (project_dir / "App.tsx").read_text(encoding="utf-8")


def test_apply_json_reports_failures(tmp_path: Path, project_dir: Path) -> None:
    response = tmp_path / "response.txt"
    response.write_text("Just prose, no blocks.", encoding="utf-8")
    before = (project_dir / "App.tsx").read_text(encoding="utf-8")

    result = runner.invoke(cli.app, ["apply", str(response), "--project", str(project_dir), "--json", "--write"])

    assert result.exit_code == 2
    payload = json.loads(result.output)
    assert payload["failed_patches"] == ["PROTOCOL_VIOLATION: No marker blocks found."]
    assert payload["written"] == []
    assert (project_dir / "App.tsx").read_text(encoding="utf-8") == before


def test_validate_reports_status(project_dir: Path) -> None:
    healthy = runner.invoke(cli.app, ["validate", "--project", str(project_dir)])
    (project_dir / "App.tsx").write_text("const App = () => null;", encoding="utf-8")
    broken = runner.invoke(cli.app, ["validate", "--project", str(project_dir)])

    assert healthy.exit_code == 0, healthy.output
    assert "Validation: ok" in healthy.output
    assert broken.exit_code == 1
    assert "Validation: failed" in broken.output


def test_run_writes_accepted_changes(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _write_config(tmp_path)
    client = CannedClient(TITLE_PATCH)

    def _build_client(settings: GenerationSettings) -> ChatClient:
        return client

    monkeypatch.setattr(cli, "_build_client", _build_client)

    result = runner.invoke(
        cli.app, ["run", "Rename the title", "--project", str(project_dir), "--config", str(config)]
    )

    assert result.exit_code == 0, result.output
    assert len(client.requests) == 1
    assert "Outcome: finalize" in result.output
    assert "Updated files: App.tsx" in result.output
    assert "Patchstream" in (project_dir / "App.tsx").read_text(encoding="utf-8")
    assert not (tmp_path / "hints.json").exists()


def test_run_dry_run_leaves_project_untouched(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _write_config(tmp_path)
    monkeypatch.setattr(cli, "_build_client", lambda settings: CannedClient(TITLE_PATCH))
    before = (project_dir / "App.tsx").read_text(encoding="utf-8")

    result = runner.invoke(
        cli.app,
        ["run", "Rename the title", "--project", str(project_dir), "--config", str(config), "--dry-run", "--json"],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert payload["written"] == []
    assert (project_dir / "App.tsx").read_text(encoding="utf-8") == before


def test_run_with_unknown_model_size_fails(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _write_config(tmp_path, model="local-model")
    monkeypatch.setattr(cli, "_build_client", lambda settings: CannedClient(TITLE_PATCH))

    result = runner.invoke(
        cli.app, ["run", "Rename the title", "--project", str(project_dir), "--config", str(config)]
    )

    assert result.exit_code == 1
    assert "Generation failed: Unknown model size." in result.output


def test_models_lists_profiles(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"id": "qwen2.5-coder-7b"}, {"id": "mystery"}]})

    def _build_registry(settings: GenerationSettings, config: str) -> Tuple[ModelRegistry, Optional[Path]]:
        return ModelRegistry(lookup_mode=LookupMode.OFF, transport=httpx.MockTransport(handler)), None

    monkeypatch.setattr(cli, "_build_registry", _build_registry)

    result = runner.invoke(cli.app, ["models", "--config", str(tmp_path / "absent.yaml")])

    assert result.exit_code == 0, result.output
    assert "- qwen2.5-coder-7b: small (7B, name)" in result.output
    assert "- mystery: unknown (unknown size, unknown)" in result.output


def test_run_leaves_binary_assets_on_disk(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _write_config(tmp_path)
    logo = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"
    (project_dir / "assets").mkdir()
    (project_dir / "assets" / "logo.png").write_bytes(logo)
    monkeypatch.setattr(cli, "_build_client", lambda settings: CannedClient(TITLE_PATCH))

    result = runner.invoke(
        cli.app,
        ["run", "Rename the title", "--project", str(project_dir), "--config", str(config), "--json"],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["changed_files"] == ["App.tsx"]
    assert payload["written"] == ["App.tsx"]
    assert (project_dir / "assets" / "logo.png").read_bytes() == logo


def test_prose_reply_with_assets_is_not_a_change(
    tmp_path: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _write_config(tmp_path)
    logo = b"\x89PNG\r\n\x1a\n\x00\x01"
    (project_dir / "assets").mkdir()
    (project_dir / "assets" / "logo.png").write_bytes(logo)
    monkeypatch.setattr(cli, "_build_client", lambda settings: CannedClient("Sure, I will rename it."))

    result = runner.invoke(
        cli.app,
        ["run", "Rename the title", "--project", str(project_dir), "--config", str(config), "--json"],
    )

    assert result.exit_code == 2
    payload = json.loads(result.output)
    assert payload["phase"] == "failed"
    assert payload["changed_files"] == []
    assert payload["written"] == []
    assert (project_dir / "assets" / "logo.png").read_bytes() == logo
