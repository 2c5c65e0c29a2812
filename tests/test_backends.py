"""Tests for the CLI and API code-generation backends."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from sprint_agents.backends import AnthropicApiBackend, CliBackend, build_backend
from sprint_agents.config import resolve_config
from sprint_agents.errors import BackendError, ConfigError


class TestCliBackend:
    def test_prompt_goes_to_stdin_without_placeholder(self, tmp_path: Path):
        backend = CliBackend("echoer", "cat")
        argv, via_stdin = backend.build_argv("hi", tmp_path / "p.txt", tmp_path)
        assert argv == ["cat"] and via_stdin

        assert backend.invoke("implement it", workdir=tmp_path) == "implement it"

    def test_placeholders_are_substituted(self, tmp_path: Path):
        backend = CliBackend("tool", "tool --model {model} --file {prompt_file} --cwd {workdir}", model="m1")
        argv, via_stdin = backend.build_argv("hi", tmp_path / "p.txt", tmp_path)
        assert argv == ["tool", "--model", "m1", "--file", str(tmp_path / "p.txt"), "--cwd", str(tmp_path)]
        assert not via_stdin

    def test_prompt_file_and_log_are_written(self, tmp_path: Path):
        workdir = tmp_path / "work"
        workdir.mkdir()
        log_dir = tmp_path / "run" / "implement"
        backend = CliBackend("writer", "sh -c 'cat {prompt_file} > out.txt; echo wrote'")

        output = backend.invoke("make a file", workdir=workdir, log_dir=log_dir)

        assert output.strip() == "wrote"
        assert (workdir / "out.txt").read_text() == "make a file"
        assert (log_dir / "prompt.txt").read_text() == "make a file"
        assert "wrote" in (log_dir / "writer.log").read_text()

    def test_non_zero_exit_is_a_backend_error(self, tmp_path: Path):
        with pytest.raises(BackendError, match="exited with 2"):
            CliBackend("failing", "sh -c 'echo nope >&2; exit 2'").invoke("x", workdir=tmp_path)

    def test_timeout_is_a_backend_error(self, tmp_path: Path):
        with pytest.raises(BackendError, match="timed out"):
            CliBackend("slow", "sleep 30", timeout=0.3).invoke("x", workdir=tmp_path)


class TestAnthropicApiBackend:
    def test_joins_text_blocks(self, tmp_path: Path):
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["headers"] = dict(request.headers)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"content": [{"type": "text", "text": "first"}, {"type": "tool_use"}, {"type": "text", "text": "second"}]},
            )

        backend = AnthropicApiBackend("key", "model-x", transport=httpx.MockTransport(handler))
        text = backend.invoke("do it", workdir=tmp_path, log_dir=tmp_path / "logs")

        assert text == "first\nsecond"
        assert seen["headers"]["x-api-key"] == "key"
        assert seen["body"]["model"] == "model-x"
        assert seen["body"]["messages"] == [{"role": "user", "content": "do it"}]
        assert (tmp_path / "logs" / "claude-api.log").read_text() == "first\nsecond"

    def test_http_error_is_a_backend_error(self, tmp_path: Path):
        transport = httpx.MockTransport(lambda request: httpx.Response(529, text="overloaded"))
        backend = AnthropicApiBackend("key", "model-x", transport=transport)
        with pytest.raises(BackendError, match="529"):
            backend.invoke("do it", workdir=tmp_path)


def test_build_backend_follows_config(tmp_path: Path):
    env = {"SPRINT_AGENTS_API_KEY": "k"}
    claude = build_backend(resolve_config(tmp_path, environ=env))
    assert isinstance(claude, CliBackend) and claude.name == "claude-cli"

    codex = build_backend(resolve_config(tmp_path, {"backend": "codex-cli", "backend_command": "codex {prompt}"}, environ=env))
    assert isinstance(codex, CliBackend) and codex.command == "codex {prompt}"

    api = build_backend(resolve_config(tmp_path, {"backend": "claude-api"}, environ={**env, "ANTHROPIC_API_KEY": "a"}))
    assert isinstance(api, AnthropicApiBackend)


@pytest.mark.parametrize(
    "command",
    [
        "claude --settings '{\"a\": 1}' -p {prompt}",
        "claude -p {prompt",
        "claude -p '{prompt}",
        "claude {unknown}",
    ],
)
def test_unrenderable_command_template_is_a_config_error(tmp_path: Path, command: str):
    config = resolve_config(tmp_path, {"backend_command": command}, environ={"SPRINT_AGENTS_API_KEY": "k"})
    with pytest.raises(ConfigError, match="command template"):
        build_backend(config)
