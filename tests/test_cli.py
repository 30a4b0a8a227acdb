"""End-to-end tests for the chatstream CLI, driven through typer's CliRunner."""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from chatstream import __version__
from chatstream.cli.app import app
from chatstream.config import _ENV_MAP

from tests.mock_streams import CUSTOM_STREAM, DEEPSEEK_TEXT_STREAM

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    for var in (*_ENV_MAP, "CHATSTREAM_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("CHATSTREAM_MOCK_DELAY", "0")
    monkeypatch.chdir(tmp_path)


def _event_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith('{"eventType"')]


class TestCommands:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_demo(self):
        result = runner.invoke(app, ["demo", "--delay", "0"])
        assert result.exit_code == 0, result.output
        assert "452,300" in result.output
        assert "Calling tool: search_database" in result.output

    def test_chat_in_mock_mode_exports_snapshot(self, tmp_path):
        snapshot = tmp_path / "conv.json"
        result = runner.invoke(app, ["chat", "hello", "--mock", "--export", str(snapshot)])

        assert result.exit_code == 0, result.output
        data = json.loads(snapshot.read_text(encoding="utf-8"))
        roles = [m["role"] for m in data["conversation"]["messages"]]
        assert roles[:2] == ["user", "assistant"]

    def test_chat_resume(self, tmp_path):
        snapshot = tmp_path / "conv.json"
        runner.invoke(app, ["chat", "first", "--mock", "--export", str(snapshot)])
        result = runner.invoke(
            app,
            ["chat", "second", "--mock", "--resume", str(snapshot), "--export", str(snapshot)],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(snapshot.read_text(encoding="utf-8"))
        users = [m["content"] for m in data["conversation"]["messages"] if m["role"] == "user"]
        assert users == ["first", "second"]

    def test_chat_unknown_provider(self):
        result = runner.invoke(app, ["chat", "hello", "--provider", "nope"])
        assert result.exit_code == 1
        assert "ConfigurationError" in result.output

    def test_ask_in_mock_mode(self):
        result = runner.invoke(app, ["ask", "ping"])
        assert result.exit_code == 0, result.output


class TestDecode:
    def test_decode_deepseek_capture(self, tmp_path):
        capture = tmp_path / "deepseek.sse"
        capture.write_text(DEEPSEEK_TEXT_STREAM, encoding="utf-8")

        result = runner.invoke(app, ["decode", str(capture), "--provider", "deepseek", "--chunk-size", "7"])

        assert result.exit_code == 0, result.output
        events = _event_lines(result.output)
        assert [e["eventType"] for e in events] == ["TEXT", "TEXT", "END"]
        assert "".join(e["content"]["text"] for e in events) == "Hello world"

    def test_decode_custom_capture_with_garbage(self, tmp_path):
        capture = tmp_path / "custom.sse"
        capture.write_text("data: {garbage\n\n" + CUSTOM_STREAM, encoding="utf-8")

        result = runner.invoke(app, ["decode", str(capture)])

        assert result.exit_code == 0, result.output
        events = _event_lines(result.output)
        assert [e["eventSn"] for e in events] == [0, 1, 2, 3]


class TestConfigCommands:
    def test_show_masks_key(self, tmp_path):
        cfg = tmp_path / "chatstream.yaml"
        cfg.write_text("provider:\n  name: deepseek\n  api_key: sk-secret\n", encoding="utf-8")

        result = runner.invoke(app, ["config", "show"])

        assert result.exit_code == 0, result.output
        assert "sk-secret" not in result.output
        assert "deepseek" in result.output

    def test_validate_reports_bad_provider(self, tmp_path):
        cfg = tmp_path / "bad.yaml"
        cfg.write_text("provider:\n  name: mystery\n", encoding="utf-8")

        result = runner.invoke(app, ["--config", str(cfg), "config", "validate"])

        assert result.exit_code == 1
        assert "Config validation failed" in result.output

    def test_validate_ok(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0, result.output
        assert "Config is valid" in result.output
