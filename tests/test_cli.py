"""Tests for the chatrelay CLI.

Covers --version, the chunk and models commands, and the chat command with
a scripted provider via CliRunner.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from chatrelay import __version__
from chatrelay.cli import app
from chatrelay.providers.base import ChatStream, ModelProvider, StreamOutcome
from chatrelay.schemas.config import ModelConfig
from chatrelay.schemas.messages import FinishReason

# NO_COLOR=1 prevents Rich from injecting ANSI codes inside option names,
# which breaks substring matching in CI (headless, no TTY).
# COLUMNS=200 prevents wrapping that could split a flag across lines.
runner = CliRunner(env={"NO_COLOR": "1", "COLUMNS": "200"})

_BUILD_PROVIDER = "chatrelay.cli.build_provider"


# ── Factories ──────────────────────────────────────────────────


class StaticProvider(ModelProvider):
    """Answers every call with the same fragments, or raises ``error``."""

    def __init__(self, fragments=None, error: Exception | None = None):
        super().__init__(
            ModelConfig(key="openai/gpt-4o-mini", provider="openai", model="gpt-4o-mini")
        )
        self._fragments = fragments or []
        self._error = error
        self.calls = 0

    def stream_chat(self, messages, *, cancel_event=None, timeout=120, **options):
        self.calls += 1

        async def _produce(stream):
            try:
                if self._error is not None:
                    raise self._error
                for fragment in self._fragments:
                    yield fragment
            finally:
                stream.resolve(
                    StreamOutcome(text="".join(self._fragments), finish_reason=FinishReason.STOP)
                )

        return ChatStream(_produce)


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "chatrelay.toml"
    path.write_text(
        """
[bot]
default_model = "test/alpha"

[providers.test]
api_key_env = "CHATRELAY_TEST_KEY_UNSET"

[models."test/alpha"]
display_name = "Alpha"
cost_input = 1.5

[models."local/beta"]
use_tools = false
""",
        encoding="utf-8",
    )
    return path


# ── Global options ─────────────────────────────────────────────


class TestGlobal:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("chat", "chunk", "models"):
            assert command in result.output


# ── chatrelay chunk ────────────────────────────────────────────


class TestChunkCommand:
    def test_chunks_file(self, tmp_path):
        source = tmp_path / "doc.md"
        source.write_text("word " * 40, encoding="utf-8")
        result = runner.invoke(app, ["chunk", str(source), "--max-length", "100"])
        assert result.exit_code == 0
        assert "chunk 1/2" in result.output
        assert "chunk 2/2" in result.output
        assert "200 chars -> 2 chunks" in result.output

    def test_last_length(self, tmp_path):
        source = tmp_path / "doc.md"
        source.write_text("word " * 40, encoding="utf-8")
        result = runner.invoke(
            app, ["chunk", str(source), "-n", "100", "--last-length", "50"]
        )
        assert result.exit_code == 0
        assert "-> 3 chunks" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["chunk", str(tmp_path / "nope.md")])
        assert result.exit_code != 0


# ── chatrelay models ───────────────────────────────────────────


class TestModelsCommand:
    def test_lists_configured_models(self, tmp_path):
        result = runner.invoke(app, ["models", "--config", str(_write_config(tmp_path))])
        assert result.exit_code == 0
        assert "test/alpha *" in result.output
        assert "local/beta" in result.output
        assert "openai/alpha" in result.output
        assert "CHATRELAY_TEST_KEY_UNSET not set" in result.output
        assert "2 models configured" in result.output

    def test_shipped_defaults(self):
        result = runner.invoke(app, ["models"])
        assert result.exit_code == 0
        assert "openai/gpt-4o-mini *" in result.output

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["models", "--config", str(tmp_path / "nope.toml")])
        assert result.exit_code == 1
        assert "Error loading config" in result.output


# ── chatrelay chat ─────────────────────────────────────────────


class TestChatCommand:
    def test_unknown_model(self, tmp_path):
        result = runner.invoke(
            app, ["chat", "hi", "--config", str(_write_config(tmp_path)), "--model", "x/y"]
        )
        assert result.exit_code == 1
        assert "Model not found" in result.output
        assert "local/beta, test/alpha" in result.output

    def test_one_shot(self, tmp_path):
        provider = StaticProvider(["Hello from ", "the model"])
        with patch(_BUILD_PROVIDER, return_value=provider):
            result = runner.invoke(
                app, ["chat", "hi", "--config", str(_write_config(tmp_path)), "--no-tools"]
            )
        assert result.exit_code == 0
        assert "Hello from the model" in result.output
        assert provider.calls == 1

    def test_one_shot_failure(self, tmp_path):
        provider = StaticProvider(error=RuntimeError("upstream down"))
        with patch(_BUILD_PROVIDER, return_value=provider):
            result = runner.invoke(
                app, ["chat", "hi", "--config", str(_write_config(tmp_path))]
            )
        assert result.exit_code == 1
        assert "upstream down" in result.output
        # bot.max_retry defaults to 3
        assert provider.calls == 3

    def test_interactive_exit(self, tmp_path):
        provider = StaticProvider(["pong"])
        with patch(_BUILD_PROVIDER, return_value=provider):
            result = runner.invoke(
                app,
                ["chat", "--config", str(_write_config(tmp_path))],
                input="ping\n/exit\n",
            )
        assert result.exit_code == 0
        assert "pong" in result.output
        assert provider.calls == 1
