"""Tests for the command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from storyrecap import cli

from tests.conftest import make_chat


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda verbose=False: None)


@pytest.fixture
def chat_file(tmp_path):
    path = tmp_path / "chat.json"
    make_chat(12, chat_id="cli-chat").save(path)
    return path


@pytest.fixture
def invoke(tmp_path, chat_file):
    runner = CliRunner()
    data_dir = tmp_path / "data"

    def _invoke(*args, chat=None):
        base = ["--chat", str(chat or chat_file), "--data-dir", str(data_dir)]
        return runner.invoke(cli.main, [*base, *args])

    return _invoke


def _legacy_payload(tmp_path):
    path = tmp_path / "old.json"
    path.write_text(json.dumps({
        "characterName": "Alice",
        "summaries": {"0": {"content": "#0\n* Scenario: The old chat began at the inn."}},
    }), encoding="utf-8")
    return path


class TestCli:
    def test_stats(self, invoke):
        result = invoke("stats")
        assert result.exit_code == 0, result.output
        assert "Messages" in result.output
        assert "12" in result.output

    def test_settings_file(self, invoke, tmp_path):
        settings = tmp_path / "settings.yaml"
        settings.write_text(yaml.safe_dump({"preserveRecentMessages": 0}))
        result = CliRunner().invoke(cli.main, [
            "--chat", str(tmp_path / "chat.json"), "--settings", str(settings),
            "--data-dir", str(tmp_path / "data"), "stats",
        ])
        assert result.exit_code == 0, result.output
        assert "Pending" in result.output

    def test_inject_empty(self, invoke):
        result = invoke("inject")
        assert result.exit_code == 0
        assert "Nothing to inject" in result.output

    def test_import_then_inject(self, invoke, tmp_path):
        result = invoke("import", str(_legacy_payload(tmp_path)), "--mode", "legacy")
        assert result.exit_code == 0, result.output
        assert "Imported 1 entries (legacy)" in result.output

        result = invoke("inject")
        assert result.exit_code == 0
        assert "--- PREVIOUS STORY ---" in result.output
        assert "The old chat began at the inn." in result.output

    def test_import_rejects_bad_file(self, invoke, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"nothing": "here"}), encoding="utf-8")
        result = invoke("import", str(bad))
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_export(self, invoke, tmp_path):
        invoke("import", str(_legacy_payload(tmp_path)), "--mode", "legacy")
        out = tmp_path / "exports" / "summary.json"
        result = invoke("export", str(out))
        assert result.exit_code == 0, result.output
        data = json.loads(out.read_text(encoding="utf-8"))
        assert data["chatId"] == "cli-chat"
        assert data["data"]["legacySummaries"][0]["order"] == 1

    def test_summarize_without_backend(self, invoke):
        result = invoke("summarize")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_summarize_nothing_pending(self, invoke, tmp_path):
        small = tmp_path / "small.json"
        make_chat(3, chat_id="small").save(small)
        result = invoke("summarize", chat=small)
        assert result.exit_code == 0
        assert "Nothing to summarize" in result.output

    def test_resummarize_out_of_range(self, invoke):
        result = invoke("resummarize", "99")
        assert result.exit_code == 1
        assert "outside the chat" in result.output

    def test_check_without_backend(self, invoke):
        result = invoke("check")
        assert result.exit_code == 1
        assert "Backend unavailable" in result.output

    def test_compress_nothing(self, invoke):
        result = invoke("compress")
        assert result.exit_code == 0
        assert "0 entries: 0 -> 0 tokens" in result.output

    def test_summarize_range_without_backend(self, invoke):
        result = invoke("summarize", "--from", "0", "--to", "4")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_summarize_range_outside_chat(self, invoke):
        result = invoke("summarize", "--from", "40", "--to", "50")
        assert result.exit_code == 1
        assert "Invalid range" in result.output

    def test_summarize_range_needs_both_ends(self, invoke):
        result = invoke("summarize", "--from", "3")
        assert result.exit_code == 2
        assert "--from and --to must be given together" in result.output
