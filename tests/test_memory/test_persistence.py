"""Tests for the persistence sinks."""

import json

import pytest

from storyrecap.memory.persistence import InMemorySink, JsonFileSink


class TestInMemorySink:
    @pytest.mark.asyncio
    async def test_save_copies_blob(self):
        sink = InMemorySink()
        blob = {"summaries": {"0": {"content": "#0\nx"}}}
        await sink.save("c", blob)
        blob["summaries"].clear()
        assert (await sink.load("c"))["summaries"]["0"]["content"] == "#0\nx"

    @pytest.mark.asyncio
    async def test_missing_and_delete(self):
        sink = InMemorySink()
        assert await sink.load("none") is None
        await sink.save("c", {})
        await sink.delete("c")
        assert await sink.load("c") is None


class TestJsonFileSink:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        sink = JsonFileSink(tmp_path / "data")
        await sink.save("chat one", {"summaries": {}, "characterName": "미라"})
        path = sink.path_for("chat one")
        assert path.exists()
        assert json.loads(path.read_text(encoding="utf-8"))["characterName"] == "미라"
        assert (await sink.load("chat one"))["characterName"] == "미라"

    def test_path_is_sanitized(self, tmp_path):
        sink = JsonFileSink(tmp_path)
        path = sink.path_for("../../etc/passwd")
        assert path.parent == tmp_path
        assert path.name.endswith(".json")

    @pytest.mark.asyncio
    async def test_ids_that_sanitize_alike_stay_apart(self, tmp_path):
        sink = JsonFileSink(tmp_path)
        assert sink.path_for("a/b") != sink.path_for("a_b")
        await sink.save("a/b", {"chatId": "a/b"})
        await sink.save("a_b", {"chatId": "a_b"})
        assert (await sink.load("a/b"))["chatId"] == "a/b"
        assert (await sink.load("a_b"))["chatId"] == "a_b"

    @pytest.mark.asyncio
    async def test_missing_file_loads_none(self, tmp_path):
        assert await JsonFileSink(tmp_path).load("absent") is None

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        sink = JsonFileSink(tmp_path)
        await sink.save("c", {})
        await sink.delete("c")
        assert not sink.path_for("c").exists()

    @pytest.mark.asyncio
    async def test_write_retries_transient_oserror(self, tmp_path, monkeypatch):
        sink = JsonFileSink(tmp_path)
        calls = {"n": 0}
        real_replace = type(tmp_path).replace

        def flaky_replace(self, target):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OSError("file busy")
            return real_replace(self, target)

        monkeypatch.setattr(type(tmp_path), "replace", flaky_replace)
        await sink.save("c", {"ok": True})
        assert calls["n"] == 2
        assert json.loads(sink.path_for("c").read_text(encoding="utf-8")) == {"ok": True}
