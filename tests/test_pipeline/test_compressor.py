"""Tests for two-phase compression."""

import pytest

from storyrecap.config import SummarizerSettings
from storyrecap.host import BufferPromptSink
from storyrecap.llm.gateway import LLMGateway
from storyrecap.pipeline.compressor import Compressor
from storyrecap.pipeline.injection import InjectionBuilder
from storyrecap.pipeline.prompts import PromptBuilder
from storyrecap.pipeline.run_state import RunGuard, RunStatus
from storyrecap.utils.tokens import TokenCounter

from tests.conftest import make_chat, word_count


def _long_body(index: int, words: int = 400) -> str:
    return "* Scenario: " + " ".join(f"event{index}-{k}" for k in range(words - 2))


def _compressor(host, store, chat, guard=None, **options):
    settings = SummarizerSettings(**options)
    return Compressor(
        settings,
        store,
        chat,
        LLMGateway(settings, host=host),
        PromptBuilder(settings, TokenCounter()),
        guard or RunGuard(),
    )


class TestPreview:
    @pytest.mark.asyncio
    async def test_compress_all_then_apply(self, host, store, prompt_sink):
        chat = make_chat(12)
        for i in range(10):
            store.set_summary(i, i, _long_body(i))
        tokens = TokenCounter(word_count)
        original_total = sum([await tokens.count(s.entry.content) for s in store.spans()])
        assert original_total >= 4000

        compressor = _compressor(host, store, chat)
        preview = await compressor.preview()
        assert preview.status == RunStatus.SUCCEEDED
        assert sorted(preview.compressed_by_key) == list(range(10))
        compressed_total = sum([await tokens.count(t) for t in preview.compressed_by_key.values()])
        assert compressed_total < 2500
        # preview leaves the store alone
        assert store.get_summary(3).content.startswith("#3\n* Scenario: event3-0")

        before = store.export_full()
        result = compressor.apply(preview)
        assert result.applied == 10
        assert result.backup["data"]["summaries"] == before["data"]["summaries"]
        assert store.get_summary(3).content == "#3\n* Scenario: Condensed recap of #3."

        injection = InjectionBuilder(
            SummarizerSettings(), store, chat, tokens, prompt_sink
        )
        built = await injection.build_and_install()
        assert "Condensed recap of #3." in built.text
        assert "event3-0" not in prompt_sink.text

    @pytest.mark.asyncio
    async def test_group_entries_keep_range(self, host, store):
        store.set_summary(0, 4, _long_body(0, 50))
        preview = await _compressor(host, store, make_chat(5)).preview()
        assert preview.compressed_by_key[4] == "#0-4\n* Scenario: Condensed recap of #0-4."

    @pytest.mark.asyncio
    async def test_selected_keys_only(self, host, store):
        for i in range(5):
            store.set_summary(i, i, _long_body(i, 30))
        store.invalidate_covering(4, "message edited")
        preview = await _compressor(host, store, make_chat(5)).preview([1, 3, 4])
        assert sorted(preview.compressed_by_key) == [1, 3]

    @pytest.mark.asyncio
    async def test_batches_follow_batch_size(self, host, store):
        for i in range(5):
            store.set_summary(i, i, _long_body(i, 30))
        progress = []
        compressor = _compressor(host, store, make_chat(5), batch_size=2)
        await compressor.preview(on_progress=lambda done, total: progress.append((done, total)))
        assert len(host.prompts) == 3
        assert progress == [(2, 5), (4, 5), (5, 5)]

    @pytest.mark.asyncio
    async def test_missing_sections_fail_only_those(self, host, store):
        for i in range(3):
            store.set_summary(i, i, _long_body(i, 30))
        host.responder = lambda prompt: "#0\n* Scenario: A much shorter opening.\n\n#2\n* Scenario: And a brief ending."
        preview = await _compressor(host, store, make_chat(3)).preview()
        assert preview.status == RunStatus.FAILED
        assert sorted(preview.compressed_by_key) == [0, 2]
        assert preview.failed_keys == [1]

    @pytest.mark.asyncio
    async def test_llm_failure_marks_batch_failed(self, host, store):
        for i in range(4):
            store.set_summary(i, i, _long_body(i, 30))
        calls = []

        def responder(prompt):
            calls.append(prompt)
            if len(calls) == 2:
                raise ConnectionError("connection reset")
            return "#0\n* Scenario: A much shorter opening.\n\n#1\n* Scenario: A brief second act."

        host.responder = responder
        compressor = _compressor(host, store, make_chat(4), batch_size=2)
        preview = await compressor.preview()
        assert preview.status == RunStatus.FAILED
        assert sorted(preview.failed_keys) == [2, 3]
        assert sorted(preview.compressed_by_key) == [0, 1]
        assert not compressor.guard.is_running

    @pytest.mark.asyncio
    async def test_truncated_rewrite_rejected(self, host, store):
        store.set_summary(0, 0, _long_body(0, 30))
        host.responder = lambda prompt: '#0\n* Scenario: She said "wait for'
        preview = await _compressor(host, store, make_chat(1)).preview()
        assert preview.failed_keys == [0]
        assert preview.compressed_by_key == {}

    @pytest.mark.asyncio
    async def test_cancel(self, host, store):
        for i in range(4):
            store.set_summary(i, i, _long_body(i, 30))
        compressor = _compressor(host, store, make_chat(4), batch_size=2)

        async def on_call(prompt):
            compressor.guard.request_stop()

        host.on_call = on_call
        preview = await compressor.preview()
        assert preview.status == RunStatus.CANCELLED
        assert preview.compressed_by_key == {}
        assert len(host.prompts) == 1

    @pytest.mark.asyncio
    async def test_shared_guard(self, host, store):
        store.set_summary(0, 0, _long_body(0, 30))
        guard = RunGuard()
        guard.acquire("summarize")
        preview = await _compressor(host, store, make_chat(1), guard=guard).preview()
        assert preview.status == RunStatus.ALREADY_RUNNING
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_nothing_to_compress(self, host, store):
        preview = await _compressor(host, store, make_chat(3)).preview()
        assert preview.status == RunStatus.SUCCEEDED
        assert host.prompts == []


class TestApply:
    @pytest.mark.asyncio
    async def test_metadata_preserved(self, host, store):
        store.set_summary(0, 0, _long_body(0, 30))
        store.set_pinned(0)
        store.set_memo(0, "keep the ring subplot")
        timestamp = store.get_summary(0).timestamp
        compressor = _compressor(host, store, make_chat(1))
        compressor.apply(await compressor.preview())
        entry = store.get_summary(0)
        assert entry.content == "#0\n* Scenario: Condensed recap of #0."
        assert entry.pinned
        assert entry.memo == "keep the ring subplot"
        assert entry.timestamp == timestamp

    @pytest.mark.asyncio
    async def test_entries_changed_after_preview_skipped(self, host, store):
        store.set_summary(0, 0, _long_body(0, 30))
        store.set_summary(1, 1, _long_body(1, 30))
        compressor = _compressor(host, store, make_chat(2))
        preview = await compressor.preview()
        store.set_summary(1, 1, "* Scenario: rewritten by hand in the meantime")
        result = compressor.apply(preview)
        assert result.applied == 1
        assert store.get_summary(1).content == "#1\n* Scenario: rewritten by hand in the meantime"
