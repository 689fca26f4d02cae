"""Tests for summarization runs against a scripted LLM host."""

import pytest

from storyrecap.config import SummarizerSettings
from storyrecap.constants import PARSE_FAILED_BADGE
from storyrecap.errors import InvalidIndexError
from storyrecap.llm.gateway import LLMGateway
from storyrecap.pipeline.prompts import PromptBuilder
from storyrecap.pipeline.run_state import RunGuard, RunStatus
from storyrecap.pipeline.summarizer import Summarizer
from storyrecap.utils.tokens import TokenCounter

from tests.conftest import make_chat

BRAM_BLOCK = '```CHARACTERS_JSON\n[{"name": "Bram", "role": "guard"}]\n```'


def _summarizer(host, store, chat, **options):
    settings = SummarizerSettings(**options)
    return Summarizer(
        settings,
        store,
        chat,
        LLMGateway(settings, host=host),
        PromptBuilder(settings, TokenCounter()),
        RunGuard(),
    )


def _snapshot(store):
    return {
        key: (entry.content, entry.pinned, entry.memo, entry.invalidated)
        for key, entry in store.record.summaries.items()
    }


class TestPlanning:
    def test_individual_units(self, host, store):
        s = _summarizer(host, store, make_chat(0), summary_mode="individual", batch_size=3)
        units = s.plan_units(0, 7)
        assert units == [[(0, 0), (1, 1), (2, 2)], [(3, 3), (4, 4), (5, 5)], [(6, 6)]]

    def test_batch_units_complete_groups_only(self, host, store):
        s = _summarizer(host, store, make_chat(0), batch_group_size=5, batch_size=10)
        assert s.plan_units(0, 17) == [[(0, 4), (5, 9)], [(10, 14)]]

    def test_batch_size_smaller_than_group(self, host, store):
        s = _summarizer(host, store, make_chat(0), batch_group_size=5, batch_size=3)
        assert s.plan_units(0, 10) == [[(0, 4)], [(5, 9)]]

    def test_batch_units_with_partial_group(self, host, store):
        s = _summarizer(host, store, make_chat(0), batch_group_size=5, batch_size=10)
        assert s.plan_units(0, 12, partial=True) == [[(0, 4), (5, 9)], [(10, 11)]]

    def test_pending_count(self, host, store):
        s = _summarizer(host, store, make_chat(25), preserve_recent_messages=5)
        assert s.pending_count() == 20
        store.set_summary(0, 9, "* Scenario: early chapters")
        assert s.pending_count() == 10

    def test_pending_count_never_negative(self, host, store):
        s = _summarizer(host, store, make_chat(3), preserve_recent_messages=5)
        assert s.pending_count() == 0


class TestIncremental:
    @pytest.mark.asyncio
    async def test_individual_mode_covers_all_but_preserved(self, host, store):
        chat = make_chat(25)
        s = _summarizer(
            host, store, chat,
            summary_mode="individual", summary_interval=10, preserve_recent_messages=5,
        )
        report = await s.summarize_incremental()
        assert report.status == RunStatus.SUCCEEDED
        summaries = store.record.summaries
        assert sorted(summaries) == list(range(20))
        assert summaries[7].content == "#7\n* Scenario: Message 7 moves the story forward."
        assert len(host.prompts) == 2
        assert s.pending_count() == 0

    @pytest.mark.asyncio
    async def test_batch_mode_writes_groups_and_sentinels(self, host, store):
        chat = make_chat(12)
        s = _summarizer(host, store, chat, batch_group_size=5, preserve_recent_messages=0)
        report = await s.summarize_incremental()
        assert report.written_keys == [4, 9]
        summaries = store.record.summaries
        assert summaries[4].content.startswith("#0-4\n")
        assert summaries[9].content.startswith("#5-9\n")
        for i in (0, 1, 2, 3):
            assert summaries[i].content == "[→ #0-4 group-summary-inclusion]"
        for i in (5, 6, 7, 8):
            assert summaries[i].content == "[→ #5-9 group-summary-inclusion]"
        assert 10 not in summaries and 11 not in summaries

    @pytest.mark.asyncio
    async def test_continues_after_covered_prefix(self, host, store):
        chat = make_chat(12)
        store.set_summary(0, 5, "* Scenario: the opening")
        s = _summarizer(host, store, chat, summary_mode="individual", preserve_recent_messages=2)
        await s.summarize_incremental()
        assert [span.key for span in store.spans()] == [5, 6, 7, 8, 9]

    @pytest.mark.asyncio
    async def test_empty_chat(self, host, store):
        report = await _summarizer(host, store, make_chat(0)).summarize_incremental()
        assert report.status == RunStatus.SUCCEEDED
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_nothing_pending(self, host, store):
        report = await _summarizer(host, store, make_chat(4)).summarize_incremental()
        assert report.ok
        assert report.message == "nothing to summarize"
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_progress_reported(self, host, store):
        chat = make_chat(20)
        s = _summarizer(
            host, store, chat,
            summary_mode="individual", batch_size=10, preserve_recent_messages=0,
        )
        calls = []
        await s.summarize_incremental(lambda done, total: calls.append((done, total)))
        assert calls == [(10, 20), (20, 20)]

    @pytest.mark.asyncio
    async def test_failed_unit_does_not_stop_run(self, host, store):
        host.fail_indices = {7}
        chat = make_chat(15)
        s = _summarizer(
            host, store, chat,
            summary_mode="individual", batch_size=5, preserve_recent_messages=0,
        )
        report = await s.summarize_incremental()
        assert report.status == RunStatus.FAILED
        assert [(f.start, f.end) for f in report.failures] == [(5, 9)]
        assert report.message == "10 written, 1 failed"
        assert sorted(store.record.summaries) == [0, 1, 2, 3, 4, 10, 11, 12, 13, 14]
        assert not s.guard.is_running

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, host, store):
        chat = make_chat(10)
        s = _summarizer(host, store, chat, summary_mode="individual", preserve_recent_messages=0)
        nested = []

        async def on_call(prompt):
            nested.append(await s.summarize_incremental())

        host.on_call = on_call
        report = await s.summarize_incremental()
        assert report.ok
        assert nested[0].status == RunStatus.ALREADY_RUNNING

    @pytest.mark.asyncio
    async def test_stop_discards_in_flight_result(self, host, store):
        chat = make_chat(20)
        s = _summarizer(
            host, store, chat,
            summary_mode="individual", batch_size=10, preserve_recent_messages=0,
        )

        async def on_call(prompt):
            if len(host.prompts) == 2:
                s.guard.request_stop()

        host.on_call = on_call
        report = await s.summarize_incremental()
        assert report.status == RunStatus.CANCELLED
        assert sorted(store.record.summaries) == list(range(10))
        assert not s.guard.is_running
        assert s.guard.last_status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_section_written_with_badge(self, host, store):
        host.responder = lambda prompt: "#0\n* Scenario: The first message sets the scene."
        chat = make_chat(2)
        s = _summarizer(host, store, chat, summary_mode="individual", preserve_recent_messages=0)
        report = await s.summarize_incremental()
        assert report.incomplete_keys == [1]
        assert store.get_summary(1).content == f"#1\n{PARSE_FAILED_BADGE}"
        assert store.get_summary(0).content.startswith("#0\n* Scenario:")

    @pytest.mark.asyncio
    async def test_unparseable_response_kept_verbatim(self, host, store):
        host.responder = lambda prompt: '```CHARACTERS_JSON\n[{"name": "Bram"}]\n```'
        chat = make_chat(1)
        s = _summarizer(host, store, chat, summary_mode="individual", preserve_recent_messages=0)
        report = await s.summarize_incremental()
        content = store.get_summary(0).content
        assert content.startswith(f"#0\n{PARSE_FAILED_BADGE}")
        assert "Bram" in content
        assert report.incomplete_keys == [0]

    @pytest.mark.asyncio
    async def test_catalogs_merged_when_tracking(self, host, store):
        host.extra = BRAM_BLOCK
        chat = make_chat(10)
        s = _summarizer(
            host, store, chat,
            character_tracking_enabled=True, preserve_recent_messages=0,
        )
        await s.summarize_incremental()
        bram = store.get_character("Bram")
        assert bram is not None
        assert bram.role == "guard"
        assert bram.first_appearance == 0
        assert "CHARACTERS_JSON" not in store.get_summary(4).content

    @pytest.mark.asyncio
    async def test_catalogs_ignored_without_tracking(self, host, store):
        host.extra = BRAM_BLOCK
        s = _summarizer(host, store, make_chat(5), preserve_recent_messages=0)
        await s.summarize_incremental()
        assert store.record.characters == {}

    @pytest.mark.asyncio
    async def test_event_index_defaults_to_unit_start(self, host, store):
        host.extra = '```EVENTS_JSON\n[{"title": "Oath", "importance": "high"}]\n```'
        store.set_summary(0, 4, "* Scenario: the opening")
        s = _summarizer(
            host, store, make_chat(10), event_tracking_enabled=True, preserve_recent_messages=0,
        )
        await s.summarize_incremental()
        assert [e.message_index for e in store.record.events] == [5]


class TestRange:
    @pytest.mark.asyncio
    async def test_individual_range_ignores_preserved_tail(self, host, store):
        chat = make_chat(12)
        s = _summarizer(host, store, chat, summary_mode="individual", preserve_recent_messages=5)
        report = await s.summarize_range(8, 11)
        assert report.status == RunStatus.SUCCEEDED
        assert report.written_keys == [8, 9, 10, 11]
        assert [span.key for span in store.spans()] == [8, 9, 10, 11]

    @pytest.mark.asyncio
    async def test_batch_range_keeps_short_last_group(self, host, store):
        chat = make_chat(12)
        s = _summarizer(host, store, chat, batch_group_size=5, batch_size=10)
        report = await s.summarize_range(0, 11)
        assert report.written_keys == [4, 9, 11]
        assert store.record.summaries[11].content.startswith("#10-11\n")
        assert store.record.summaries[10].content == "[→ #10-11 group-summary-inclusion]"
        assert len(host.prompts) == 2

    @pytest.mark.asyncio
    async def test_range_end_clipped_to_chat(self, host, store):
        s = _summarizer(host, store, make_chat(10), summary_mode="individual")
        report = await s.summarize_range(8, 50)
        assert report.written_keys == [8, 9]

    @pytest.mark.asyncio
    async def test_invalid_range(self, host, store):
        s = _summarizer(host, store, make_chat(10))
        with pytest.raises(InvalidIndexError):
            await s.summarize_range(10, 12)
        with pytest.raises(InvalidIndexError):
            await s.summarize_range(5, 3)
        assert not s.guard.is_running


class TestResummarize:
    @pytest.mark.asyncio
    async def test_single_entry_rebuilt_in_place(self, host, store):
        chat = make_chat(5)
        store.set_summary(3, 3, "* Scenario: stale text")
        store.set_pinned(3)
        s = _summarizer(host, store, chat)
        report = await s.resummarize(3)
        assert report.written_keys == [3]
        entry = store.get_summary(3)
        assert entry.content == "#3\n* Scenario: Message 3 moves the story forward."
        assert entry.pinned

    @pytest.mark.asyncio
    async def test_group_rebuilt_from_member_index(self, host, store):
        chat = make_chat(10)
        store.set_summary(0, 4, "* Scenario: stale group")
        s = _summarizer(host, store, chat)
        await s.resummarize(2)
        assert "=== Group #0-4 ===" in host.prompts[0]
        assert store.get_summary(4).content.startswith("#0-4\n* Scenario: Messages 0 to 4")

    @pytest.mark.asyncio
    async def test_clears_invalidation(self, host, store):
        chat = make_chat(5)
        store.set_summary(2, 2, "* Scenario: before the edit")
        store.invalidate_covering(2, "message edited")
        await _summarizer(host, store, chat).resummarize(2)
        assert not store.get_summary(2).invalidated

    @pytest.mark.asyncio
    async def test_idempotent(self, host, store):
        chat = make_chat(10)
        store.set_summary(0, 4, "* Scenario: original group")
        store.set_summary(6, 6, "* Scenario: original single")
        s = _summarizer(host, store, chat)
        await s.resummarize(3)
        await s.resummarize(6)
        first = _snapshot(store)
        await s.resummarize(3)
        await s.resummarize(6)
        assert _snapshot(store) == first

    @pytest.mark.asyncio
    async def test_uncovered_index_summarized_alone(self, host, store):
        chat = make_chat(5)
        await _summarizer(host, store, chat).resummarize(1)
        assert sorted(store.record.summaries) == [1]

    @pytest.mark.asyncio
    async def test_group_shrinks_after_deletion(self, host, store):
        chat = make_chat(10)
        store.set_summary(5, 9, "* Scenario: five messages")
        chat.delete(9)
        chat.delete(8)
        await _summarizer(host, store, chat).resummarize(6)
        summaries = store.record.summaries
        assert summaries[7].content.startswith("#5-7\n")
        assert summaries[5].content == "[→ #5-7 group-summary-inclusion]"
        assert 8 not in summaries and 9 not in summaries

    @pytest.mark.asyncio
    async def test_shrunk_group_keeps_pin_and_memo(self, host, store):
        chat = make_chat(10)
        store.set_summary(5, 9, "* Scenario: five messages")
        store.set_pinned(9)
        store.set_memo(9, "the storm arc")
        chat.delete(9)
        await _summarizer(host, store, chat).resummarize(5)
        entry = store.get_summary(8)
        assert entry.content.startswith("#5-8\n")
        assert entry.pinned
        assert entry.memo == "the storm arc"

    @pytest.mark.asyncio
    async def test_out_of_range(self, host, store):
        with pytest.raises(InvalidIndexError):
            await _summarizer(host, store, make_chat(5)).resummarize(5)
        with pytest.raises(InvalidIndexError):
            await _summarizer(host, store, make_chat(5)).resummarize(-1)


class TestMultipleGroups:
    def _grouped_store(self, store):
        for start in (0, 5, 10):
            store.set_summary(start, start + 4, f"* Scenario: old group {start}")

    @pytest.mark.asyncio
    async def test_packed_into_batch_size(self, host, store):
        self._grouped_store(store)
        s = _summarizer(host, store, make_chat(15), batch_size=10)
        report = await s.resummarize_multiple_groups([(10, 14), (0, 4), (5, 9)])
        assert report.ok
        assert len(host.prompts) == 2
        assert sorted(report.written_keys) == [4, 9, 14]

    @pytest.mark.asyncio
    async def test_partial_failure(self, host, store):
        self._grouped_store(store)
        host.fail_indices = {12}
        s = _summarizer(host, store, make_chat(15), batch_size=10)
        report = await s.resummarize_multiple_groups([(0, 4), (5, 9), (10, 14)])
        assert report.status == RunStatus.FAILED
        assert sorted(report.written_keys) == [4, 9]
        assert [(f.start, f.end) for f in report.failures] == [(10, 14)]
        assert "old group 10" in store.get_summary(14).content

    @pytest.mark.asyncio
    async def test_missing_section_leaves_old_text(self, host, store):
        self._grouped_store(store)
        host.responder = lambda prompt: "#0-4\n* Scenario: A fresh take on the opening."
        s = _summarizer(host, store, make_chat(15), batch_size=10)
        report = await s.resummarize_multiple_groups([(0, 4), (5, 9)])
        assert report.written_keys == [4]
        assert [(f.start, f.end) for f in report.failures] == [(5, 9)]
        assert "old group 5" in store.get_summary(9).content

    @pytest.mark.asyncio
    async def test_group_past_chat_end_removed(self, host, store):
        self._grouped_store(store)
        s = _summarizer(host, store, make_chat(8), batch_size=10)
        report = await s.resummarize_multiple_groups([(0, 4), (10, 14)])
        assert report.written_keys == [4]
        assert 14 not in store.record.summaries
        assert 10 not in store.record.summaries

    @pytest.mark.asyncio
    async def test_invalid_range(self, host, store):
        with pytest.raises(InvalidIndexError):
            await _summarizer(host, store, make_chat(5)).resummarize_multiple_groups([(3, 1)])
