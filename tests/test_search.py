"""Tests for ranked search, filters, snippets and cancellation."""

import threading
from datetime import datetime, timedelta

import pytest

from clipstore.db.query_builder import SearchQueryBuilder, fts_prefix_term, like_contains
from clipstore.models.models import ClipType, FilterKey

BASE = datetime(2026, 3, 1, 9, 0)


async def add_at(db, set_timestamp, content, minutes, clip_type=ClipType.TEXT):
    clip_id = await db.add(content, clip_type)
    set_timestamp(db, clip_id, BASE + timedelta(minutes=minutes))
    return clip_id


class TestQueryHelpers:
    def test_fts_prefix_term_quotes_input(self):
        assert fts_prefix_term("hello") == '"hello"*'
        assert fts_prefix_term('say"hi') == '"say""hi"*'

    def test_like_contains_escapes_wildcards(self):
        assert like_contains("50%_off\\") == "%50\\%\\_off\\\\%"

    def test_browse_query_has_no_match_columns(self):
        query = SearchQueryBuilder().build(10, 0, "   ", FilterKey.ALL)
        assert query.is_search is False
        assert "match_rank" not in str(query.statement)

    def test_symbol_only_terms_skip_fts(self):
        query = SearchQueryBuilder().build(10, 0, "%% ##", FilterKey.ALL)
        assert "fts" not in query.params
        assert query.params["tok0"] == "%\\%\\%%"


class TestRanking:
    @pytest.mark.asyncio
    async def test_phrase_then_fts_then_substring(self, db, set_timestamp):
        phrase = await add_at(db, set_timestamp, "hello world program", 0)
        tokens = await add_at(db, set_timestamp, "the world says hello", 1)
        substring = await add_at(db, set_timestamp, "xhelloworldx", 2)
        await add_at(db, set_timestamp, "nothing relevant", 3)

        results = await db.search(10, 0, "hello world")
        assert [r.id for r in results] == [phrase, tokens, substring]
        assert [r.match_rank for r in results] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_case_insensitive(self, db, set_timestamp):
        clip_id = await add_at(db, set_timestamp, "Hello World", 0)
        results = await db.search(10, 0, "hELLO wORLD")
        assert [r.id for r in results] == [clip_id]
        assert results[0].match_rank == 0

    @pytest.mark.asyncio
    async def test_same_rank_orders_newest_first(self, db, set_timestamp):
        old = await add_at(db, set_timestamp, "report draft", 0)
        new = await add_at(db, set_timestamp, "report final", 5)
        results = await db.search(10, 0, "report")
        assert [r.id for r in results] == [new, old]

    @pytest.mark.asyncio
    async def test_prefix_match(self, db, set_timestamp):
        clip_id = await add_at(db, set_timestamp, "configuration file", 0)
        results = await db.search(10, 0, "config")
        assert [r.id for r in results] == [clip_id]

    @pytest.mark.asyncio
    async def test_pinned_outranks_better_match(self, db, set_timestamp):
        phrase = await add_at(db, set_timestamp, "hello world", 10)
        pinned = await add_at(db, set_timestamp, "xhelloworldx", 0)
        await db.set_pinned(pinned, True)

        results = await db.search(10, 0, "hello world")
        assert [r.id for r in results] == [pinned, phrase]
        assert results[0].is_pinned is True
        assert results[0].match_rank == 2

    @pytest.mark.asyncio
    async def test_all_tokens_required(self, db, set_timestamp):
        await add_at(db, set_timestamp, "only hello here", 0)
        assert await db.search(10, 0, "hello world") == []

    @pytest.mark.asyncio
    async def test_special_characters(self, db, set_timestamp):
        percent = await add_at(db, set_timestamp, "discount 50% off", 0)
        await add_at(db, set_timestamp, "discount 500 off", 1)
        quoted = await add_at(db, set_timestamp, 'say "hi" there', 2)

        results = await db.search(10, 0, "50%")
        # "50%" is also a prefix of "500", but only the literal text is a phrase match
        assert results[0].id == percent
        assert results[0].match_rank == 0
        assert [r.match_rank for r in results[1:]] == [1]
        assert [r.id for r in await db.search(10, 0, '"hi"')] == [quoted]
        assert await db.search(10, 0, 'unbalanced" OR NOT') == []


class TestBrowseAndFilters:
    @pytest.mark.asyncio
    async def test_browse_orders_by_time_only(self, db, set_timestamp):
        old = await add_at(db, set_timestamp, "old", 0)
        pinned = await add_at(db, set_timestamp, "pinned middle", 1)
        new = await add_at(db, set_timestamp, "new", 2)
        await db.set_pinned(pinned, True)

        results = await db.search(10, 0, "")
        assert [r.id for r in results] == [new, pinned, old]
        assert all(r.match_context is None and r.match_rank is None for r in results)

    @pytest.mark.asyncio
    async def test_pagination(self, db, set_timestamp):
        ids = [await add_at(db, set_timestamp, f"item {i}", i) for i in range(5)]
        page = await db.search(2, 1, "")
        assert [r.id for r in page] == [ids[3], ids[2]]
        page = await db.search(2, 1, "item")
        assert [r.id for r in page] == [ids[3], ids[2]]

    @pytest.mark.asyncio
    async def test_filters(self, db, set_timestamp):
        text = await add_at(db, set_timestamp, "shared text", 0)
        link = await add_at(db, set_timestamp, "https://shared.example", 1, ClipType.LINK)
        file_link = await add_at(db, set_timestamp, "/shared/site.url", 2, ClipType.FILE_LINK)
        code = await add_at(db, set_timestamp, "def shared(): pass", 3, ClipType.CODE_SNIPPET)
        await db.set_pinned(text, True)

        assert [r.id for r in await db.search(10, 0, "", FilterKey.PINNED)] == [text]
        assert [r.id for r in await db.search(10, 0, "", FilterKey.LINK)] == [file_link, link]
        assert [r.id for r in await db.search(10, 0, "", ClipType.CODE_SNIPPET)] == [code]
        assert len(await db.search(10, 0, "", FilterKey.ALL)) == 4
        assert [r.id for r in await db.search(10, 0, "shared", FilterKey.LINK)] == [file_link, link]
        assert await db.search(10, 0, "shared", ClipType.COLOR) == []


class TestSnippets:
    @pytest.mark.asyncio
    async def test_fts_hit_uses_highlighted_snippet(self, db, set_timestamp):
        await add_at(db, set_timestamp, "some words before the keyword appears here", 0)
        results = await db.search(10, 0, "keyword")
        assert "[HL]keyword[/HL]" in results[0].match_context

    @pytest.mark.asyncio
    async def test_substring_hit_synthesizes_window(self, db, set_timestamp):
        content = "lorem " * 20 + "xHelloworldx " + "ipsum " * 20
        await add_at(db, set_timestamp, content, 0)
        results = await db.search(10, 0, "hello")
        assert results[0].match_rank == 0
        context = results[0].match_context
        assert context.startswith("...")
        assert context.endswith("...")
        assert "x[HL]Hello[/HL]worldx" in context
        # 40 characters either side of the token
        body = context[3:-3].replace("[HL]", "").replace("[/HL]", "")
        assert len(body) == 40 + len("hello") + 40

    @pytest.mark.asyncio
    async def test_window_at_start_has_no_leading_ellipsis(self, db, set_timestamp):
        await add_at(db, set_timestamp, "%%marker%% short", 0)
        results = await db.search(10, 0, "%%")
        assert results[0].match_context == "[HL]%%[/HL]marker%% short"

    @pytest.mark.asyncio
    async def test_window_reaching_end_has_no_trailing_ellipsis(self, db, set_timestamp):
        # the window covers exactly the remaining 40 characters after the token
        content = "a" * 10 + "needle" + "b" * 39
        await add_at(db, set_timestamp, content, 0)
        results = await db.search(10, 0, "eedl")
        assert results[0].match_context == "a" * 10 + "n[HL]eedl[/HL]e" + "b" * 39

    @pytest.mark.asyncio
    async def test_window_short_of_end_has_trailing_ellipsis(self, db, set_timestamp):
        content = "a" * 10 + "needle" + "b" * 41
        await add_at(db, set_timestamp, content, 0)
        results = await db.search(10, 0, "eedl")
        context = results[0].match_context
        assert context.endswith("b...")
        assert not context.startswith("...")
        assert context.replace("[HL]", "").replace("[/HL]", "")[:-3] == content[:11 + 4 + 40]

    def test_missing_position_falls_back_to_preview(self):
        builder = SearchQueryBuilder()
        query = builder.build(10, 0, "abc", FilterKey.ALL)
        row = {"fts_snippet": None, "match_pos": 0, "match_window": None, "preview": "stored preview"}
        assert builder.match_context(row, query) == "stored preview"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_search_returns_empty(self, db, set_timestamp):
        await add_at(db, set_timestamp, "findable", 0)
        cancel = threading.Event()
        cancel.set()
        assert await db.search(10, 0, "findable", cancel=cancel) == []

    @pytest.mark.asyncio
    async def test_unset_event_does_not_interfere(self, db, set_timestamp):
        clip_id = await add_at(db, set_timestamp, "findable", 0)
        results = await db.search(10, 0, "findable", cancel=threading.Event())
        assert [r.id for r in results] == [clip_id]
