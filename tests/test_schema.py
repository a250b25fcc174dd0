"""Tests for schema creation, upgrades and initialization failures."""

import os
import sqlite3

import pytest
from sqlmodel import Session, select

from clipstore.db.manager import ClipDatabase
from clipstore.db.schema import CURRENT_SCHEMA_VERSION, FTS_TABLE
from clipstore.errors import SchemaMigrationError, StoreUnavailableError
from clipstore.models.models import Clip, Stat, StatKey

V1_DDL = [
    """
    CREATE TABLE clips (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content TEXT NOT NULL,
        content_hash VARCHAR,
        preview TEXT,
        timestamp DATETIME NOT NULL,
        clip_type VARCHAR NOT NULL,
        source_app VARCHAR,
        is_pinned BOOLEAN NOT NULL DEFAULT 0,
        was_trimmed BOOLEAN NOT NULL DEFAULT 0,
        size_bytes INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX ix_clips_timestamp ON clips (timestamp)",
    "CREATE TABLE stats (key VARCHAR PRIMARY KEY, int_value INTEGER)",
]


def _write_v1_database(path):
    conn = sqlite3.connect(path)
    try:
        for statement in V1_DDL:
            conn.execute(statement)
        rows = [
            ("hello world", "2026-01-01 10:00:00.000000", 1),
            ("another clip", "2026-01-02 10:00:00.000000", 0),
            ("hello world", "2026-01-03 10:00:00.000000", 0),
        ]
        conn.executemany(
            "INSERT INTO clips (content, timestamp, clip_type, is_pinned) VALUES (?, ?, 'text', ?)",
            rows,
        )
        conn.execute("INSERT INTO stats (key, int_value) VALUES ('paste_count', 7)")
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
    finally:
        conn.close()


def _user_version(path):
    conn = sqlite3.connect(path)
    try:
        return conn.execute("PRAGMA user_version").fetchone()[0]
    finally:
        conn.close()


class TestFreshDatabase:
    @pytest.mark.asyncio
    async def test_creates_current_version(self, db):
        assert _user_version(db.db_path) == CURRENT_SCHEMA_VERSION

    @pytest.mark.asyncio
    async def test_creates_fts_table_and_stats(self, db):
        conn = sqlite3.connect(db.db_path)
        try:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        finally:
            conn.close()
        assert FTS_TABLE in names
        assert {"clips_ai", "clips_ad", "clips_au"} <= names

        stats = await db.get_stats()
        assert stats.paste_count == 0
        assert stats.total_clips_ever == 0
        assert stats.creation_timestamp is not None

    @pytest.mark.asyncio
    async def test_uses_wal_journal(self, db):
        await db.add("something")
        conn = sqlite3.connect(db.db_path)
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode == "wal"

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, db):
        clip_id = await db.add("keep me")
        await db.record_paste()
        await db.initialize()
        await db.initialize()
        clip = await db.get(clip_id)
        assert clip.content == "keep me"
        stats = await db.get_stats()
        assert stats.paste_count == 1
        assert stats.total_clips_ever == 1


class TestUpgrade:
    @pytest.mark.asyncio
    async def test_upgrades_v1_database(self, settings):
        os.makedirs(settings.DATA_DIR, exist_ok=True)
        _write_v1_database(settings.DB_PATH)

        store = ClipDatabase(settings=settings)
        try:
            await store.initialize()
            assert _user_version(settings.DB_PATH) == CURRENT_SCHEMA_VERSION

            with Session(store.engine) as session:
                clips = session.exec(select(Clip).order_by(Clip.id)).all()
                stats = {row.key: row for row in session.exec(select(Stat)).all()}

            # duplicates collapse onto the newest row, keeping the pin
            assert [c.content for c in clips] == ["another clip", "hello world"]
            hello = clips[1]
            assert hello.id == 3
            assert hello.is_pinned is True
            assert all(c.content_hash for c in clips)
            assert hello.size_bytes == len("hello world")
            assert hello.preview == "hello world"

            assert stats[StatKey.PASTE_COUNT].int_value == 7
            assert stats[StatKey.TOTAL_CLIPS_EVER].int_value == 2
            assert stats[StatKey.CREATION_TIMESTAMP].text_value

            # full-text index was rebuilt from the existing rows
            results = await store.search(10, 0, "another")
            assert [r.id for r in results] == [clips[0].id]
            assert results[0].match_rank == 0
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_upgraded_database_rejects_duplicates(self, settings):
        os.makedirs(settings.DATA_DIR, exist_ok=True)
        _write_v1_database(settings.DB_PATH)
        store = ClipDatabase(settings=settings)
        try:
            await store.initialize()
            assert await store.add("hello world") == 3
        finally:
            await store.close()


class TestInitializationFailure:
    @pytest.mark.asyncio
    async def test_newer_version_is_refused(self, settings):
        os.makedirs(settings.DATA_DIR, exist_ok=True)
        conn = sqlite3.connect(settings.DB_PATH)
        conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION + 1}")
        conn.close()

        store = ClipDatabase(settings=settings)
        try:
            with pytest.raises(SchemaMigrationError):
                await store.initialize()
            assert store.ready is False
            with pytest.raises(StoreUnavailableError):
                await store.search(10, 0, "")
            with pytest.raises(StoreUnavailableError):
                await store.add("text")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_operations_before_initialize_fail(self, settings):
        store = ClipDatabase(settings=settings)
        try:
            with pytest.raises(StoreUnavailableError):
                await store.get(1)
            with pytest.raises(StoreUnavailableError):
                async for _ in store.stream_file_based_clips():
                    pass
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_failed_upgrade_rolls_back(self, settings):
        os.makedirs(settings.DATA_DIR, exist_ok=True)
        conn = sqlite3.connect(settings.DB_PATH)
        # a v1 database whose clips table is missing entirely cannot be upgraded
        conn.execute("CREATE TABLE stats (key VARCHAR PRIMARY KEY, int_value INTEGER)")
        conn.execute("PRAGMA user_version = 2")
        conn.commit()
        conn.close()

        store = ClipDatabase(settings=settings)
        try:
            with pytest.raises(SchemaMigrationError):
                await store.initialize()
        finally:
            await store.close()

        assert _user_version(settings.DB_PATH) == 2
        conn = sqlite3.connect(settings.DB_PATH)
        try:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        finally:
            conn.close()
        assert FTS_TABLE not in names
