"""
数据库结构的创建与升级。

版本号保存在 ``PRAGMA user_version`` 中：
  0  全新数据库，直接创建当前版本的全部结构
  1  最初的 clips/stats 表
  2  stats 表增加 text_value 列
  3  增加 FTS5 全文索引及同步触发器
  4  补全哈希/大小/预览，去除重复内容，content_hash 改为唯一索引
每一步升级都在单独的事务中执行，版本号在同一事务内写入。
"""
import logging

from sqlalchemy import text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, func, select

from clipstore.db.database import writer
from clipstore.errors import SchemaMigrationError
from clipstore.models.models import Clip, Stat, StatKey, utcnow
from clipstore.utils import compute_hash, create_preview, utf8_size

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 4

FTS_TABLE = "clips_fts"

FTS_DDL = [
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
        content,
        content='clips',
        content_rowid='id',
        tokenize='porter unicode61'
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS clips_ai AFTER INSERT ON clips BEGIN
        INSERT INTO {FTS_TABLE}(rowid, content) VALUES (new.id, new.content);
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS clips_ad AFTER DELETE ON clips BEGIN
        INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content) VALUES ('delete', old.id, old.content);
    END
    """,
    # 只在内容变化时重建索引，置顶/固定等操作不触发
    f"""
    CREATE TRIGGER IF NOT EXISTS clips_au AFTER UPDATE OF content ON clips BEGIN
        INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content) VALUES ('delete', old.id, old.content);
        INSERT INTO {FTS_TABLE}(rowid, content) VALUES (new.id, new.content);
    END
    """,
]

FTS_DROP = [
    "DROP TRIGGER IF EXISTS clips_ai",
    "DROP TRIGGER IF EXISTS clips_ad",
    "DROP TRIGGER IF EXISTS clips_au",
    f"DROP TABLE IF EXISTS {FTS_TABLE}",
]


def get_schema_version(conn: Connection) -> int:
    return conn.exec_driver_sql("PRAGMA user_version").scalar() or 0


def set_schema_version(conn: Connection, version: int) -> None:
    # PRAGMA 不支持参数绑定，version 只来自本模块的常量
    conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")


def create_fts(conn: Connection) -> None:
    for statement in FTS_DDL:
        conn.exec_driver_sql(statement)


def rebuild_fts(conn: Connection) -> None:
    conn.exec_driver_sql(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('rebuild')")


def fts_exists(conn: Connection) -> bool:
    row = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"),
        {"name": FTS_TABLE},
    ).first()
    return row is not None


# --- 升级步骤 ---

def _upgrade_to_2(conn: Connection) -> None:
    columns = {row[1] for row in conn.exec_driver_sql("PRAGMA table_info(stats)")}
    if "text_value" not in columns:
        conn.exec_driver_sql("ALTER TABLE stats ADD COLUMN text_value TEXT")


def _upgrade_to_3(conn: Connection) -> None:
    for statement in FTS_DROP:
        conn.exec_driver_sql(statement)
    create_fts(conn)
    rebuild_fts(conn)


def _upgrade_to_4(conn: Connection) -> None:
    # 旧数据可能缺少哈希、大小和预览，先补全再去重
    rows = conn.execute(
        select(Clip.id, Clip.content).where(
            (Clip.content_hash == None) | (Clip.preview == None) | (Clip.size_bytes == 0)  # noqa: E711
        )
    ).all()
    for clip_id, content in rows:
        conn.execute(
            text(
                "UPDATE clips SET content_hash = :hash, preview = :preview, size_bytes = :size "
                "WHERE id = :id"
            ),
            {
                "hash": compute_hash(content),
                "preview": create_preview(content),
                "size": utf8_size(content),
                "id": clip_id,
            },
        )
    # 同一内容保留最新插入的一条；被删除的固定状态合并到保留的记录上
    conn.exec_driver_sql(
        """
        UPDATE clips SET is_pinned = 1
        WHERE id IN (SELECT MAX(id) FROM clips GROUP BY content_hash HAVING MAX(is_pinned) = 1)
        """
    )
    removed = conn.exec_driver_sql(
        "DELETE FROM clips WHERE id NOT IN (SELECT MAX(id) FROM clips GROUP BY content_hash)"
    ).rowcount
    if removed:
        logger.info("删除重复记录 %d 条", removed)
    conn.exec_driver_sql("DROP INDEX IF EXISTS ix_clips_content_hash")
    conn.exec_driver_sql("CREATE UNIQUE INDEX ix_clips_content_hash ON clips (content_hash)")


UPGRADE_STEPS = {
    2: _upgrade_to_2,
    3: _upgrade_to_3,
    4: _upgrade_to_4,
}


class SchemaManager:
    """启动时同步执行一次，负责建表、升级和初始化统计项"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.write_engine = writer(engine)

    def initialize(self) -> int:
        """
        创建或升级数据库，返回最终的版本号。
        任何失败都会抛出 SchemaMigrationError，失败的那一步不会留下部分结构。
        """
        try:
            with self.engine.connect() as conn:
                version = get_schema_version(conn)

            if version > CURRENT_SCHEMA_VERSION:
                raise SchemaMigrationError(
                    f"数据库版本 {version} 高于当前支持的版本 {CURRENT_SCHEMA_VERSION}"
                )

            if version == 0:
                self._create_fresh()
            else:
                for target in range(version + 1, CURRENT_SCHEMA_VERSION + 1):
                    self._apply_upgrade(target)

            with self.write_engine.begin() as conn:
                self._seed_stats(conn)
                set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        except SchemaMigrationError:
            raise
        except SQLAlchemyError as e:
            logger.exception("数据库初始化失败")
            raise SchemaMigrationError(f"数据库初始化失败: {e}") from e

        logger.debug("数据库结构版本 %d", CURRENT_SCHEMA_VERSION)
        return CURRENT_SCHEMA_VERSION

    def _create_fresh(self) -> None:
        with self.write_engine.begin() as conn:
            SQLModel.metadata.create_all(conn, tables=[Clip.__table__, Stat.__table__])
            create_fts(conn)
            set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        logger.info("已创建新数据库 (版本 %d)", CURRENT_SCHEMA_VERSION)

    def _apply_upgrade(self, target: int) -> None:
        step = UPGRADE_STEPS[target]
        with self.write_engine.begin() as conn:
            step(conn)
            set_schema_version(conn, target)
        logger.info("数据库已升级到版本 %d", target)

    @staticmethod
    def _seed_stats(conn: Connection) -> None:
        now = utcnow().isoformat()
        clip_count = conn.execute(select(func.count()).select_from(Clip)).scalar_one()
        seeds = [
            {"key": StatKey.PASTE_COUNT, "int_value": 0, "text_value": None},
            {"key": StatKey.TOTAL_CLIPS_EVER, "int_value": clip_count, "text_value": None},
            {"key": StatKey.CREATION_TIMESTAMP, "int_value": None, "text_value": now},
            {"key": StatKey.LAST_CLEANUP_TIMESTAMP, "int_value": None, "text_value": now},
        ]
        for seed in seeds:
            conn.execute(sqlite_insert(Stat).values(**seed).on_conflict_do_nothing())
