import os
from datetime import timezone
import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import create_engine, event, or_, update, delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func, col

from clipstore.config import config
from clipstore.errors import ClipNotFoundError, DuplicateContentError
from clipstore.db.query_builder import SearchQueryBuilder
from clipstore.models.models import Clip, ClipExport, ClipPreview, ClipType, Stat, StatKey, utcnow
from clipstore.utils import compute_hash, create_preview, utf8_size

logger = logging.getLogger(__name__)

# 带有该执行选项的连接以 BEGIN IMMEDIATE 开启事务
WRITE_OPTION = "clipstore_write"

# get_preview / 搜索结果使用的列（不含完整内容）
PREVIEW_COLUMNS = (
    Clip.id,
    Clip.timestamp,
    Clip.clip_type,
    Clip.source_app,
    Clip.is_pinned,
    Clip.was_trimmed,
    Clip.size_bytes,
    Clip.preview,
)


def _on_connect(dbapi_connection, connection_record):
    # 关闭 pysqlite 自己的隐式事务管理，由 begin 事件显式发出 BEGIN，
    # 这样 DDL 也在事务内，升级失败时可以整体回滚
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _on_begin(conn):
    # 写事务一开始就拿写锁，等锁的时间由 busy timeout 兜住；
    # 延迟事务读后再升级为写时 SQLite 会直接报 locked
    if conn.get_execution_options().get(WRITE_OPTION):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


def writer(engine: Engine) -> Engine:
    """共用连接池和事件的写引擎，事务以 BEGIN IMMEDIATE 开始"""
    return engine.execution_options(**{WRITE_OPTION: True})


def init_db(db_path: Optional[str] = None, settings=config) -> Engine:  # 创建数据库引擎
    db_path = db_path or settings.DB_PATH
    # 确保数据库目录存在
    db_dir = os.path.dirname(os.path.abspath(db_path))
    if not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)  # 递归创建目录
        logger.info("Created database directory: %s", db_dir)

    sqlite_url = f"sqlite:///{db_path}"  # 数据库连接地址
    engine = create_engine(
        sqlite_url,
        echo=settings.DB_LOG_ENABLED,
        connect_args={"check_same_thread": False, "timeout": settings.DB_BUSY_TIMEOUT},
    )
    event.listen(engine, "connect", _on_connect)
    event.listen(engine, "begin", _on_begin)
    return engine


def file_based_condition():
    """clip_type 为 folder 或 file_* 的记录"""
    return or_(
        Clip.clip_type == ClipType.FOLDER,
        col(Clip.clip_type).like("file\\_%", escape="\\"),
    )


class ClipRepository:
    """clips 表的增删改查。每个方法使用自己的短会话，不持有长连接。"""

    def __init__(self, engine: Engine, settings=config):
        self.engine = engine
        self.write_engine = writer(engine)
        self.settings = settings
        self.query_builder = SearchQueryBuilder(settings)

    # --- 写入 ---

    def add(self, content: str, clip_type: str, source_app: Optional[str] = None,
            was_trimmed: bool = False) -> int:
        """
        写入一条记录并返回 id。
        相同内容已存在时只刷新时间和来源，返回已有记录的 id。
        """
        content_hash = compute_hash(content)
        now = utcnow()
        try:
            with Session(self.write_engine) as session:
                # 写事务一开始就持有写锁，查重和插入之间不会被其他写入打断
                clip_id = self._refresh(session, content_hash, now, source_app)
                if clip_id is not None:
                    session.commit()
                    return clip_id

                clip = Clip(
                    content=content,
                    content_hash=content_hash,
                    preview=create_preview(content, self.settings.PREVIEW_MAX_BYTES),
                    timestamp=now,
                    clip_type=clip_type,
                    source_app=source_app,
                    is_pinned=False,
                    was_trimmed=was_trimmed,
                    size_bytes=utf8_size(content),
                )
                session.add(clip)
                session.flush()
                clip_id = clip.id
                session.exec(
                    update(Stat)
                    .where(Stat.key == StatKey.TOTAL_CLIPS_EVER)
                    .values(int_value=func.coalesce(Stat.int_value, 0) + 1)
                )
                session.commit()
                return clip_id
        except IntegrityError:
            # 其他连接抢先写入了相同内容，按重复内容处理
            logger.debug("add raced on hash %s, refreshing existing clip", content_hash)
            with Session(self.write_engine) as session:
                clip_id = self._refresh(session, content_hash, now, source_app)
                if clip_id is None:
                    raise
                session.commit()
                return clip_id

    @staticmethod
    def _refresh(session: Session, content_hash: str, now, source_app: Optional[str]) -> Optional[int]:
        """刷新已有记录的时间和来源，返回其 id；不存在时返回 None"""
        touched = session.exec(
            update(Clip)
            .where(Clip.content_hash == content_hash)
            .values(timestamp=now, source_app=source_app)
        )
        if not touched.rowcount:
            return None
        return session.exec(select(Clip.id).where(Clip.content_hash == content_hash)).one()

    def update_content(self, clip_id: int, content: str) -> None:
        """替换内容，重新计算哈希、预览和大小；时间戳不变"""
        content_hash = compute_hash(content)
        try:
            with Session(self.write_engine) as session:
                result = session.exec(
                    update(Clip)
                    .where(Clip.id == clip_id)
                    .values(
                        content=content,
                        content_hash=content_hash,
                        preview=create_preview(content, self.settings.PREVIEW_MAX_BYTES),
                        size_bytes=utf8_size(content),
                    )
                )
                if result.rowcount == 0:
                    raise ClipNotFoundError(clip_id)
                session.commit()
        except IntegrityError as e:
            # 编辑后的内容已经属于另一条记录
            raise DuplicateContentError(clip_id, self._id_for_hash(content_hash)) from e

    def delete(self, clip_id: int) -> bool:
        with Session(self.write_engine) as session:
            result = session.exec(delete(Clip).where(Clip.id == clip_id))
            session.commit()
            return result.rowcount > 0

    def set_pinned(self, clip_id: int, pinned: bool) -> bool:
        return self._update_one(clip_id, is_pinned=pinned)

    def touch(self, clip_id: int) -> bool:
        return self._update_one(clip_id, timestamp=utcnow())

    def bulk_update_types(self, updates: Dict[int, str]) -> int:
        """在同一个事务中更新多条记录的类型，任何一条失败则全部回滚"""
        if not updates:
            return 0
        changed = 0
        with Session(self.write_engine) as session:
            for clip_id, clip_type in updates.items():
                result = session.exec(
                    update(Clip).where(Clip.id == clip_id).values(clip_type=clip_type)
                )
                changed += result.rowcount
            session.commit()
        return changed

    def _update_one(self, clip_id: int, **values) -> bool:
        with Session(self.write_engine) as session:
            result = session.exec(update(Clip).where(Clip.id == clip_id).values(**values))
            session.commit()
            return result.rowcount > 0

    # --- 读取 ---

    def get(self, clip_id: int) -> Optional[Clip]:
        with Session(self.engine) as session:
            return session.get(Clip, clip_id)

    def get_preview(self, clip_id: int) -> Optional[ClipPreview]:
        with Session(self.engine) as session:
            row = session.exec(select(*PREVIEW_COLUMNS).where(Clip.id == clip_id)).first()
            if row is None:
                return None
            return ClipPreview(**row._mapping)

    def search(self, limit: int, offset: int, search_term: Optional[str] = "",
               filter_type: Optional[str] = None,
               cancel: Optional[threading.Event] = None) -> List[ClipPreview]:
        """
        搜索或浏览记录。
        cancel 被置位后立即停止读取并返回空列表。
        """
        query = self.query_builder.build(limit, offset, search_term, filter_type)
        if cancel is not None and cancel.is_set():
            return []
        results = []
        with self.engine.connect() as conn:
            for row in conn.execute(query.statement, query.params).mappings():
                if cancel is not None and cancel.is_set():
                    logger.debug("search cancelled: %r", search_term)
                    return []
                results.append(ClipPreview(
                    id=row["id"],
                    timestamp=row["timestamp"],
                    clip_type=row["clip_type"],
                    source_app=row["source_app"],
                    is_pinned=row["is_pinned"],
                    was_trimmed=row["was_trimmed"],
                    size_bytes=row["size_bytes"] or 0,
                    preview=row["preview"],
                    match_context=self.query_builder.match_context(row, query),
                    match_rank=row.get("match_rank"),
                ))
        return results

    def _id_for_hash(self, content_hash: str) -> Optional[int]:
        with Session(self.engine) as session:
            return session.exec(select(Clip.id).where(Clip.content_hash == content_hash)).first()

    # --- 分批读取，供流式枚举使用 ---

    def fetch_file_based(self, after_id: int, limit: int) -> List[Clip]:
        """id 大于 after_id 的下一批文件/文件夹记录（按 id 升序）"""
        with Session(self.engine) as session:
            rows = session.exec(
                select(Clip.id, Clip.content, Clip.clip_type)
                .where(file_based_condition(), Clip.id > after_id)
                .order_by(Clip.id)
                .limit(limit)
            ).all()
        return [Clip(id=row.id, content=row.content, clip_type=row.clip_type) for row in rows]

    def fetch_distinct_content(self, clip_type: str, after: Optional[str], limit: int) -> List[str]:
        """指定类型的去重内容，按内容排序分页"""
        statement = select(Clip.content).where(Clip.clip_type == clip_type)
        if after is not None:
            statement = statement.where(Clip.content > after)
        statement = statement.distinct().order_by(Clip.content).limit(limit)
        with Session(self.engine) as session:
            return list(session.exec(statement).all())

    def fetch_for_export(self, after_id: int, limit: int, pinned_only: bool = False) -> List[Clip]:
        statement = select(Clip).where(Clip.id > after_id)
        if pinned_only:
            statement = statement.where(Clip.is_pinned == True)  # noqa: E712
        with Session(self.engine) as session:
            return list(session.exec(statement.order_by(Clip.id).limit(limit)).all())

    # --- 导入 ---

    def import_clips(self, items: List[ClipExport]) -> int:
        """
        在一个事务中导入记录，已存在的内容跳过。
        保留原有的时间戳和固定状态。
        """
        imported = 0
        seen = set()
        with Session(self.write_engine) as session:
            for item in items:
                content_hash = compute_hash(item.content)
                if content_hash in seen:
                    continue
                seen.add(content_hash)
                exists = session.exec(
                    select(Clip.id).where(Clip.content_hash == content_hash)
                ).first()
                if exists is not None:
                    continue
                timestamp = item.timestamp or utcnow()
                if timestamp.tzinfo is not None:
                    timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
                session.add(Clip(
                    content=item.content,
                    content_hash=content_hash,
                    preview=create_preview(item.content, self.settings.PREVIEW_MAX_BYTES),
                    timestamp=timestamp,
                    clip_type=item.clip_type,
                    source_app=item.source_app,
                    is_pinned=item.is_pinned,
                    was_trimmed=item.was_trimmed,
                    size_bytes=utf8_size(item.content),
                ))
                imported += 1
            if imported:
                session.exec(
                    update(Stat)
                    .where(Stat.key == StatKey.TOTAL_CLIPS_EVER)
                    .values(int_value=func.coalesce(Stat.int_value, 0) + imported)
                )
            session.commit()
        return imported
