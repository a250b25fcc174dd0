"""
清理与压缩。

清理策略只删除未固定的记录；任何一条策略失败只记录日志，其余策略照常执行。
压缩（FTS optimize + VACUUM + WAL 截断）需要独占数据库文件，
同一个存储实例上的压缩调用由锁串行化。
"""
import asyncio
import logging
import sqlite3
import stat
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Session, select, func, col

from clipstore.config import config
from clipstore.db.database import ClipRepository, writer
from clipstore.db.schema import FTS_TABLE
from clipstore.db.stats import StatsService
from clipstore.models.models import Clip, ClipType, MaintenanceResult, utcnow

logger = logging.getLogger(__name__)

# 分类器：根据路径返回新的类型
Classifier = Callable[[str], str]


def target_exists(path: Optional[str], clip_type: str) -> bool:
    """
    文件夹记录要求目录存在，文件记录要求普通文件存在。
    检查本身出错时当作存在处理，避免误删。
    """
    path = (path or "").strip()
    if not path:
        return False
    try:
        st = Path(path).stat()
    except (FileNotFoundError, NotADirectoryError):
        return False
    except (OSError, ValueError):
        logger.warning("无法检查路径，按存在处理: %s", path, exc_info=True)
        return True
    if clip_type == ClipType.FOLDER:
        return stat.S_ISDIR(st.st_mode)
    return stat.S_ISREG(st.st_mode)


def find_missing(batch: List[Clip]) -> List[int]:
    return [clip.id for clip in batch if not target_exists(clip.content, clip.clip_type)]


def _is_busy(error: Exception) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _unpinned():
    return Clip.is_pinned == False  # noqa: E712


class MaintenanceService:
    def __init__(self, engine: Engine, repository: ClipRepository, stats: StatsService,
                 settings=config):
        self.engine = engine
        self.write_engine = writer(engine)
        self.repository = repository
        self.stats = stats
        self.settings = settings
        self._compact_lock = threading.Lock()
        self._run_lock = threading.Lock()

    # --- 压缩 ---

    def compact(self) -> bool:
        """压缩数据库；被占用时重试一次，仍失败则返回 False"""
        with self._compact_lock:
            for attempt in range(2):
                try:
                    self._compact_once()
                    logger.info("数据库压缩完成")
                    return True
                except (sqlite3.OperationalError, OperationalError) as e:
                    # 连接池建立新连接时出错会被包装成 SQLAlchemy 的异常
                    if not _is_busy(e):
                        logger.exception("数据库压缩失败")
                        return False
                    if attempt == 0:
                        logger.debug("数据库被占用，%.2f 秒后重试压缩", self.settings.COMPACT_RETRY_DELAY)
                        time.sleep(self.settings.COMPACT_RETRY_DELAY)
            logger.warning("数据库被占用，本次跳过压缩")
            return False

    def _compact_once(self) -> None:
        # 先关闭连接池中的空闲连接，WAL 模式下它们会妨碍 VACUUM 独占文件
        self.engine.dispose()
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            try:
                cursor.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (FTS_TABLE,)
                )
                if cursor.fetchone() is not None:
                    cursor.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('optimize')")
                cursor.execute("VACUUM")
                cursor.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            finally:
                cursor.close()
        finally:
            raw.close()

    # --- 清理策略 ---

    def run_retention(self, max_age_days: int, max_total: int, force_compact: bool = False,
                      max_size_mb: int = 0) -> int:
        removed = self._retention(max_age_days, max_total, max_size_mb)
        if removed > 0 or force_compact:
            self.compact()
        return removed

    def _retention(self, max_age_days: int, max_total: int, max_size_mb: int) -> int:
        removed = 0
        if max_age_days > 0:
            removed += self._apply_policy("age", self._delete_older_than, max_age_days)
        if max_total > 0:
            removed += self._apply_policy("count", self._trim_to_count, max_total)
        if max_size_mb > 0:
            removed += self._apply_policy("size", self._delete_oversized, max_size_mb)
        return removed

    @staticmethod
    def _apply_policy(name: str, policy, limit) -> int:
        try:
            removed = policy(limit)
        except SQLAlchemyError:
            logger.exception("清理策略 %s 执行失败", name)
            return 0
        if removed:
            logger.info("清理策略 %s 删除 %d 条记录", name, removed)
        return removed

    def _delete_where(self, *conditions) -> int:
        with Session(self.write_engine) as session:
            result = session.exec(delete(Clip).where(*conditions))
            session.commit()
            return result.rowcount

    def _delete_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        return self._delete_where(_unpinned(), Clip.timestamp < cutoff)

    def _trim_to_count(self, max_total: int) -> int:
        with Session(self.write_engine) as session:
            count = session.exec(select(func.count(Clip.id)).where(_unpinned())).one()
            excess = count - max_total
            if excess <= 0:
                return 0
            oldest = (
                select(Clip.id)
                .where(_unpinned())
                .order_by(Clip.timestamp, Clip.id)
                .limit(excess)
            )
            result = session.exec(delete(Clip).where(col(Clip.id).in_(oldest)))
            session.commit()
            return result.rowcount

    def _delete_oversized(self, max_mb: int) -> int:
        return self._delete_where(_unpinned(), Clip.size_bytes > max_mb * 1024 * 1024)

    def remove_oversized(self, max_mb: int) -> int:
        if max_mb <= 0:
            return 0
        removed = self._delete_oversized(max_mb)
        if removed:
            logger.info("删除超过 %d MB 的记录 %d 条", max_mb, removed)
            self.compact()
        return removed

    def clear_unpinned(self) -> int:
        removed = self._delete_where(_unpinned())
        if removed:
            self.compact()
        return removed

    def clear_all(self) -> int:
        removed = self._delete_where()
        if removed:
            self.compact()
        return removed

    # --- 失效文件记录 ---

    def _delete_ids(self, ids: List[int]) -> int:
        with Session(self.write_engine) as session:
            result = session.exec(delete(Clip).where(col(Clip.id).in_(ids)))
            session.commit()
            return result.rowcount

    async def remove_orphans(self, compact: bool = True) -> int:
        """分批检查文件/文件夹记录，删除目标已不存在的记录"""
        removed = 0
        after_id = 0
        batch_size = self.settings.ORPHAN_BATCH_SIZE
        while True:
            batch = await asyncio.to_thread(self.repository.fetch_file_based, after_id, batch_size)
            if not batch:
                break
            after_id = batch[-1].id
            missing = await asyncio.to_thread(find_missing, batch)
            if missing:
                try:
                    removed += await asyncio.to_thread(self._delete_ids, missing)
                except SQLAlchemyError:
                    logger.exception("删除失效文件记录失败，停止检查")
                    break
            if len(batch) < batch_size:
                break
        if removed:
            logger.info("删除失效文件记录 %d 条", removed)
            if compact:
                await asyncio.to_thread(self.compact)
        return removed

    async def reclassify(self, classifier: Classifier) -> int:
        """用分类器重新计算文件记录的类型，只写入有变化的记录"""
        updates: Dict[int, str] = {}
        after_id = 0
        batch_size = self.settings.STREAM_BATCH_SIZE
        while True:
            batch = await asyncio.to_thread(self.repository.fetch_file_based, after_id, batch_size)
            if not batch:
                break
            after_id = batch[-1].id
            for clip in batch:
                new_type = classifier(clip.content)
                if new_type and new_type != clip.clip_type:
                    updates[clip.id] = new_type
            if len(batch) < batch_size:
                break
        if not updates:
            return 0
        return await asyncio.to_thread(self.repository.bulk_update_types, updates)

    async def run_maintenance(self, classifier: Optional[Classifier] = None) -> MaintenanceResult:
        """
        定期维护：按配置清理、删除失效文件记录、重新分类、压缩并记录清理时间。
        已有维护任务在运行时直接返回 skipped。
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("维护任务正在运行，跳过本次")
            return MaintenanceResult(skipped=True)
        try:
            result = MaintenanceResult(
                size_before_mb=await asyncio.to_thread(self.stats.database_size_mb)
            )
            result.removed_by_retention = await asyncio.to_thread(
                self._retention,
                self.settings.CLEANUP_AGE_DAYS,
                self.settings.MAX_CLIPS_TOTAL,
                self.settings.MAX_CLIP_SIZE_MB,
            )
            result.removed_orphans = await self.remove_orphans(compact=False)
            if classifier is not None:
                try:
                    result.reclassified = await self.reclassify(classifier)
                except SQLAlchemyError:
                    logger.exception("重新分类失败")
            result.compacted = await asyncio.to_thread(self.compact)
            await asyncio.to_thread(self.stats.record_cleanup_time)
            result.size_after_mb = await asyncio.to_thread(self.stats.database_size_mb)
            logger.info(
                "维护完成: 清理 %d 条, 失效文件 %d 条, 大小 %.2f MB -> %.2f MB",
                result.removed_by_retention, result.removed_orphans,
                result.size_before_mb, result.size_after_mb,
            )
            return result
        finally:
            self._run_lock.release()
