"""
ClipDatabase：剪贴板存储对外的异步接口。

所有阻塞操作都通过 asyncio.to_thread 在工作线程中执行，
每个操作使用自己的短会话。initialize() 成功之前的任何调用都会抛出 StoreUnavailableError。
"""
import asyncio
import logging
import threading
from typing import AsyncIterator, Dict, List, Optional

from pydantic import TypeAdapter, ValidationError

from clipstore.config import config
from clipstore.db.database import ClipRepository, init_db
from clipstore.db.maintenance import Classifier, MaintenanceService
from clipstore.db.schema import SchemaManager
from clipstore.db.stats import StatsService
from clipstore.errors import ClipImportError, SchemaMigrationError, StoreUnavailableError
from clipstore.models.models import (
    Clip, ClipExport, ClipPreview, ClipType, DbStats, FilterKey, MaintenanceResult,
)

logger = logging.getLogger(__name__)

_export_adapter = TypeAdapter(List[ClipExport])


class ClipDatabase:
    def __init__(self, db_path: Optional[str] = None, settings=config):
        self.settings = settings
        self.db_path = db_path or settings.DB_PATH
        self.engine = init_db(self.db_path, settings)
        self.repository = ClipRepository(self.engine, settings)
        self.stats = StatsService(self.engine, self.db_path, settings)
        self.maintenance = MaintenanceService(self.engine, self.repository, self.stats, settings)
        self._ready = False
        self._failed: Optional[BaseException] = None

    # --- 生命周期 ---

    async def initialize(self) -> None:
        """创建或升级数据库结构；可重复调用"""
        try:
            await asyncio.to_thread(SchemaManager(self.engine).initialize)
        except SchemaMigrationError as e:
            self._ready = False
            self._failed = e
            raise
        self._ready = True
        self._failed = None
        logger.info("剪贴板数据库已就绪: %s", self.db_path)

    @property
    def ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if self._failed is not None:
            raise StoreUnavailableError(f"数据库初始化失败: {self._failed}")
        if not self._ready:
            raise StoreUnavailableError("数据库尚未初始化")

    async def _run(self, func, *args, **kwargs):
        self._require_ready()
        return await asyncio.to_thread(func, *args, **kwargs)

    async def close(self) -> None:
        self._ready = False
        await asyncio.to_thread(self.engine.dispose)

    # --- 查询 ---

    async def search(self, limit: int = None, offset: int = 0, search_term: str = "",
                     filter_type: str = FilterKey.ALL,
                     cancel: Optional[threading.Event] = None) -> List[ClipPreview]:
        if limit is None:
            limit = self.settings.PAGE_LIMIT_DEFAULT
        return await self._run(self.repository.search, limit, offset, search_term, filter_type, cancel)

    async def get(self, clip_id: int) -> Optional[Clip]:
        return await self._run(self.repository.get, clip_id)

    async def get_preview(self, clip_id: int) -> Optional[ClipPreview]:
        return await self._run(self.repository.get_preview, clip_id)

    # --- 写入 ---

    async def add(self, content: str, clip_type: str = ClipType.TEXT,
                  source_app: Optional[str] = None, was_trimmed: bool = False) -> int:
        return await self._run(self.repository.add, content, clip_type, source_app, was_trimmed)

    async def update_content(self, clip_id: int, content: str) -> None:
        await self._run(self.repository.update_content, clip_id, content)

    async def delete(self, clip_id: int) -> bool:
        return await self._run(self.repository.delete, clip_id)

    async def set_pinned(self, clip_id: int, pinned: bool) -> bool:
        return await self._run(self.repository.set_pinned, clip_id, pinned)

    async def touch(self, clip_id: int) -> bool:
        return await self._run(self.repository.touch, clip_id)

    async def bulk_update_types(self, updates: Dict[int, str]) -> int:
        return await self._run(self.repository.bulk_update_types, updates)

    # --- 流式枚举 ---

    async def stream_file_based_clips(self) -> AsyncIterator[Clip]:
        """逐条产出文件/文件夹记录（只含 id、content、clip_type）"""
        self._require_ready()
        after_id = 0
        batch_size = self.settings.STREAM_BATCH_SIZE
        while True:
            batch = await asyncio.to_thread(self.repository.fetch_file_based, after_id, batch_size)
            for clip in batch:
                yield clip
            if len(batch) < batch_size:
                return
            after_id = batch[-1].id

    async def _stream_distinct(self, clip_type: str) -> AsyncIterator[str]:
        self._require_ready()
        after = None
        batch_size = self.settings.STREAM_BATCH_SIZE
        while True:
            batch = await asyncio.to_thread(
                self.repository.fetch_distinct_content, clip_type, after, batch_size
            )
            for content in batch:
                yield content
            if len(batch) < batch_size:
                return
            after = batch[-1]

    def stream_image_paths(self) -> AsyncIterator[str]:
        return self._stream_distinct(ClipType.IMAGE)

    def stream_link_urls(self) -> AsyncIterator[str]:
        return self._stream_distinct(ClipType.LINK)

    # --- 维护 ---

    async def clear_unpinned(self) -> int:
        return await self._run(self.maintenance.clear_unpinned)

    async def clear_all(self) -> int:
        return await self._run(self.maintenance.clear_all)

    async def run_retention(self, max_age_days: int, max_total: int, force_compact: bool = False,
                            max_size_mb: int = 0) -> int:
        return await self._run(
            self.maintenance.run_retention, max_age_days, max_total, force_compact, max_size_mb
        )

    async def remove_orphans(self) -> int:
        self._require_ready()
        return await self.maintenance.remove_orphans()

    async def remove_oversized(self, max_mb: int) -> int:
        return await self._run(self.maintenance.remove_oversized, max_mb)

    async def compact(self) -> bool:
        return await self._run(self.maintenance.compact)

    async def reclassify(self, classifier: Classifier) -> int:
        self._require_ready()
        return await self.maintenance.reclassify(classifier)

    async def run_maintenance(self, classifier: Optional[Classifier] = None) -> MaintenanceResult:
        self._require_ready()
        return await self.maintenance.run_maintenance(classifier)

    # --- 统计 ---

    async def get_stats(self) -> DbStats:
        return await self._run(self.stats.get_stats)

    async def record_paste(self) -> None:
        await self._run(self.stats.record_paste)

    async def record_cleanup_time(self) -> None:
        await self._run(self.stats.record_cleanup_time)

    # --- 导出/导入 ---

    def _collect_export(self, pinned_only: bool) -> List[ClipExport]:
        items = []
        after_id = 0
        batch_size = self.settings.STREAM_BATCH_SIZE
        while True:
            batch = self.repository.fetch_for_export(after_id, batch_size, pinned_only)
            items.extend(ClipExport.model_validate(clip, from_attributes=True) for clip in batch)
            if len(batch) < batch_size:
                return items
            after_id = batch[-1].id

    async def export_json(self, pinned_only: bool = False) -> str:
        items = await self._run(self._collect_export, pinned_only)
        return _export_adapter.dump_json(items, indent=2).decode("utf-8")

    async def import_json(self, data: str) -> int:
        """导入 export_json 的输出，返回新增的记录数"""
        self._require_ready()
        try:
            items = _export_adapter.validate_json(data)
        except ValidationError as e:
            raise ClipImportError(f"导入数据格式错误: {e}") from e
        imported = await asyncio.to_thread(self.repository.import_clips, items)
        logger.info("导入记录 %d 条，跳过 %d 条", imported, len(items) - imported)
        if imported:
            await asyncio.to_thread(self.maintenance.compact)
        return imported
