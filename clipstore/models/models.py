from sqlmodel import SQLModel, Field, Column
from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import DateTime, Text


def utcnow() -> datetime:
    """当前 UTC 时间（不带时区信息，SQLite 按字符串比较）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClipType:
    """记录类型标签，由分类器写入，这里原样保存"""
    TEXT = "text"
    LINK = "link"
    COLOR = "color"
    CODE_SNIPPET = "code_snippet"
    RTF = "rtf"
    FOLDER = "folder"
    FILE_PREFIX = "file_"
    IMAGE = "file_image"
    VIDEO = "file_video"
    AUDIO = "file_audio"
    ARCHIVE = "file_archive"
    DOCUMENT = "file_document"
    DEV = "file_dev"
    DANGER = "file_danger"
    FILE_TEXT = "file_text"
    GENERIC = "file_generic"
    DATABASE = "file_database"
    FONT = "file_font"
    FILE_LINK = "file_link"
    SYSTEM = "file_system"

    @classmethod
    def is_file_based(cls, clip_type: str) -> bool:
        return clip_type == cls.FOLDER or clip_type.startswith(cls.FILE_PREFIX)


class FilterKey:
    ALL = "all"
    PINNED = "pinned"
    LINK = "link"


class StatKey:
    PASTE_COUNT = "paste_count"
    TOTAL_CLIPS_EVER = "total_clips_ever"
    CREATION_TIMESTAMP = "creation_timestamp"
    LAST_CLEANUP_TIMESTAMP = "last_cleanup_timestamp"


class BaseTable(SQLModel):
    """所有数据库表的基础模型（非表模型，仅用于继承）"""
    id: Optional[int] = Field(
        default=None,  # 通过设置为 Optional[int]、default=None，让数据库分配自增主键
        primary_key=True,
        description="自增主键"
    )


# 剪贴板记录表
class Clip(BaseTable, table=True):

    __tablename__ = "clips"
    __table_args__ = {"sqlite_autoincrement": True}  # 删除后的 id 不再复用

    content: str = Field(
        sa_column=Column(Text, nullable=False),
        description="完整内容"
    )
    content_hash: Optional[str] = Field(
        default=None,
        unique=True,  # 同一内容只保留一条记录
        index=True,
        description="内容的 SHA-256 校验和"
    )
    preview: Optional[str] = Field(
        default=None,
        sa_column=Column(Text),
        description="内容前缀，最多 5120 字节"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True),
        description="最近一次复制或置顶的时间 (UTC)"
    )
    clip_type: str = Field(nullable=False, description="记录类型: text/link/file_image/...")
    source_app: Optional[str] = Field(default=None, description="来源应用")
    is_pinned: bool = Field(default=False, nullable=False, description="是否固定")
    was_trimmed: bool = Field(default=False, nullable=False, description="采集时内容是否被截断")
    size_bytes: int = Field(default=0, nullable=False, description="内容的 UTF-8 字节数")


# 统计表（键值对）
class Stat(SQLModel, table=True):

    __tablename__ = "stats"
    key: str = Field(primary_key=True)
    int_value: Optional[int] = Field(default=None)
    text_value: Optional[str] = Field(default=None)


class ClipPreview(SQLModel):
    """不含完整内容的轻量记录，用于列表和搜索结果"""
    id: int
    timestamp: datetime
    clip_type: str
    source_app: Optional[str] = None
    is_pinned: bool = False
    was_trimmed: bool = False
    size_bytes: int = 0
    preview: Optional[str] = None
    match_context: Optional[str] = Field(default=None, description="搜索命中的片段")
    match_rank: Optional[int] = Field(default=None, description="0 整句命中，1 索引命中，2 子串命中")


class DbStats(SQLModel):
    total_clips: int = 0
    pinned_clips: int = 0
    total_content_bytes: int = 0
    paste_count: int = 0
    total_clips_ever: int = 0
    database_size_mb: float = 0.0
    creation_timestamp: Optional[datetime] = None
    last_cleanup_timestamp: Optional[datetime] = None


class ClipExport(SQLModel):
    """导出/导入时的记录格式"""
    content: str
    clip_type: str = ClipType.TEXT
    source_app: Optional[str] = None
    timestamp: Optional[datetime] = None
    is_pinned: bool = False
    was_trimmed: bool = False


class MaintenanceResult(SQLModel):
    """一次定期维护的结果"""
    skipped: bool = Field(default=False, description="已有维护任务在运行，本次未执行")
    removed_by_retention: int = 0
    removed_orphans: int = 0
    reclassified: int = 0
    compacted: bool = False
    size_before_mb: float = 0.0
    size_after_mb: float = 0.0
