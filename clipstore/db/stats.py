import os
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, select, func

from clipstore.config import config
from clipstore.db.database import writer
from clipstore.models.models import Clip, DbStats, Stat, StatKey, utcnow
from clipstore.utils import bytes_to_mb

logger = logging.getLogger(__name__)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """无法解析的时间戳视为缺失"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("无法解析的时间戳: %r", value)
        return None


class StatsService:
    def __init__(self, engine: Engine, db_path: str, settings=config):
        self.engine = engine
        self.write_engine = writer(engine)
        self.db_path = db_path
        self.settings = settings

    def get_stats(self) -> DbStats:
        with Session(self.engine) as session:
            total, pinned, content_bytes = session.exec(
                select(
                    func.count(Clip.id),
                    func.coalesce(func.sum(Clip.is_pinned), 0),
                    func.coalesce(func.sum(Clip.size_bytes), 0),
                )
            ).one()
            values = {row.key: row for row in session.exec(select(Stat)).all()}

        def int_stat(key):
            row = values.get(key)
            return row.int_value or 0 if row else 0

        def time_stat(key):
            row = values.get(key)
            return parse_timestamp(row.text_value) if row else None

        return DbStats(
            total_clips=total,
            pinned_clips=pinned,
            total_content_bytes=content_bytes,
            paste_count=int_stat(StatKey.PASTE_COUNT),
            total_clips_ever=int_stat(StatKey.TOTAL_CLIPS_EVER),
            database_size_mb=self.database_size_mb(),
            creation_timestamp=time_stat(StatKey.CREATION_TIMESTAMP),
            last_cleanup_timestamp=time_stat(StatKey.LAST_CLEANUP_TIMESTAMP),
        )

    def database_size_mb(self) -> float:
        """数据库文件加上 WAL 文件的大小"""
        size = 0
        for path in (self.db_path, self.db_path + "-wal"):
            try:
                size += os.path.getsize(path)
            except FileNotFoundError:
                continue
        return bytes_to_mb(size)

    def record_paste(self) -> None:
        statement = sqlite_insert(Stat).values(key=StatKey.PASTE_COUNT, int_value=1)
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"int_value": func.coalesce(Stat.int_value, 0) + 1},
        )
        with Session(self.write_engine) as session:
            session.exec(statement)
            session.commit()

    def record_cleanup_time(self) -> None:
        now = utcnow().isoformat()
        statement = sqlite_insert(Stat).values(key=StatKey.LAST_CLEANUP_TIMESTAMP, text_value=now)
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"text_value": statement.excluded.text_value},
        )
        with Session(self.write_engine) as session:
            session.exec(statement)
            session.commit()
