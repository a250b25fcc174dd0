"""
搜索/列表查询的构造。

有搜索词时按匹配程度排序：
  0  整个搜索短语（空格连接）作为子串出现在内容中（不区分大小写）
  1  全文索引按词前缀命中，但不是整句命中
  2  全文索引未命中，但每个词都作为子串出现（索引可能没收录很短的词）
排序为 固定优先 -> 匹配程度 -> 时间倒序；没有搜索词时只按时间倒序。
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, text
from sqlalchemy.sql.selectable import TextualSelect

from clipstore.config import config
from clipstore.models.models import ClipType, FilterKey

logger = logging.getLogger(__name__)

COLUMNS = "c.id, c.timestamp, c.clip_type, c.source_app, c.is_pinned, c.was_trimmed, c.size_bytes, c.preview"

RESULT_TYPES = {
    "id": Integer,
    "timestamp": DateTime,
    "is_pinned": Boolean,
    "was_trimmed": Boolean,
    "size_bytes": Integer,
}

SEARCH_RESULT_TYPES = dict(RESULT_TYPES, match_rank=Integer, match_pos=Integer, content_len=Integer)

_WORD_RE = re.compile(r"\w")


def split_terms(search_term: Optional[str]) -> List[str]:
    return (search_term or "").split()


def fts_prefix_term(token: str) -> str:
    """把一个词转成 FTS5 的前缀查询项，双引号包裹以屏蔽查询语法"""
    return '"' + token.replace('"', '""') + '"*'


def like_contains(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class ClipQuery:
    statement: TextualSelect
    params: Dict[str, object] = field(default_factory=dict)
    tokens: List[str] = field(default_factory=list)

    @property
    def is_search(self) -> bool:
        return bool(self.tokens)


class SearchQueryBuilder:
    def __init__(self, settings=config):
        self.settings = settings

    def build(self, limit: int, offset: int, search_term: Optional[str] = "",
              filter_type: Optional[str] = FilterKey.ALL) -> ClipQuery:
        tokens = split_terms(search_term)
        params: Dict[str, object] = {"limit": max(0, int(limit)), "offset": max(0, int(offset))}
        conditions = self._filter_conditions(filter_type, params)

        if not tokens:
            sql = f"SELECT {COLUMNS} FROM clips c"
            if conditions:
                sql += " WHERE " + " AND ".join(conditions)
            sql += " ORDER BY c.timestamp DESC, c.id DESC LIMIT :limit OFFSET :offset"
            return ClipQuery(text(sql).columns(**RESULT_TYPES), params, tokens)

        params["phrase"] = like_contains(" ".join(tokens))
        fallback = []
        for i, token in enumerate(tokens):
            params[f"tok{i}"] = like_contains(token)
            fallback.append(f"c.content LIKE :tok{i} ESCAPE '\\'")
        fallback_sql = "(" + " AND ".join(fallback) + ")"

        # 没有任何字母数字的词不会被分词器收录，只参与子串匹配
        fts_terms = [fts_prefix_term(t) for t in tokens if _WORD_RE.search(t)]
        if fts_terms:
            params["fts"] = " ".join(fts_terms)
            params["hl_open"] = self.settings.HIGHLIGHT_OPEN
            params["hl_close"] = self.settings.HIGHLIGHT_CLOSE
            params["ellipsis"] = self.settings.SNIPPET_ELLIPSIS
            params["snippet_tokens"] = self.settings.SNIPPET_TOKENS
            fts_hit = "c.id IN (SELECT rowid FROM clips_fts WHERE clips_fts MATCH :fts)"
            rank_sql = (
                "CASE WHEN c.content LIKE :phrase ESCAPE '\\' THEN 0 "
                f"WHEN {fts_hit} THEN 1 ELSE 2 END"
            )
            snippet_sql = (
                "(SELECT snippet(clips_fts, 0, :hl_open, :hl_close, :ellipsis, :snippet_tokens) "
                "FROM clips_fts WHERE clips_fts MATCH :fts AND clips_fts.rowid = c.id)"
            )
            conditions.insert(0, f"({fts_hit} OR {fallback_sql})")
        else:
            rank_sql = "CASE WHEN c.content LIKE :phrase ESCAPE '\\' THEN 0 ELSE 2 END"
            snippet_sql = "NULL"
            conditions.insert(0, fallback_sql)

        # 非索引命中时用第一个词所在位置附近的内容作为片段
        params["first_token"] = tokens[0]
        params["context"] = self.settings.SNIPPET_CONTEXT_CHARS
        pos_sql = "instr(lower(c.content), lower(:first_token))"
        window_sql = (
            f"substr(c.content, max(1, {pos_sql} - :context), "
            f"min({pos_sql} - 1, :context) + length(:first_token) + :context)"
        )

        sql = (
            f"SELECT {COLUMNS}, {rank_sql} AS match_rank, {snippet_sql} AS fts_snippet, "
            f"{pos_sql} AS match_pos, {window_sql} AS match_window, length(c.content) AS content_len "
            "FROM clips c WHERE " + " AND ".join(conditions) +
            " ORDER BY c.is_pinned DESC, match_rank ASC, c.timestamp DESC, c.id DESC"
            " LIMIT :limit OFFSET :offset"
        )
        logger.debug("search query: %s params: %s", sql, params)
        return ClipQuery(text(sql).columns(**SEARCH_RESULT_TYPES), params, tokens)

    @staticmethod
    def _filter_conditions(filter_type: Optional[str], params: Dict[str, object]) -> List[str]:
        if not filter_type or filter_type == FilterKey.ALL:
            return []
        if filter_type == FilterKey.PINNED:
            return ["c.is_pinned = 1"]
        if filter_type == FilterKey.LINK:
            params["filter_link"] = ClipType.LINK
            params["filter_file_link"] = ClipType.FILE_LINK
            return ["c.clip_type IN (:filter_link, :filter_file_link)"]
        params["filter_type"] = filter_type
        return ["c.clip_type = :filter_type"]

    def match_context(self, row, query: ClipQuery) -> Optional[str]:
        """搜索结果的命中片段；浏览模式返回 None"""
        if not query.is_search:
            return None
        if row.get("fts_snippet"):
            return row["fts_snippet"]
        pos = row.get("match_pos") or 0
        window = row.get("match_window")
        if pos > 0 and window:
            return self._synthesize(window, pos, query.tokens[0], row.get("content_len") or 0)
        return row.get("preview")

    def _synthesize(self, window: str, pos: int, token: str, content_len: int) -> str:
        context = self.settings.SNIPPET_CONTEXT_CHARS
        start = max(1, pos - context)
        # 窗口没有覆盖到内容末尾时才加省略号
        truncated_tail = start - 1 + len(window) < content_len
        match = re.search(re.escape(token), window, re.IGNORECASE)
        if match:
            window = (
                window[:match.start()]
                + self.settings.HIGHLIGHT_OPEN + match.group(0) + self.settings.HIGHLIGHT_CLOSE
                + window[match.end():]
            )
        if pos - 1 > context:
            window = self.settings.SNIPPET_ELLIPSIS + window
        if truncated_tail:
            window = window + self.settings.SNIPPET_ELLIPSIS
        return window
