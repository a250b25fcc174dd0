import hashlib
import logging

from .config import config


def configure_logging(level=None, fmt=None):
    """按配置初始化根日志；重复调用不会重复添加 handler"""
    logging.basicConfig(level=level or config.LOG_LEVEL, format=fmt or config.LOG_FORMAT)
    logging.getLogger().setLevel(level or config.LOG_LEVEL)


def compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def utf8_size(content: str) -> int:
    return len(content.encode("utf-8"))


def create_preview(content: str, max_bytes: int = config.PREVIEW_MAX_BYTES) -> str:
    """
    截取不超过 max_bytes 个 UTF-8 字节的最长前缀。
    截断只发生在字符边界上，不会拆开多字节字符。
    """
    encoded = content.encode("utf-8")
    if len(encoded) <= max_bytes:
        return content
    # 末尾被截断的不完整字节序列会被丢弃
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def bytes_to_mb(size: int) -> float:
    return round(size / (1024.0 * 1024.0), 2)
