import os

from dotenv import load_dotenv

from . import default

ENV_PREFIX = "CLIPSTORE_"

load_dotenv()


def _coerce(raw: str, current):
    """把环境变量字符串转换成默认值的类型"""
    if isinstance(current, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


class Config:
    def __init__(self, **overrides):
        explicit = set(overrides)
        for key in dir(default):
            if not key.isupper():
                continue
            value = getattr(default, key)
            raw = os.getenv(f"{ENV_PREFIX}{key}")
            if raw is not None:
                value = _coerce(raw, value)
                explicit.add(key)
            setattr(self, key, value)

        for key, value in overrides.items():
            if not key.isupper() or not hasattr(default, key):
                raise TypeError(f"未知配置项: {key}")
            setattr(self, key, value)

        # 只改了数据目录时，数据库文件跟随数据目录
        if "DB_PATH" not in explicit:
            self.DB_PATH = os.path.join(self.DATA_DIR, self.DB_FILE)


config = Config()
