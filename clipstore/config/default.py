import os

# 数据目录（数据库文件与 WAL 文件所在位置）
DATA_DIR = os.path.join(os.path.expanduser("~"), ".local", "share", "clipstore")

# 数据库配置
DB_FILE = "clipstore.db"
DB_PATH = os.path.join(DATA_DIR, DB_FILE)
DB_LOG_ENABLED = False  # 是否启用 SQL 日志 (SQLAlchemy echo)
DB_BUSY_TIMEOUT = 5.0  # 等待写锁的秒数

# 日志配置
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# 预览与搜索配置
PREVIEW_MAX_BYTES = 5 * 1024  # 预览内容的 UTF-8 字节上限
SNIPPET_TOKENS = 24  # 全文索引片段的最大词数 (1-64)
SNIPPET_CONTEXT_CHARS = 40  # 子串命中时，命中位置前后截取的字符数
HIGHLIGHT_OPEN = "[HL]"
HIGHLIGHT_CLOSE = "[/HL]"
SNIPPET_ELLIPSIS = "..."
PAGE_LIMIT_DEFAULT = 30
PAGE_LIMIT_MAX = 100

# 清理策略 (0 表示关闭该策略)
CLEANUP_AGE_DAYS = 21
MAX_CLIPS_TOTAL = 999
MAX_CLIP_SIZE_MB = 100

# 维护配置
ORPHAN_BATCH_SIZE = 500  # 检查失效文件记录时每批读取的行数
STREAM_BATCH_SIZE = 200  # 流式枚举时每批读取的行数
COMPACT_RETRY_DELAY = 0.25  # 数据库被占用时，重试压缩前等待的秒数

# 网页配置
HOST = "127.0.0.1"
PORT = 5000
SOCKETIO_ASYNC_MODE = "threading"  # 使用 simple-websocket 提供 WebSocket 支持
