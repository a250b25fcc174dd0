class ClipStoreError(Exception):
    """剪贴板存储相关错误的基类"""


class ClipNotFoundError(ClipStoreError):
    def __init__(self, clip_id: int):
        super().__init__(f"记录不存在: {clip_id}")
        self.clip_id = clip_id


class DuplicateContentError(ClipStoreError):
    """新内容的哈希已属于另一条记录"""

    def __init__(self, clip_id=None, existing_id=None):
        super().__init__(f"内容与已有记录重复: {clip_id} -> {existing_id}")
        self.clip_id = clip_id
        self.existing_id = existing_id


class SchemaMigrationError(ClipStoreError):
    """数据库初始化或升级失败，存储不可用"""


class StoreUnavailableError(ClipStoreError):
    """初始化未完成或已失败时调用任何操作"""


class ClipImportError(ClipStoreError):
    """导入的 JSON 无法解析或格式不正确"""
