import logging

from flask import Blueprint, Response, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from clipstore import socketio
from clipstore.errors import (
    ClipImportError, ClipNotFoundError, DuplicateContentError, StoreUnavailableError,
)
from clipstore.models.models import ClipType, FilterKey

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)


def get_store():
    return current_app.extensions["clipstore"]


def success(data=None, status=200):
    return jsonify({'success': True, 'data': data}), status


def failure(message, status):
    return jsonify({'success': False, 'error': message}), status


def dump(model):
    return model.model_dump(mode="json") if model is not None else None


def notify_history_update():
    socketio.emit('history_update')  # 通知所有客户端刷新列表


def json_body():
    return request.get_json(silent=True) or {}


# --- 错误处理 ---

@api.errorhandler(ClipNotFoundError)
def handle_not_found(e):
    return failure(str(e), 404)


@api.errorhandler(DuplicateContentError)
def handle_duplicate(e):
    return jsonify({'success': False, 'error': str(e), 'existing_id': e.existing_id}), 409


@api.errorhandler(ClipImportError)
def handle_import_error(e):
    return failure(str(e), 400)


@api.errorhandler(StoreUnavailableError)
def handle_unavailable(e):
    return failure(str(e), 503)


@api.errorhandler(SQLAlchemyError)
def handle_db_error(e):
    logger.exception("数据库操作失败")
    return failure('数据库操作失败', 500)


# --- 记录 ---

# 列表/搜索分页API
@api.route('/api/clips')
async def list_clips():
    try:
        limit = int(request.args.get('limit', current_app.config['PAGE_LIMIT_DEFAULT']))
        offset = int(request.args.get('offset', 0))
    except ValueError:
        return failure('分页参数必须是整数', 400)
    # 限制参数范围
    limit = max(1, min(limit, current_app.config['PAGE_LIMIT_MAX']))
    offset = max(0, offset)
    query = request.args.get('q', '').strip()
    filter_type = request.args.get('filter', FilterKey.ALL)

    records = await get_store().search(limit, offset, query, filter_type)
    logger.debug("GET /api/clips limit=%d offset=%d q=%r filter=%s", limit, offset, query, filter_type)
    return success({
        'records': [dump(r) for r in records],
        'limit': limit,
        'offset': offset,
        'query': query,
        'filter': filter_type,
    })


# 新增记录API
@api.route('/api/clips', methods=['POST'])
async def add_clip():
    data = json_body()
    content = data.get('content')
    if not isinstance(content, str):
        return failure('缺少内容参数', 400)
    if not content.strip():
        return failure('内容不能为空', 400)

    store = get_store()
    clip_id = await store.add(
        content,
        data.get('clip_type') or ClipType.TEXT,
        data.get('source_app'),
        bool(data.get('was_trimmed', False)),
    )
    preview = await store.get_preview(clip_id)
    socketio.emit('clip_added', dump(preview))
    return success({'id': clip_id}, 201)


@api.route('/api/clips/<int:clip_id>')
async def get_clip(clip_id):
    clip = await get_store().get(clip_id)
    if clip is None:
        raise ClipNotFoundError(clip_id)
    return success(dump(clip))


@api.route('/api/clips/<int:clip_id>/preview')
async def get_clip_preview(clip_id):
    preview = await get_store().get_preview(clip_id)
    if preview is None:
        raise ClipNotFoundError(clip_id)
    return success(dump(preview))


@api.route('/api/clips/<int:clip_id>', methods=['PUT'])
async def update_clip(clip_id):
    content = json_body().get('content')
    if not isinstance(content, str) or not content.strip():
        return failure('内容不能为空', 400)
    await get_store().update_content(clip_id, content)
    notify_history_update()
    return success({'id': clip_id})


@api.route('/api/clips/<int:clip_id>', methods=['DELETE'])
async def delete_clip(clip_id):
    if not await get_store().delete(clip_id):
        raise ClipNotFoundError(clip_id)
    notify_history_update()
    return success({'id': clip_id})


@api.route('/api/clips/<int:clip_id>/pin', methods=['POST'])
async def pin_clip(clip_id):
    pinned = bool(json_body().get('pinned', True))
    if not await get_store().set_pinned(clip_id, pinned):
        raise ClipNotFoundError(clip_id)
    notify_history_update()
    return success({'id': clip_id, 'is_pinned': pinned})


@api.route('/api/clips/<int:clip_id>/touch', methods=['POST'])
async def touch_clip(clip_id):
    if not await get_store().touch(clip_id):
        raise ClipNotFoundError(clip_id)
    notify_history_update()
    return success({'id': clip_id})


@api.route('/api/clips/bulk-types', methods=['POST'])
async def bulk_update_types():
    updates = json_body().get('updates')
    if not isinstance(updates, dict):
        return failure('updates 必须是 {id: 类型} 对象', 400)
    try:
        updates = {int(k): str(v) for k, v in updates.items()}
    except ValueError:
        return failure('记录 id 必须是整数', 400)
    changed = await get_store().bulk_update_types(updates)
    if changed:
        notify_history_update()
    return success({'updated': changed})


# --- 统计 ---

@api.route('/api/stats')
async def get_stats():
    stats = await get_store().get_stats()
    return success(dump(stats))


@api.route('/api/stats/paste', methods=['POST'])
async def record_paste():
    await get_store().record_paste()
    return success()


# --- 清理与维护 ---

@api.route('/api/history/clear', methods=['POST'])
async def clear_history():
    store = get_store()
    if json_body().get('all'):
        removed = await store.clear_all()
    else:
        removed = await store.clear_unpinned()
    notify_history_update()
    return success({'removed': removed})


@api.route('/api/maintenance/run', methods=['POST'])
async def run_maintenance():
    result = await get_store().run_maintenance()
    if not result.skipped:
        notify_history_update()
    return success(dump(result))


@api.route('/api/maintenance/compact', methods=['POST'])
async def compact():
    return success({'compacted': await get_store().compact()})


@api.route('/api/maintenance/orphans', methods=['POST'])
async def remove_orphans():
    removed = await get_store().remove_orphans()
    if removed:
        notify_history_update()
    return success({'removed': removed})


@api.route('/api/maintenance/oversized', methods=['POST'])
async def remove_oversized():
    try:
        max_mb = int(json_body().get('max_mb', current_app.config['MAX_CLIP_SIZE_MB']))
    except (TypeError, ValueError):
        return failure('max_mb 必须是整数', 400)
    removed = await get_store().remove_oversized(max_mb)
    if removed:
        notify_history_update()
    return success({'removed': removed})


@api.route('/api/maintenance/retention', methods=['POST'])
async def run_retention():
    data = json_body()
    cfg = current_app.config
    try:
        max_age_days = int(data.get('max_age_days', cfg['CLEANUP_AGE_DAYS']))
        max_total = int(data.get('max_total', cfg['MAX_CLIPS_TOTAL']))
        max_size_mb = int(data.get('max_size_mb', 0))
    except (TypeError, ValueError):
        return failure('清理参数必须是整数', 400)
    removed = await get_store().run_retention(
        max_age_days, max_total, bool(data.get('force_compact', False)), max_size_mb
    )
    if removed:
        notify_history_update()
    return success({'removed': removed})


# --- 导出/导入 ---

@api.route('/api/export')
async def export_clips():
    pinned_only = request.args.get('pinned', '') == 'true'
    body = await get_store().export_json(pinned_only)
    return Response(
        body,
        mimetype='application/json',
        headers={'Content-Disposition': 'attachment; filename=clipstore-export.json'},
    )


@api.route('/api/import', methods=['POST'])
async def import_clips():
    imported = await get_store().import_json(request.get_data(as_text=True))
    if imported:
        notify_history_update()
    return success({'imported': imported})
