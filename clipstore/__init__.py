import asyncio
import logging

from flask import Flask
from flask_socketio import SocketIO

from clipstore.config import config
from clipstore.errors import SchemaMigrationError
from clipstore.utils import configure_logging

logger = logging.getLogger(__name__)

socketio = SocketIO()


def create_app(settings=None, store=None):
    settings = settings or config
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    app = Flask(__name__)
    app.config.from_object(settings)

    from .db.manager import ClipDatabase
    store = store or ClipDatabase(settings=settings)
    try:
        asyncio.run(store.initialize())
    except SchemaMigrationError:
        # 服务照常启动，所有接口返回 503
        logger.exception("剪贴板数据库不可用")
    app.extensions["clipstore"] = store

    from .api.routes import api as api_blueprint
    app.register_blueprint(api_blueprint)

    socketio.init_app(app, async_mode=settings.SOCKETIO_ASYNC_MODE)
    return app
