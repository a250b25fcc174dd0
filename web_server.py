from clipstore import create_app, socketio
from clipstore.config import config

app = create_app()

if __name__ == '__main__':
    # 默认只监听本机地址，threading 模式下由 Werkzeug 提供服务
    socketio.run(app, host=config.HOST, port=config.PORT, allow_unsafe_werkzeug=True)
