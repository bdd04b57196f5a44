from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO
from config import Config

from .errors import CommandError

socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []

    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # In-memory room state, owned by this app
    from quizroom.engine import init_engine
    init_engine(flask_app)

    from quizroom.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')

    @flask_app.route('/')
    def index():
        return jsonify({'message': 'Welcome to the quizroom server!'})

    @flask_app.errorhandler(CommandError)
    def handle_command_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    # Register Socket.IO event handlers on the initialized socketio instance
    from quizroom.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    from quizroom.services.scheduler import start_session_sweeper
    start_session_sweeper(flask_app)

    return flask_app
