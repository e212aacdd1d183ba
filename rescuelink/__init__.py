"""RescueLink: emergency dispatch and bKash payment coordination server."""
import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, jwt, socketio, cors


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(level=getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO),
                        format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    # Socket handlers are collected before the first server is created
    from . import realtime  # noqa: F401

    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app)
    socketio.init_app(app)

    from .auth import auth_bp, users_bp
    from .chat import chat_bp
    from .emergency import emergency_bp
    from .errors import register_error_handlers
    from .medical_records import medical_records_bp
    from .orders import orders_bp
    from .prescriptions import prescriptions_bp

    for blueprint in (auth_bp, users_bp, emergency_bp, orders_bp, prescriptions_bp,
                      chat_bp, medical_records_bp):
        app.register_blueprint(blueprint)
    register_error_handlers(app)

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({"success": True, "status": "Server is running"}), 200

    with app.app_context():
        db.create_all()
    return app
