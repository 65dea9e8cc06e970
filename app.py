"""
Dispenser Hub - Pill dispenser fleet backend
Main Flask application entry point
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from config import config
from models import db, User
from utils.errors import DispatchError


def create_app(config_name=None):
    """Application factory pattern"""

    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # Initialize extensions
    db.init_app(app)

    # CORS configuration
    CORS(app, resources={
        r"/api/*": {
            "origins": app.config['CORS_ORIGINS'],
            "methods": ["GET", "POST", "DELETE"],
            "allow_headers": ["Authorization", "Content-Type", "X-Device-Serial", "X-Device-Secret"]
        }
    })

    # Rate limiting
    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=[app.config['RATELIMIT_DEFAULT']],
        storage_uri=app.config['RATELIMIT_STORAGE_URL'],
        enabled=app.config['RATELIMIT_ENABLED']
    )

    # Setup logging
    setup_logging(app)

    # Register blueprints
    from routes.api_routes import api_bp, setup_api_logger
    from routes.client_routes import client_bp

    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(client_bp, url_prefix='/api')

    if not app.debug and not app.testing:
        setup_api_logger(app)

    # Error handlers
    @app.errorhandler(DispatchError)
    def dispatch_error(error):
        if error.status_code >= 500:
            db.session.rollback()
            app.logger.error(f'{error.error}: {error.message}')
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(429)
    def rate_limited(error):
        return jsonify({'error': 'Too many requests', 'message': str(error.description)}), 429

    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.name}), error.code
        db.session.rollback()
        app.logger.exception(f'Unhandled error: {error}')
        return jsonify({'error': 'Internal server error'}), 500

    # Store limiter in app for use in blueprints
    app.limiter = limiter  # type: ignore

    # Background command expiry
    from utils.scheduler import init_scheduler, shutdown_scheduler
    init_scheduler(app)

    # Register shutdown handler
    import atexit
    atexit.register(shutdown_scheduler)

    return app


def setup_logging(app):
    """Configure application logging"""

    if not app.debug and not app.testing:
        # Create logs directory if it doesn't exist
        if not os.path.exists(app.config['LOG_FOLDER']):
            os.mkdir(app.config['LOG_FOLDER'])

        # Application log handler
        file_handler = RotatingFileHandler(
            app.config['APP_LOG_FILE'],
            maxBytes=10240000,  # 10MB
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)

        app.logger.setLevel(logging.INFO)
        app.logger.info('Dispenser Hub startup')


if __name__ == '__main__':
    app = create_app()

    # Create database tables if they don't exist
    with app.app_context():
        db.create_all()

        # Create default admin user if none exists
        if User.query.count() == 0:
            admin = User(
                username=app.config['ADMIN_USERNAME'],
                email='admin@dispenserhub.local'
            )
            admin.set_password(app.config['ADMIN_PASSWORD'])
            db.session.add(admin)
            db.session.commit()
            app.logger.info(f"Created default admin user: {admin.username}")

    app.run(
        host=app.config['FLASK_HOST'],
        port=app.config['FLASK_PORT'],
        debug=app.config['DEBUG']
    )
