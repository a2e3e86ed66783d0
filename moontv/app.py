import os
import sys

APP_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_DIR = os.path.dirname(APP_DIR)
if PROJECT_DIR not in sys.path:
    sys.path.insert(0, PROJECT_DIR)

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
import logging
import secrets
import flask.cli
flask.cli.show_server_banner = lambda *args: None
from moontv.constants import *
from moontv.settings import load_settings, get_owner_credentials
from moontv.db import db, migrate, init_db
from moontv.auth import auth_blueprint, login_manager
from moontv.api import api_blueprint
from moontv.admin import admin_blueprint
from moontv.m3u8 import m3u8_blueprint
from moontv.music import music_blueprint
from moontv.tmdb import tmdb_blueprint
from moontv.anime import schedule_anime_checks
from moontv.scheduler import init_scheduler
from moontv.storage import init_storage, get_storage, load_admin_config
from moontv.utils import ColoredFormatter, FilterRemoveDateFromWerkzeugLogs, get_app_version

# Configure logging
# Get log level from environment variable, default to INFO
log_level_str = os.environ.get('LOG_LEVEL', 'INFO').upper()
log_level_map = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}
log_level = log_level_map.get(log_level_str, logging.INFO)

formatter = ColoredFormatter(
    '[%(asctime)s.%(msecs)03d] %(levelname)s (%(module)s) %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(formatter)

logging.basicConfig(
    level=log_level,
    handlers=[handler]
)

# Create main logger
logger = logging.getLogger('main')
logger.setLevel(log_level)

# Apply filter to hide date from http access logs
logging.getLogger('werkzeug').addFilter(FilterRemoveDateFromWerkzeugLogs())

# Suppress specific Alembic INFO logs
logging.getLogger('alembic.runtime.migration').setLevel(logging.WARNING)


def get_database_uri(settings):
    storage_settings = settings['storage']
    if storage_settings['type'] == 'postgres' and storage_settings.get('postgres_url'):
        url = storage_settings['postgres_url']
        # SQLAlchemy only accepts the postgresql:// scheme.
        if url.startswith('postgres://'):
            url = 'postgresql://' + url[len('postgres://'):]
        return url
    return SQLITE_DB


def create_app(settings=None):
    if settings is None:
        settings = load_settings()
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = get_database_uri(settings)
    # Generate secret key from environment variable or create random one
    secret_key = os.getenv('MOONTV_SECRET_KEY')
    if not secret_key:
        secret_key = secrets.token_hex(32)
        logger.warning('SECRET_KEY not set in environment. Generated random key. Set MOONTV_SECRET_KEY for production.')
    app.config['SECRET_KEY'] = secret_key
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.register_blueprint(auth_blueprint)
    app.register_blueprint(api_blueprint)
    app.register_blueprint(admin_blueprint)
    app.register_blueprint(m3u8_blueprint)
    app.register_blueprint(music_blueprint)
    app.register_blueprint(tmdb_blueprint)

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f'Unhandled error: {e}')
        return jsonify({'success': False, 'message': 'Internal server error.'}), 500

    @app.route('/api/server-config', methods=['GET'])
    def server_config():
        settings = load_settings()
        site_config = load_admin_config()['SiteConfig']
        return jsonify({
            'SiteName': site_config.get('SiteName'),
            'StorageType': settings['storage']['type'],
            'Version': get_app_version(APP_VERSION),
            'AllowRegister': settings['site']['allow_register'] and get_storage() is not None,
        })

    return app


def init(app):
    settings = load_settings()
    logger.info('Initializing storage...')
    storage = init_storage(settings)
    if storage is not None and settings['storage']['type'] in SQL_STORAGE_TYPES:
        init_db(app)

    owner_name, owner_password = get_owner_credentials()
    if not owner_password:
        logger.warning('PASSWORD is not set; the owner account cannot log in.')
    elif storage is not None and not owner_name:
        logger.warning('USERNAME is not set; the owner account cannot log in.')

    # Initialize job scheduler
    logger.info('Initializing Scheduler...')
    init_scheduler(app)
    if storage is not None:
        schedule_anime_checks(app)


if __name__ == '__main__':
    logger.info('Starting initialization of MoonTV...')
    app = create_app()
    init(app)
    logger.info('Initialization steps done, starting server...')
    port = int(os.environ.get('PORT') or 3000)
    app.run(debug=False, use_reloader=False, host="0.0.0.0", port=port, threaded=True)
    # Shutdown server
    logger.info('Shutting down server...')
    # Shutdown scheduler
    app.scheduler.shutdown()
    logger.debug('Scheduler terminated.')
