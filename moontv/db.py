from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, inspect
from flask_migrate import Migrate
from alembic.runtime.migration import MigrationContext
from alembic.config import Config
from alembic.script import ScriptDirectory
from alembic import command
import os, sys
import shutil
import logging
import datetime
from moontv.constants import *

# Retrieve main logger
logger = logging.getLogger('main')

db = SQLAlchemy()
migrate = Migrate()

# Alembic functions
def get_alembic_cfg():
    cfg = Config(ALEMBIC_CONF)
    cfg.set_main_option("script_location", ALEMBIC_DIR)
    return cfg

def get_alembic_heads():
    alembic_cfg = get_alembic_cfg()
    script = ScriptDirectory.from_config(alembic_cfg)
    try:
        return script.get_heads()
    except Exception:
        return []

def get_current_db_version():
    with db.engine.connect() as connection:
        context = MigrationContext.configure(connection)
        current_rev = context.get_current_revision()
        return current_rev or '0'

def create_db_backup():
    if db.engine.dialect.name != 'sqlite' or not os.path.exists(DB_FILE):
        return
    current_revision = get_current_db_version()
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_filename = f".backup_v{current_revision}_{timestamp}.db"
    backup_path = os.path.join(os.path.dirname(DB_FILE), backup_filename)
    shutil.copy2(DB_FILE, backup_path)
    logger.info(f"Database backup created: {backup_path}")

def is_migration_needed():
    current_revision = get_current_db_version()
    heads = get_alembic_heads()
    if len(heads) > 1:
        logger.warning("Multiple alembic heads detected: %s", ", ".join(heads))

    if not heads:
        logger.info("Database version is up to date (%s)", current_revision)
        return False

    if current_revision not in heads:
        logger.info("Database migration needed, from %s to %s", current_revision, ", ".join(heads))
        return True

    logger.info("Database version is up to date (%s)", current_revision)
    return False


class Users(db.Model):
    username = db.Column(db.String(100), primary_key=True)
    password_hash = db.Column(db.String, nullable=False, default='')
    role = db.Column(db.String(16), nullable=False, default='user')
    banned = db.Column(db.Boolean, nullable=False, default=False)
    tags = db.Column(db.JSON)
    oidc_sub = db.Column(db.String, unique=True)
    enabled_apis = db.Column(db.JSON)
    created_at = db.Column(db.BigInteger, nullable=False)
    playrecord_migrated = db.Column(db.Boolean, nullable=False, default=False)
    favorite_migrated = db.Column(db.Boolean, nullable=False, default=False)
    skip_migrated = db.Column(db.Boolean, nullable=False, default=False)
    last_movie_request_time = db.Column(db.BigInteger, default=0)
    email = db.Column(db.String)
    email_notifications = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (
        db.CheckConstraint("role IN ('owner', 'admin', 'user')", name='ck_users_role'),
        db.Index('idx_users_role', 'role'),
        db.Index('idx_users_created_at', 'created_at'),
    )


def _owned_by_user(backref_name):
    return db.relationship(
        'Users',
        backref=db.backref(backref_name, lazy=True, cascade="all, delete-orphan"),
    )


class PlayRecords(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    key = db.Column(db.String, primary_key=True)
    title = db.Column(db.String, nullable=False)
    source_name = db.Column(db.String, nullable=False)
    cover = db.Column(db.String)
    year = db.Column(db.String)
    episode_index = db.Column(db.Integer, nullable=False, default=0)
    total_episodes = db.Column(db.Integer, nullable=False, default=0)
    play_time = db.Column(db.Integer, nullable=False, default=0)
    total_time = db.Column(db.Integer, nullable=False, default=0)
    save_time = db.Column(db.BigInteger, nullable=False)
    search_title = db.Column(db.String)

    user = _owned_by_user('play_records')

    __table_args__ = (
        db.Index('idx_play_records_username_save_time', 'username', 'save_time'),
        db.Index('idx_play_records_username_source', 'username', 'source_name'),
    )


class Favorites(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    key = db.Column(db.String, primary_key=True)
    source_name = db.Column(db.String, nullable=False)
    total_episodes = db.Column(db.Integer, nullable=False, default=0)
    title = db.Column(db.String, nullable=False)
    year = db.Column(db.String)
    cover = db.Column(db.String)
    save_time = db.Column(db.BigInteger, nullable=False)
    search_title = db.Column(db.String)
    origin = db.Column(db.String(8))
    is_completed = db.Column(db.Boolean, default=False)
    vod_remarks = db.Column(db.String)

    user = _owned_by_user('favorites')

    __table_args__ = (
        db.CheckConstraint("origin IS NULL OR origin IN ('vod', 'live')", name='ck_favorites_origin'),
        db.Index('idx_favorites_username_save_time', 'username', 'save_time'),
        db.Index('idx_favorites_username_source', 'username', 'source_name'),
    )


class SearchHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), nullable=False)
    keyword = db.Column(db.String, nullable=False)
    timestamp = db.Column(db.BigInteger, nullable=False)

    user = _owned_by_user('search_history')

    __table_args__ = (
        db.UniqueConstraint('username', 'keyword', name='uq_search_history_username_keyword'),
        db.Index('idx_search_history_username_timestamp', 'username', 'timestamp'),
    )


class SkipConfigs(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    key = db.Column(db.String, primary_key=True)
    enable = db.Column(db.Boolean, nullable=False, default=True)
    intro_time = db.Column(db.Integer, nullable=False, default=0)
    outro_time = db.Column(db.Integer, nullable=False, default=0)

    user = _owned_by_user('skip_configs')


class DanmakuFilterConfigs(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    rules = db.Column(db.JSON, nullable=False)

    user = _owned_by_user('danmaku_filter_config')


class Notifications(db.Model):
    id = db.Column(db.String, primary_key=True)
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), nullable=False)
    type = db.Column(db.String(32), nullable=False)
    title = db.Column(db.String, nullable=False)
    message = db.Column(db.String, nullable=False)
    timestamp = db.Column(db.BigInteger, nullable=False)
    read = db.Column(db.Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative models.
    meta = db.Column('metadata', db.JSON)

    user = _owned_by_user('notifications')

    __table_args__ = (
        db.CheckConstraint(
            "type IN ('favorite_update', 'system', 'announcement', 'movie_request', 'request_fulfilled')",
            name='ck_notifications_type',
        ),
        db.Index('idx_notifications_username_timestamp', 'username', 'timestamp'),
        db.Index('idx_notifications_username_read', 'username', 'read'),
    )


class MovieRequests(db.Model):
    id = db.Column(db.String, primary_key=True)
    tmdb_id = db.Column(db.Integer)
    title = db.Column(db.String, nullable=False)
    year = db.Column(db.String)
    media_type = db.Column(db.String(8), nullable=False)
    season = db.Column(db.Integer)
    poster = db.Column(db.String)
    overview = db.Column(db.String)
    requested_by = db.Column(db.JSON, nullable=False)
    request_count = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default='pending')
    created_at = db.Column(db.BigInteger, nullable=False)
    updated_at = db.Column(db.BigInteger, nullable=False)
    fulfilled_at = db.Column(db.BigInteger)
    fulfilled_source = db.Column(db.String)
    fulfilled_id = db.Column(db.String)

    __table_args__ = (
        db.CheckConstraint("media_type IN ('movie', 'tv')", name='ck_movie_requests_media_type'),
        db.CheckConstraint("status IN ('pending', 'fulfilled')", name='ck_movie_requests_status'),
        db.Index('idx_movie_requests_status', 'status'),
        db.Index('idx_movie_requests_created_at', 'created_at'),
        db.Index('idx_movie_requests_tmdb_id', 'tmdb_id'),
    )


class UserMovieRequests(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    request_id = db.Column(db.String, db.ForeignKey('movie_requests.id', ondelete='CASCADE'), primary_key=True)

    user = _owned_by_user('movie_request_links')
    request = db.relationship(
        'MovieRequests',
        backref=db.backref('user_links', lazy=True, cascade="all, delete-orphan"),
    )


class GlobalConfig(db.Model):
    key = db.Column(db.String, primary_key=True)
    value = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.BigInteger)


class AdminConfig(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    config = db.Column(db.JSON, nullable=False)
    updated_at = db.Column(db.BigInteger)

    __table_args__ = (
        db.CheckConstraint('id = 1', name='ck_admin_config_singleton'),
    )


class FavoriteCheckTimes(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    last_check_time = db.Column(db.BigInteger, nullable=False)

    user = _owned_by_user('favorite_check_time')


class MusicPlayRecords(db.Model):
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), primary_key=True)
    key = db.Column(db.String, primary_key=True)
    platform = db.Column(db.String(16), nullable=False)
    song_id = db.Column(db.String, nullable=False)
    name = db.Column(db.String, nullable=False)
    artist = db.Column(db.String, nullable=False)
    album = db.Column(db.String)
    pic = db.Column(db.String)
    play_time = db.Column(db.Float, nullable=False, default=0)
    duration = db.Column(db.Float, nullable=False, default=0)
    save_time = db.Column(db.BigInteger, nullable=False)

    user = _owned_by_user('music_play_records')

    __table_args__ = (
        db.CheckConstraint("platform IN ('netease', 'qq', 'kuwo')", name='ck_music_play_records_platform'),
        db.Index('idx_music_play_records_username_save_time', 'username', 'save_time'),
    )


class MusicPlaylists(db.Model):
    id = db.Column(db.String, primary_key=True)
    username = db.Column(db.String(100), db.ForeignKey('users.username', ondelete='CASCADE'), nullable=False)
    name = db.Column(db.String, nullable=False)
    description = db.Column(db.String)
    cover = db.Column(db.String)
    created_at = db.Column(db.BigInteger, nullable=False)
    updated_at = db.Column(db.BigInteger, nullable=False)

    user = _owned_by_user('music_playlists')

    __table_args__ = (
        db.Index('idx_music_playlists_username_created_at', 'username', 'created_at'),
    )


class MusicPlaylistSongs(db.Model):
    playlist_id = db.Column(db.String, db.ForeignKey('music_playlists.id', ondelete='CASCADE'), primary_key=True)
    platform = db.Column(db.String(16), primary_key=True)
    song_id = db.Column(db.String, primary_key=True)
    name = db.Column(db.String, nullable=False)
    artist = db.Column(db.String, nullable=False)
    album = db.Column(db.String)
    pic = db.Column(db.String)
    duration = db.Column(db.Float, nullable=False, default=0)
    added_at = db.Column(db.BigInteger, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    playlist = db.relationship(
        'MusicPlaylists',
        backref=db.backref('songs', lazy=True, cascade="all, delete-orphan"),
    )

    __table_args__ = (
        db.CheckConstraint("platform IN ('netease', 'qq', 'kuwo')", name='ck_music_playlist_songs_platform'),
        db.Index('idx_music_playlist_songs_playlist_sort', 'playlist_id', 'sort_order'),
    )


def _database_is_empty():
    return 'users' not in inspect(db.engine).get_table_names()

def enable_sqlite_foreign_keys():
    if db.engine.dialect.name != 'sqlite':
        return

    @event.listens_for(db.engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

def init_db(app):
    with app.app_context():
        # Ensure foreign keys are enforced when the SQLite connection is opened
        enable_sqlite_foreign_keys()

        # create or migrate database
        if "db" not in sys.argv:
            if _database_is_empty():
                db.create_all()
                command.stamp(get_alembic_cfg(), "head")
                logger.info("Database created and stamped to the latest migration version.")
            else:
                logger.info('Checking database migration...')
                if is_migration_needed():
                    create_db_backup()
                    command.upgrade(get_alembic_cfg(), "head")
                    logger.info("Database migration applied successfully.")
