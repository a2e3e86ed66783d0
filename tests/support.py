import os
import shutil
import tempfile
from unittest.mock import patch

from flask import Flask, g

from moontv import settings
from moontv.admin import admin_blueprint
from moontv.api import api_blueprint
from moontv.auth import auth_blueprint, login_manager
from moontv.db import db, enable_sqlite_foreign_keys
from moontv.m3u8 import m3u8_blueprint
from moontv.music import music_blueprint
from moontv.storage import set_storage
from moontv.tmdb import tmdb_blueprint

OWNER_ENV = {'USERNAME': 'owner', 'PASSWORD': 'owner-pass'}


def isolate_settings(testcase, env=None):
    """Point the YAML settings at a temp dir and pin the environment for one test."""
    config_dir = tempfile.mkdtemp(prefix='moontv-test-')
    testcase.addCleanup(shutil.rmtree, config_dir, True)
    patches = [
        patch.object(settings, 'CONFIG_DIR', config_dir),
        patch.object(settings, 'CONFIG_FILE', os.path.join(config_dir, 'settings.yaml')),
        patch.object(settings, '_settings_cache', None),
        patch.dict(os.environ, dict(OWNER_ENV, **(env or {}))),
    ]
    for p in patches:
        p.start()
        testcase.addCleanup(p.stop)
    for key in ('STORAGE_TYPE', 'NEXT_PUBLIC_STORAGE_TYPE', 'PROXY_M3U8_TOKEN',
                'NEXT_PUBLIC_PROXY_M3U8_TOKEN', 'SITE_BASE', 'TUNEHUB_BASE_URL', 'TUNEHUB_API_KEY'):
        if env is None or key not in env:
            os.environ.pop(key, None)
    return config_dir


def write_settings(section, data):
    settings.set_settings_section(section, data)


def make_app():
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = 'test-secret'
    app.config['TESTING'] = True
    db.init_app(app)
    login_manager.init_app(app)
    for blueprint in (auth_blueprint, api_blueprint, admin_blueprint, m3u8_blueprint,
                      music_blueprint, tmdb_blueprint):
        app.register_blueprint(blueprint)

    # The app context stays pushed across test requests, so g outlives each one.
    @app.teardown_request
    def forget_login_user(_exc):
        g.pop('_login_user', None)

    return app


def start_sql_app(testcase, storage_factory=None):
    """In-memory SQLite app with a pushed context and the given storage installed."""
    app = make_app()
    ctx = app.app_context()
    ctx.push()
    testcase.addCleanup(ctx.pop)
    enable_sqlite_foreign_keys()
    db.create_all()
    testcase.addCleanup(db.drop_all)
    testcase.addCleanup(db.session.remove)

    if storage_factory is None:
        from moontv.storage.sql import SqlStorage
        storage = SqlStorage('sqlite')
    else:
        storage = storage_factory()
    set_storage(storage)
    testcase.addCleanup(set_storage, None)
    return app, storage


def login(client, username, password):
    return client.post('/api/login', json={'username': username, 'password': password})
