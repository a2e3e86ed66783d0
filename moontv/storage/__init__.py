import copy
import logging
import threading

from moontv.constants import DEFAULT_ADMIN_CONFIG, REDIS_STORAGE_TYPES, SQL_STORAGE_TYPES
from moontv.settings import load_settings
from moontv.storage.base import Storage, StorageError, hash_password, new_notification

# Retrieve main logger
logger = logging.getLogger('main')

_storage = None

# Held around every load, change and save cycle on the admin config.
admin_config_lock = threading.Lock()


def create_storage(settings):
    """Build the backend named by settings["storage"]["type"].

    Returns None for localstorage, where user data never reaches the server.
    """
    storage_settings = settings["storage"]
    storage_type = storage_settings["type"]

    if storage_type == 'localstorage':
        return None

    if storage_type in SQL_STORAGE_TYPES:
        from moontv.storage.sql import SqlStorage
        if storage_type == 'postgres' and not storage_settings.get("postgres_url"):
            raise StorageError('POSTGRES_URL is required for postgres storage')
        return SqlStorage(storage_type)

    if storage_type in REDIS_STORAGE_TYPES:
        from moontv.storage.redis_store import RedisStorage
        url = storage_settings.get(f"{storage_type}_url")
        if not url:
            raise StorageError(f'{storage_type.upper()}_URL is required for {storage_type} storage')
        return RedisStorage(url, storage_type=storage_type)

    raise StorageError(f'Unsupported storage type: {storage_type}')


def init_storage(settings=None):
    global _storage
    if settings is None:
        settings = load_settings()
    _storage = create_storage(settings)
    logger.info(f'Storage backend: {settings["storage"]["type"]}')
    return _storage


def get_storage():
    return _storage


def set_storage(storage):
    global _storage
    _storage = storage


def merge_admin_config(config):
    """Fill missing admin config sections and keys with defaults."""
    merged = dict(config or {})
    for section, defaults in DEFAULT_ADMIN_CONFIG.items():
        value = copy.deepcopy(defaults)
        if isinstance(merged.get(section), dict):
            value.update(merged[section])
        merged[section] = value
    return merged


def load_admin_config():
    config = _storage.get_admin_config() if _storage is not None else None
    # Callers edit the result; never hand out objects the backend keeps.
    return merge_admin_config(copy.deepcopy(config))


def save_admin_config(config):
    if _storage is None:
        raise StorageError('Admin config cannot be saved with localstorage storage')
    _storage.set_admin_config(merge_admin_config(config))
