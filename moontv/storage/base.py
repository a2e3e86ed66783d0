import hashlib
import hmac
import logging
import uuid
from functools import wraps

from moontv.constants import PLAY_RECORD_CLEANUP_GRACE, USER_INFO_CACHE_TTL_S
from moontv.settings import get_owner_credentials, load_settings
from moontv.utils import ExpiringCache, now_ms

# Retrieve main logger
logger = logging.getLogger('main')


class StorageError(Exception):
    pass


def hash_password(password):
    """One-way SHA-256 hex digest used for every stored password."""
    return hashlib.sha256(str(password or '').encode('utf-8')).hexdigest()


def skip_config_key(source, video_id):
    return f"{source}+{video_id}"


def new_notification(notification_type, title, message, metadata=None):
    return {
        'id': uuid.uuid4().hex,
        'type': notification_type,
        'title': title,
        'message': message,
        'timestamp': now_ms(),
        'read': False,
        'metadata': metadata,
    }


def owner_page_window(offset, limit, owner_in_store):
    """Return the (offset, limit) to query so the owner can be shown first.

    When the owner has no stored record it still takes the first slot of page
    one, so that page fetches one row less and later pages shift back by one.
    """
    offset = max(0, int(offset or 0))
    limit = max(0, int(limit or 0))
    if owner_in_store:
        return offset, limit
    if offset == 0:
        return 0, max(0, limit - 1)
    return offset - 1, limit


def owner_placeholder_info():
    return {
        'role': 'owner',
        'banned': False,
        'created_at': 0,
        'playrecord_migrated': True,
        'favorite_migrated': True,
        'skip_migrated': True,
    }


def logged_read(default=None):
    """Log backend failures on optional reads and return an empty value instead."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except Exception as e:
                logger.error(f'{type(self).__name__}.{fn.__name__} failed: {e}')
                if callable(default):
                    return default()
                return default
        return wrapper
    return decorator


class Storage:
    """Per-user media data store shared by every backend.

    Subclasses implement the data operations plus a handful of user
    primitives (`_get_user_row`, `_insert_user_row`, `_get_password_hash`,
    `_count_users`, `_list_user_rows`). Owner handling, password checks,
    the user info cache and owner-first pagination live here so every backend
    behaves the same.
    """

    storage_type = None

    def __init__(self):
        self._user_info_cache = ExpiringCache(USER_INFO_CACHE_TTL_S)

    # Users

    def _invalidate_user(self, username):
        self._user_info_cache.pop(username)

    def verify_user(self, username, password):
        owner_name, owner_password = get_owner_credentials()
        if owner_name and owner_password and username == owner_name and password == owner_password:
            return True
        try:
            stored_hash = self._get_password_hash(username, active_only=True)
        except Exception as e:
            logger.error(f'Password lookup failed for {username}: {e}')
            return False
        if not stored_hash:
            return False
        return hmac.compare_digest(stored_hash, hash_password(password))

    def verify_stored_password(self, username, password):
        # Used for password changes, where banned users still need their own check.
        try:
            stored_hash = self._get_password_hash(username, active_only=False)
        except Exception as e:
            logger.error(f'Password lookup failed for {username}: {e}')
            return False
        if stored_hash is None:
            return False
        return hmac.compare_digest(stored_hash, hash_password(password))

    def check_user_exist(self, username):
        owner_name, _ = get_owner_credentials()
        if owner_name and username == owner_name:
            return True
        return self.has_user_record(username)

    def has_user_record(self, username):
        try:
            return self._get_user_row(username) is not None
        except Exception as e:
            logger.error(f'User lookup failed for {username}: {e}')
            return False

    def get_user_info(self, username):
        cached = self._user_info_cache.get(username)
        if cached is not None:
            return cached

        try:
            info = self._get_user_row(username)
        except Exception as e:
            logger.error(f'User info lookup failed for {username}: {e}')
            return None
        if info is not None:
            self._user_info_cache.set(username, info)
            return info

        owner_name, _ = get_owner_credentials()
        if not owner_name or username != owner_name:
            return None

        info = owner_placeholder_info()
        info['created_at'] = now_ms()
        try:
            self._insert_user_row(
                username,
                password_hash='',
                role='owner',
                created_at=info['created_at'],
            )
            logger.info(f'Created storage record for site owner {username}')
        except Exception as e:
            # The owner still logs in from the environment, so keep going.
            logger.error(f'Failed to create owner record for {username}: {e}')
        self._user_info_cache.set(username, info)
        return info

    def create_user(self, username, password, role='user', tags=None, oidc_sub=None, enabled_apis=None):
        self.create_user_with_hashed_password(
            username,
            hash_password(password),
            role,
            now_ms(),
            tags=tags,
            oidc_sub=oidc_sub,
            enabled_apis=enabled_apis,
        )

    def create_user_with_hashed_password(self, username, password_hash, role, created_at,
                                         tags=None, oidc_sub=None, enabled_apis=None, banned=False):
        self._insert_user_row(
            username,
            password_hash=password_hash,
            role=role,
            created_at=created_at,
            tags=tags,
            oidc_sub=oidc_sub,
            enabled_apis=enabled_apis,
            banned=banned,
        )
        self._invalidate_user(username)

    def change_password(self, username, new_password):
        self.set_user_password_hash(username, hash_password(new_password))

    def get_user_list(self, offset=0, limit=20, owner_username=None):
        try:
            total = self._count_users()
            owner_info = None
            owner_in_store = True
            if owner_username:
                owner_info = self._get_user_row(owner_username)
                owner_in_store = owner_info is not None
                if not owner_in_store:
                    owner_info = owner_placeholder_info()
                    total += 1

            query_offset, query_limit = owner_page_window(offset, limit, owner_in_store)
            rows = self._list_user_rows(query_offset, query_limit) if query_limit > 0 else []
        except Exception as e:
            logger.error(f'User list lookup failed: {e}')
            return {'users': [], 'total': 0}

        users = []
        if owner_username and int(offset or 0) == 0:
            users.append({
                'username': owner_username,
                'role': 'owner',
                'banned': bool(owner_info.get('banned')),
                'tags': owner_info.get('tags'),
                'oidcSub': owner_info.get('oidcSub'),
                'enabledApis': owner_info.get('enabledApis'),
                'created_at': owner_info.get('created_at') or 0,
            })
        for row in rows:
            if owner_username and row['username'] == owner_username:
                continue
            users.append({
                'username': row['username'],
                'role': row['role'],
                'banned': bool(row.get('banned')),
                'tags': row.get('tags'),
                'oidcSub': row.get('oidcSub'),
                'enabledApis': row.get('enabledApis'),
                'created_at': row.get('created_at') or 0,
            })
        return {'users': users, 'total': total}

    # Play records

    def cleanup_old_play_records(self, username, max_records=None):
        """Prune to the newest `max_records` once the grace margin is exceeded."""
        if max_records is None:
            max_records = load_settings()["playrecords"]["max_per_user"]
        max_records = int(max_records)
        threshold = max_records + PLAY_RECORD_CLEANUP_GRACE
        count = self._count_play_records(username)
        if count <= threshold:
            return 0
        removed = self._prune_play_records(username, max_records)
        logger.info(f'Cleaned up {removed} old play records for user {username}')
        return removed
