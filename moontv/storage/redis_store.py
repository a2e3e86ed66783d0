import json
import logging
from functools import wraps

import redis

from moontv.constants import SEARCH_HISTORY_LIMIT
from moontv.storage.base import Storage, logged_read, skip_config_key
from moontv.utils import now_ms

# Retrieve main logger
logger = logging.getLogger('main')


def _write(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except redis.RedisError as e:
            logger.error(f'RedisStorage.{fn.__name__} failed: {e}')
            raise
    return wrapper


def _loads(raw, default=None):
    if raw is None or raw == '':
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f'Discarding malformed JSON value from redis: {raw[:80]}')
        return default


def _dumps(value):
    return json.dumps(value, ensure_ascii=False)


def _flag(raw, default=False):
    if raw is None:
        return default
    return str(raw) in ('1', 'true', 'True')


def _user_key(username, suffix):
    return f'user:{username}:{suffix}'


_USER_SUFFIXES = (
    'playrecords',
    'favorites',
    'skipconfigs',
    'searchhistory',
    'danmaku_filter',
    'notifications',
    'movie_requests',
    'music_playrecords',
)


class RedisStorage(Storage):
    """Key-value store for redis, kvrocks and upstash (redis protocol).

    Per-user collections are hashes of JSON documents keyed by record key, so
    every write is a single command and needs no transaction.
    """

    USER_LIST_KEY = 'user:list'
    ADMIN_CONFIG_KEY = 'admin:config'
    GLOBAL_CONFIG_KEY = 'global_config'
    FAVORITE_CHECK_KEY = 'favorite_check_times'
    MOVIE_REQUESTS_KEY = 'movie_requests'
    PLAYLISTS_KEY = 'music_playlists'

    def __init__(self, url=None, storage_type='redis', client=None):
        super().__init__()
        self.storage_type = storage_type
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        self.client = client

    # User primitives

    def _get_user_row(self, username):
        raw = self.client.hgetall(_user_key(username, 'info'))
        if not raw:
            return None
        return {
            'username': username,
            'role': raw.get('role') or 'user',
            'banned': _flag(raw.get('banned')),
            'tags': _loads(raw.get('tags')),
            'oidcSub': raw.get('oidc_sub') or None,
            'enabledApis': _loads(raw.get('enabled_apis')),
            'created_at': int(raw.get('created_at') or 0),
            'playrecord_migrated': _flag(raw.get('playrecord_migrated')),
            'favorite_migrated': _flag(raw.get('favorite_migrated')),
            'skip_migrated': _flag(raw.get('skip_migrated')),
            'last_movie_request_time': int(raw.get('last_movie_request_time') or 0),
            'email': raw.get('email') or None,
            'emailNotifications': _flag(raw.get('email_notifications'), default=True),
        }

    @_write
    def _insert_user_row(self, username, password_hash, role, created_at,
                         tags=None, oidc_sub=None, enabled_apis=None, banned=False):
        info_key = _user_key(username, 'info')
        if self.client.exists(info_key):
            raise ValueError(f'User {username} already exists')
        mapping = {
            'password_hash': password_hash or '',
            'role': role,
            'banned': '1' if banned else '0',
            'created_at': str(int(created_at)),
            'playrecord_migrated': '1',
            'favorite_migrated': '1',
            'skip_migrated': '1',
            'last_movie_request_time': '0',
            'email_notifications': '1',
        }
        if tags is not None:
            mapping['tags'] = _dumps(list(tags))
        if enabled_apis is not None:
            mapping['enabled_apis'] = _dumps(list(enabled_apis))
        if oidc_sub:
            mapping['oidc_sub'] = oidc_sub
            self.client.set(f'oidc:{oidc_sub}', username)
        self.client.hset(info_key, mapping=mapping)
        self.client.zadd(self.USER_LIST_KEY, {username: int(created_at)})

    def _get_password_hash(self, username, active_only=True):
        info_key = _user_key(username, 'info')
        if not self.client.exists(info_key):
            return None
        if active_only and _flag(self.client.hget(info_key, 'banned')):
            return None
        return self.client.hget(info_key, 'password_hash') or ''

    def _count_users(self):
        return self.client.zcard(self.USER_LIST_KEY)

    def _list_user_rows(self, offset, limit):
        names = self.client.zrevrange(self.USER_LIST_KEY, offset, offset + limit - 1)
        rows = []
        for name in names:
            row = self._get_user_row(name)
            if row is not None:
                rows.append(row)
        return rows

    def _set_user_fields(self, username, mapping):
        info_key = _user_key(username, 'info')
        if not self.client.exists(info_key):
            return False
        self.client.hset(info_key, mapping=mapping)
        self._invalidate_user(username)
        return True

    # Users

    @_write
    def delete_user(self, username):
        oidc_sub = self.client.hget(_user_key(username, 'info'), 'oidc_sub')
        if oidc_sub:
            self.client.delete(f'oidc:{oidc_sub}')
        for playlist_id in self.client.smembers(_user_key(username, 'music_playlists')):
            self._delete_playlist(playlist_id)
        self.client.delete(
            _user_key(username, 'info'),
            _user_key(username, 'music_playlists'),
            *[_user_key(username, suffix) for suffix in _USER_SUFFIXES]
        )
        self.client.zrem(self.USER_LIST_KEY, username)
        self.client.hdel(self.FAVORITE_CHECK_KEY, username)
        self._invalidate_user(username)

    @logged_read(default=list)
    def get_all_users(self):
        return list(self.client.zrevrange(self.USER_LIST_KEY, 0, -1))

    @_write
    def update_user_info(self, username, role=None, banned=None, tags=None, oidc_sub=None, enabled_apis=None):
        mapping = {}
        if role is not None:
            mapping['role'] = role
        if banned is not None:
            mapping['banned'] = '1' if banned else '0'
        if tags is not None:
            mapping['tags'] = _dumps(list(tags))
        if enabled_apis is not None:
            mapping['enabled_apis'] = _dumps(list(enabled_apis))
        if oidc_sub is not None:
            previous = self.client.hget(_user_key(username, 'info'), 'oidc_sub')
            if previous and previous != oidc_sub:
                self.client.delete(f'oidc:{previous}')
            mapping['oidc_sub'] = oidc_sub
            if oidc_sub:
                self.client.set(f'oidc:{oidc_sub}', username)
        if mapping:
            self._set_user_fields(username, mapping)

    @logged_read()
    def get_user_by_oidc_sub(self, oidc_sub):
        return self.client.get(f'oidc:{oidc_sub}')

    @logged_read(default=list)
    def get_users_by_tag(self, tag):
        matched = []
        for name in self.client.zrevrange(self.USER_LIST_KEY, 0, -1):
            tags = _loads(self.client.hget(_user_key(name, 'info'), 'tags'), default=[]) or []
            if tag in tags:
                matched.append(name)
        return matched

    @logged_read()
    def get_user_password_hash(self, username):
        return self._get_password_hash(username, active_only=False)

    @_write
    def set_user_password_hash(self, username, password_hash):
        self._set_user_fields(username, {'password_hash': password_hash})

    @logged_read()
    def get_user_email(self, username):
        return self.client.hget(_user_key(username, 'info'), 'email') or None

    @_write
    def set_user_email(self, username, email):
        self._set_user_fields(username, {'email': email or ''})

    @logged_read(default=True)
    def get_email_notification_preference(self, username):
        return _flag(self.client.hget(_user_key(username, 'info'), 'email_notifications'), default=True)

    @_write
    def set_email_notification_preference(self, username, enabled):
        self._set_user_fields(username, {'email_notifications': '1' if enabled else '0'})

    @_write
    def update_last_movie_request_time(self, username, timestamp):
        self._set_user_fields(username, {'last_movie_request_time': str(int(timestamp))})

    def _set_migrated_flag(self, username, field):
        try:
            self._set_user_fields(username, {field: '1'})
        except redis.RedisError as e:
            logger.error(f'Failed to set {field} for {username}: {e}')

    def migrate_play_records(self, username):
        self._set_migrated_flag(username, 'playrecord_migrated')

    def migrate_favorites(self, username):
        self._set_migrated_flag(username, 'favorite_migrated')

    def migrate_skip_configs(self, username):
        self._set_migrated_flag(username, 'skip_migrated')

    # Shared hash-of-json helpers

    def _hash_get(self, key, field):
        return _loads(self.client.hget(key, field))

    def _hash_all(self, key):
        return {field: _loads(raw) for field, raw in self.client.hgetall(key).items()}

    def _sorted_by(self, key, attr):
        items = self._hash_all(key)
        return dict(sorted(items.items(), key=lambda kv: (kv[1] or {}).get(attr) or 0, reverse=True))

    # Play records

    def get_play_record(self, username, key):
        return self._hash_get(_user_key(username, 'playrecords'), key)

    @_write
    def set_play_record(self, username, key, record):
        record = dict(record)
        record.setdefault('save_time', now_ms())
        self.client.hset(_user_key(username, 'playrecords'), key, _dumps(record))

    def get_all_play_records(self, username):
        return self._sorted_by(_user_key(username, 'playrecords'), 'save_time')

    @_write
    def delete_play_record(self, username, key):
        self.client.hdel(_user_key(username, 'playrecords'), key)

    @_write
    def clear_all_play_records(self, username):
        self.client.delete(_user_key(username, 'playrecords'))

    def _count_play_records(self, username):
        return self.client.hlen(_user_key(username, 'playrecords'))

    @_write
    def _prune_play_records(self, username, keep):
        ordered = list(self.get_all_play_records(username))
        stale = ordered[keep:]
        if stale:
            self.client.hdel(_user_key(username, 'playrecords'), *stale)
        return len(stale)

    # Favorites

    def get_favorite(self, username, key):
        return self._hash_get(_user_key(username, 'favorites'), key)

    @_write
    def set_favorite(self, username, key, favorite):
        favorite = dict(favorite)
        favorite.setdefault('save_time', now_ms())
        self.client.hset(_user_key(username, 'favorites'), key, _dumps(favorite))

    def get_all_favorites(self, username):
        return self._sorted_by(_user_key(username, 'favorites'), 'save_time')

    @_write
    def delete_favorite(self, username, key):
        self.client.hdel(_user_key(username, 'favorites'), key)

    @_write
    def clear_all_favorites(self, username):
        self.client.delete(_user_key(username, 'favorites'))

    # Skip configs

    @logged_read()
    def get_skip_config(self, username, source, video_id):
        return self._hash_get(_user_key(username, 'skipconfigs'), skip_config_key(source, video_id))

    @_write
    def set_skip_config(self, username, source, video_id, config):
        value = {
            'enable': bool(config.get('enable')),
            'intro_time': int(config.get('intro_time') or 0),
            'outro_time': int(config.get('outro_time') or 0),
        }
        self.client.hset(_user_key(username, 'skipconfigs'), skip_config_key(source, video_id), _dumps(value))

    @_write
    def delete_skip_config(self, username, source, video_id):
        self.client.hdel(_user_key(username, 'skipconfigs'), skip_config_key(source, video_id))

    @logged_read(default=dict)
    def get_all_skip_configs(self, username):
        return self._hash_all(_user_key(username, 'skipconfigs'))

    # Danmaku filter

    @logged_read()
    def get_danmaku_filter_config(self, username):
        return _loads(self.client.get(_user_key(username, 'danmaku_filter')))

    @_write
    def set_danmaku_filter_config(self, username, config):
        self.client.set(_user_key(username, 'danmaku_filter'), _dumps(config))

    @_write
    def delete_danmaku_filter_config(self, username):
        self.client.delete(_user_key(username, 'danmaku_filter'))

    # Search history

    @logged_read(default=list)
    def get_search_history(self, username):
        return list(self.client.lrange(_user_key(username, 'searchhistory'), 0, SEARCH_HISTORY_LIMIT - 1))

    @_write
    def add_search_history(self, username, keyword):
        key = _user_key(username, 'searchhistory')
        self.client.lrem(key, 0, keyword)
        self.client.lpush(key, keyword)
        self.client.ltrim(key, 0, SEARCH_HISTORY_LIMIT - 1)

    @_write
    def delete_search_history(self, username, keyword=None):
        key = _user_key(username, 'searchhistory')
        if keyword:
            self.client.lrem(key, 0, keyword)
        else:
            self.client.delete(key)

    # Notifications

    @logged_read(default=list)
    def get_notifications(self, username):
        return list(self._sorted_by(_user_key(username, 'notifications'), 'timestamp').values())

    @_write
    def add_notification(self, username, notification):
        notification = dict(notification)
        notification.setdefault('timestamp', now_ms())
        notification['read'] = bool(notification.get('read'))
        self.client.hset(_user_key(username, 'notifications'), notification['id'], _dumps(notification))

    @_write
    def mark_notification_as_read(self, username, notification_id):
        key = _user_key(username, 'notifications')
        notification = self._hash_get(key, notification_id)
        if notification is None:
            return
        notification['read'] = True
        self.client.hset(key, notification_id, _dumps(notification))

    @_write
    def delete_notification(self, username, notification_id):
        self.client.hdel(_user_key(username, 'notifications'), notification_id)

    @_write
    def clear_all_notifications(self, username):
        self.client.delete(_user_key(username, 'notifications'))

    @logged_read(default=0)
    def get_unread_notification_count(self, username):
        return sum(1 for n in self._hash_all(_user_key(username, 'notifications')).values() if n and not n.get('read'))

    # Movie requests

    @logged_read(default=list)
    def get_all_movie_requests(self):
        return list(self._sorted_by(self.MOVIE_REQUESTS_KEY, 'createdAt').values())

    @logged_read()
    def get_movie_request(self, request_id):
        return self._hash_get(self.MOVIE_REQUESTS_KEY, request_id)

    @_write
    def create_movie_request(self, request):
        request = dict(request)
        request.setdefault('createdAt', now_ms())
        request.setdefault('updatedAt', request['createdAt'])
        request.setdefault('status', 'pending')
        request['requestedBy'] = list(request.get('requestedBy') or [])
        request.setdefault('requestCount', len(request['requestedBy']))
        self.client.hset(self.MOVIE_REQUESTS_KEY, request['id'], _dumps(request))

    @_write
    def update_movie_request(self, request_id, updates):
        request = self._hash_get(self.MOVIE_REQUESTS_KEY, request_id)
        if request is None:
            return
        for field in ('requestedBy', 'requestCount', 'status', 'fulfilledAt', 'fulfilledSource', 'fulfilledId'):
            if field in updates:
                request[field] = updates[field]
        request['updatedAt'] = now_ms()
        self.client.hset(self.MOVIE_REQUESTS_KEY, request_id, _dumps(request))

    @_write
    def delete_movie_request(self, request_id):
        request = self._hash_get(self.MOVIE_REQUESTS_KEY, request_id)
        self.client.hdel(self.MOVIE_REQUESTS_KEY, request_id)
        for name in (request or {}).get('requestedBy') or []:
            self.client.srem(_user_key(name, 'movie_requests'), request_id)

    @logged_read(default=list)
    def get_user_movie_requests(self, username):
        return sorted(self.client.smembers(_user_key(username, 'movie_requests')))

    @_write
    def add_user_movie_request(self, username, request_id):
        self.client.sadd(_user_key(username, 'movie_requests'), request_id)

    @_write
    def remove_user_movie_request(self, username, request_id):
        self.client.srem(_user_key(username, 'movie_requests'), request_id)

    # Music play records

    @logged_read()
    def get_music_play_record(self, username, key):
        return self._hash_get(_user_key(username, 'music_playrecords'), key)

    @_write
    def set_music_play_record(self, username, key, record):
        record = dict(record)
        record['id'] = str(record['id'])
        record.setdefault('save_time', now_ms())
        self.client.hset(_user_key(username, 'music_playrecords'), key, _dumps(record))

    @_write
    def batch_set_music_play_records(self, username, records):
        for item in records or []:
            self.set_music_play_record(username, item['key'], item['record'])

    def get_all_music_play_records(self, username):
        return self._sorted_by(_user_key(username, 'music_playrecords'), 'save_time')

    @_write
    def delete_music_play_record(self, username, key):
        self.client.hdel(_user_key(username, 'music_playrecords'), key)

    @_write
    def clear_all_music_play_records(self, username):
        self.client.delete(_user_key(username, 'music_playrecords'))

    # Music playlists

    def _songs_key(self, playlist_id):
        return f'music_playlist:{playlist_id}:songs'

    def _delete_playlist(self, playlist_id):
        playlist = self._hash_get(self.PLAYLISTS_KEY, playlist_id)
        self.client.hdel(self.PLAYLISTS_KEY, playlist_id)
        self.client.delete(self._songs_key(playlist_id))
        if playlist:
            self.client.srem(_user_key(playlist['username'], 'music_playlists'), playlist_id)

    def _touch_playlist(self, playlist_id, now=None):
        playlist = self._hash_get(self.PLAYLISTS_KEY, playlist_id)
        if playlist is None:
            return
        playlist['updated_at'] = now or now_ms()
        self.client.hset(self.PLAYLISTS_KEY, playlist_id, _dumps(playlist))

    @_write
    def create_music_playlist(self, username, playlist):
        now = now_ms()
        value = {
            'id': playlist['id'],
            'username': username,
            'name': playlist['name'],
            'description': playlist.get('description'),
            'cover': playlist.get('cover'),
            'created_at': now,
            'updated_at': now,
        }
        self.client.hset(self.PLAYLISTS_KEY, playlist['id'], _dumps(value))
        self.client.sadd(_user_key(username, 'music_playlists'), playlist['id'])

    @logged_read()
    def get_music_playlist(self, playlist_id):
        return self._hash_get(self.PLAYLISTS_KEY, playlist_id)

    @logged_read(default=list)
    def get_user_music_playlists(self, username):
        playlists = []
        for playlist_id in self.client.smembers(_user_key(username, 'music_playlists')):
            playlist = self._hash_get(self.PLAYLISTS_KEY, playlist_id)
            if playlist:
                playlists.append(playlist)
        return sorted(playlists, key=lambda p: p.get('created_at') or 0, reverse=True)

    @_write
    def update_music_playlist(self, playlist_id, name=None, description=None, cover=None):
        playlist = self._hash_get(self.PLAYLISTS_KEY, playlist_id)
        if playlist is None or (name is None and description is None and cover is None):
            return
        if name is not None:
            playlist['name'] = name
        if description is not None:
            playlist['description'] = description
        if cover is not None:
            playlist['cover'] = cover
        playlist['updated_at'] = now_ms()
        self.client.hset(self.PLAYLISTS_KEY, playlist_id, _dumps(playlist))

    @_write
    def delete_music_playlist(self, playlist_id):
        self._delete_playlist(playlist_id)

    @_write
    def add_song_to_playlist(self, playlist_id, song):
        now = now_ms()
        key = self._songs_key(playlist_id)
        field = f"{song['platform']}:{song['id']}"
        existing = self._hash_get(key, field)
        if existing is None:
            songs = self._hash_all(key).values()
            max_sort = max([s.get('sort_order') or 0 for s in songs if s] or [0])
            existing = {
                'platform': song['platform'],
                'id': str(song['id']),
                'added_at': now,
                'sort_order': max_sort + 1,
            }
        existing.update({
            'name': song['name'],
            'artist': song['artist'],
            'album': song.get('album'),
            'pic': song.get('pic'),
            'duration': song.get('duration') or 0,
        })
        self.client.hset(key, field, _dumps(existing))
        self._touch_playlist(playlist_id, now)

    @_write
    def remove_song_from_playlist(self, playlist_id, platform, song_id):
        self.client.hdel(self._songs_key(playlist_id), f'{platform}:{song_id}')
        self._touch_playlist(playlist_id)

    @logged_read(default=list)
    def get_playlist_songs(self, playlist_id):
        songs = [s for s in self._hash_all(self._songs_key(playlist_id)).values() if s]
        return sorted(songs, key=lambda s: s.get('sort_order') or 0)

    @_write
    def update_playlist_song_order(self, playlist_id, song_orders):
        key = self._songs_key(playlist_id)
        for order in song_orders or []:
            field = f"{order['platform']}:{order['songId']}"
            song = self._hash_get(key, field)
            if song is None:
                continue
            song['sort_order'] = int(order['sortOrder'])
            self.client.hset(key, field, _dumps(song))
        self._touch_playlist(playlist_id)

    # Admin config and global values

    @logged_read()
    def get_admin_config(self):
        return _loads(self.client.get(self.ADMIN_CONFIG_KEY))

    @_write
    def set_admin_config(self, config):
        self.client.set(self.ADMIN_CONFIG_KEY, _dumps(config))

    @logged_read()
    def get_global_value(self, key):
        return self.client.hget(self.GLOBAL_CONFIG_KEY, key)

    @_write
    def set_global_value(self, key, value):
        self.client.hset(self.GLOBAL_CONFIG_KEY, key, value)

    @_write
    def delete_global_value(self, key):
        self.client.hdel(self.GLOBAL_CONFIG_KEY, key)

    @logged_read(default=0)
    def get_last_favorite_check_time(self, username):
        return int(self.client.hget(self.FAVORITE_CHECK_KEY, username) or 0)

    @_write
    def set_last_favorite_check_time(self, username, timestamp):
        self.client.hset(self.FAVORITE_CHECK_KEY, username, str(int(timestamp)))

    @_write
    def clear_all_data(self):
        for name in self.client.zrange(self.USER_LIST_KEY, 0, -1):
            for playlist_id in self.client.smembers(_user_key(name, 'music_playlists')):
                self.client.delete(self._songs_key(playlist_id))
            self.client.delete(
                _user_key(name, 'music_playlists'),
                *[_user_key(name, suffix) for suffix in _USER_SUFFIXES]
            )
        self.client.delete(
            self.PLAYLISTS_KEY,
            self.MOVIE_REQUESTS_KEY,
            self.GLOBAL_CONFIG_KEY,
            self.FAVORITE_CHECK_KEY,
        )
