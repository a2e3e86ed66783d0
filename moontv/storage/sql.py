import logging
from functools import wraps

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite

from moontv.db import *
from moontv.storage.base import Storage, logged_read, skip_config_key
from moontv.utils import now_ms

# Retrieve main logger
logger = logging.getLogger('main')


def _write(fn):
    """Commit on success; roll back, log and re-raise on failure."""
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            result = fn(self, *args, **kwargs)
            db.session.commit()
            return result
        except Exception as e:
            db.session.rollback()
            logger.error(f'SqlStorage.{fn.__name__} failed: {e}')
            raise
    return wrapper


def _insert(model):
    if db.session.get_bind().dialect.name == 'postgresql':
        return postgresql.insert(model)
    return sqlite.insert(model)


def _upsert(model, values, index_elements, update_columns):
    stmt = _insert(model).values(**values)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={name: stmt.excluded[name] for name in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    db.session.execute(stmt)


def _user_info(user):
    return {
        'username': user.username,
        'role': user.role,
        'banned': bool(user.banned),
        'tags': user.tags,
        'oidcSub': user.oidc_sub,
        'enabledApis': user.enabled_apis,
        'created_at': user.created_at,
        'playrecord_migrated': bool(user.playrecord_migrated),
        'favorite_migrated': bool(user.favorite_migrated),
        'skip_migrated': bool(user.skip_migrated),
        'last_movie_request_time': user.last_movie_request_time or 0,
        'email': user.email,
        'emailNotifications': bool(user.email_notifications),
    }


def _play_record(row):
    return {
        'title': row.title,
        'source_name': row.source_name,
        'cover': row.cover or '',
        'year': row.year or '',
        'index': row.episode_index,
        'total_episodes': row.total_episodes,
        'play_time': row.play_time,
        'total_time': row.total_time,
        'save_time': row.save_time,
        'search_title': row.search_title or '',
    }


def _favorite(row):
    return {
        'source_name': row.source_name,
        'total_episodes': row.total_episodes,
        'title': row.title,
        'year': row.year or '',
        'cover': row.cover or '',
        'save_time': row.save_time,
        'search_title': row.search_title or '',
        'origin': row.origin,
        'is_completed': bool(row.is_completed),
        'vod_remarks': row.vod_remarks,
    }


def _skip_config(row):
    return {
        'enable': bool(row.enable),
        'intro_time': row.intro_time,
        'outro_time': row.outro_time,
    }


def _notification(row):
    return {
        'id': row.id,
        'type': row.type,
        'title': row.title,
        'message': row.message,
        'timestamp': row.timestamp,
        'read': bool(row.read),
        'metadata': row.meta,
    }


def _movie_request(row):
    return {
        'id': row.id,
        'tmdbId': row.tmdb_id,
        'title': row.title,
        'year': row.year,
        'mediaType': row.media_type,
        'season': row.season,
        'poster': row.poster,
        'overview': row.overview,
        'requestedBy': list(row.requested_by or []),
        'requestCount': row.request_count,
        'status': row.status,
        'createdAt': row.created_at,
        'updatedAt': row.updated_at,
        'fulfilledAt': row.fulfilled_at,
        'fulfilledSource': row.fulfilled_source,
        'fulfilledId': row.fulfilled_id,
    }


def _music_record(row):
    return {
        'platform': row.platform,
        'id': row.song_id,
        'name': row.name,
        'artist': row.artist,
        'album': row.album,
        'pic': row.pic,
        'play_time': row.play_time,
        'duration': row.duration,
        'save_time': row.save_time,
    }


def _playlist(row):
    return {
        'id': row.id,
        'username': row.username,
        'name': row.name,
        'description': row.description,
        'cover': row.cover,
        'created_at': row.created_at,
        'updated_at': row.updated_at,
    }


def _playlist_song(row):
    return {
        'platform': row.platform,
        'id': row.song_id,
        'name': row.name,
        'artist': row.artist,
        'album': row.album,
        'pic': row.pic,
        'duration': row.duration,
        'added_at': row.added_at,
        'sort_order': row.sort_order,
    }


def _music_record_values(username, key, record):
    return {
        'username': username,
        'key': key,
        'platform': record['platform'],
        'song_id': str(record['id']),
        'name': record['name'],
        'artist': record['artist'],
        'album': record.get('album'),
        'pic': record.get('pic'),
        'play_time': record.get('play_time') or 0,
        'duration': record.get('duration') or 0,
        'save_time': record.get('save_time') or now_ms(),
    }


_MUSIC_RECORD_UPDATE = ['name', 'artist', 'album', 'pic', 'play_time', 'duration', 'save_time']


class SqlStorage(Storage):
    """Relational store for SQLite (file or D1 style) and Postgres.

    Every call runs inside the Flask application context that owns `db`.
    """

    def __init__(self, storage_type='sqlite'):
        super().__init__()
        self.storage_type = storage_type

    # User primitives

    def _get_user_row(self, username):
        user = db.session.get(Users, username)
        return _user_info(user) if user else None

    @_write
    def _insert_user_row(self, username, password_hash, role, created_at,
                         tags=None, oidc_sub=None, enabled_apis=None, banned=False):
        db.session.add(Users(
            username=username,
            password_hash=password_hash,
            role=role,
            banned=bool(banned),
            tags=tags,
            oidc_sub=oidc_sub or None,
            enabled_apis=enabled_apis,
            created_at=created_at,
            playrecord_migrated=True,
            favorite_migrated=True,
            skip_migrated=True,
        ))

    def _get_password_hash(self, username, active_only=True):
        query = db.session.query(Users.password_hash).filter(Users.username == username)
        if active_only:
            query = query.filter(Users.banned.is_(False))
        row = query.first()
        return row[0] if row else None

    def _count_users(self):
        return db.session.query(func.count(Users.username)).scalar() or 0

    def _list_user_rows(self, offset, limit):
        users = Users.query.order_by(Users.created_at.desc()).offset(offset).limit(limit).all()
        return [_user_info(user) for user in users]

    # Users

    @_write
    def delete_user(self, username):
        user = db.session.get(Users, username)
        if user is not None:
            db.session.delete(user)
        self._invalidate_user(username)

    @logged_read(default=list)
    def get_all_users(self):
        return [row[0] for row in db.session.query(Users.username).order_by(Users.created_at.desc()).all()]

    @_write
    def update_user_info(self, username, role=None, banned=None, tags=None, oidc_sub=None, enabled_apis=None):
        user = db.session.get(Users, username)
        if user is None:
            return
        if role is not None:
            user.role = role
        if banned is not None:
            user.banned = bool(banned)
        if tags is not None:
            user.tags = list(tags)
        if oidc_sub is not None:
            user.oidc_sub = oidc_sub or None
        if enabled_apis is not None:
            user.enabled_apis = list(enabled_apis)
        self._invalidate_user(username)

    @logged_read()
    def get_user_by_oidc_sub(self, oidc_sub):
        row = db.session.query(Users.username).filter(Users.oidc_sub == oidc_sub).first()
        return row[0] if row else None

    @logged_read(default=list)
    def get_users_by_tag(self, tag):
        users = Users.query.filter(Users.tags.isnot(None)).order_by(Users.created_at.desc()).all()
        return [user.username for user in users if tag in (user.tags or [])]

    @logged_read()
    def get_user_password_hash(self, username):
        return self._get_password_hash(username, active_only=False)

    @_write
    def set_user_password_hash(self, username, password_hash):
        Users.query.filter_by(username=username).update({'password_hash': password_hash})
        self._invalidate_user(username)

    @logged_read()
    def get_user_email(self, username):
        row = db.session.query(Users.email).filter(Users.username == username).first()
        return row[0] if row else None

    @_write
    def set_user_email(self, username, email):
        Users.query.filter_by(username=username).update({'email': email})
        self._invalidate_user(username)

    @logged_read(default=True)
    def get_email_notification_preference(self, username):
        row = db.session.query(Users.email_notifications).filter(Users.username == username).first()
        return bool(row[0]) if row else True

    @_write
    def set_email_notification_preference(self, username, enabled):
        Users.query.filter_by(username=username).update({'email_notifications': bool(enabled)})
        self._invalidate_user(username)

    @_write
    def update_last_movie_request_time(self, username, timestamp):
        Users.query.filter_by(username=username).update({'last_movie_request_time': int(timestamp)})
        self._invalidate_user(username)

    def _set_migrated_flag(self, username, column):
        try:
            Users.query.filter_by(username=username).update({column: True})
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f'Failed to set {column} for {username}: {e}')
        self._invalidate_user(username)

    def migrate_play_records(self, username):
        self._set_migrated_flag(username, 'playrecord_migrated')

    def migrate_favorites(self, username):
        self._set_migrated_flag(username, 'favorite_migrated')

    def migrate_skip_configs(self, username):
        self._set_migrated_flag(username, 'skip_migrated')

    # Play records

    def get_play_record(self, username, key):
        row = db.session.get(PlayRecords, (username, key))
        return _play_record(row) if row else None

    @_write
    def set_play_record(self, username, key, record):
        _upsert(
            PlayRecords,
            {
                'username': username,
                'key': key,
                'title': record['title'],
                'source_name': record['source_name'],
                'cover': record.get('cover') or '',
                'year': record.get('year') or '',
                'episode_index': int(record.get('index') or 0),
                'total_episodes': int(record.get('total_episodes') or 0),
                'play_time': int(record.get('play_time') or 0),
                'total_time': int(record.get('total_time') or 0),
                'save_time': int(record.get('save_time') or now_ms()),
                'search_title': record.get('search_title') or '',
            },
            ['username', 'key'],
            ['title', 'source_name', 'cover', 'year', 'episode_index', 'total_episodes',
             'play_time', 'total_time', 'save_time', 'search_title'],
        )

    def get_all_play_records(self, username):
        rows = PlayRecords.query.filter_by(username=username).order_by(PlayRecords.save_time.desc()).all()
        return {row.key: _play_record(row) for row in rows}

    @_write
    def delete_play_record(self, username, key):
        PlayRecords.query.filter_by(username=username, key=key).delete()

    @_write
    def clear_all_play_records(self, username):
        PlayRecords.query.filter_by(username=username).delete()

    def _count_play_records(self, username):
        return PlayRecords.query.filter_by(username=username).count()

    @_write
    def _prune_play_records(self, username, keep):
        keep_keys = db.session.query(PlayRecords.key).filter(
            PlayRecords.username == username
        ).order_by(PlayRecords.save_time.desc()).limit(keep).subquery()
        return PlayRecords.query.filter(
            PlayRecords.username == username,
            PlayRecords.key.notin_(db.session.query(keep_keys.c.key)),
        ).delete(synchronize_session=False)

    # Favorites

    def get_favorite(self, username, key):
        row = db.session.get(Favorites, (username, key))
        return _favorite(row) if row else None

    @_write
    def set_favorite(self, username, key, favorite):
        _upsert(
            Favorites,
            {
                'username': username,
                'key': key,
                'source_name': favorite['source_name'],
                'total_episodes': int(favorite.get('total_episodes') or 0),
                'title': favorite['title'],
                'year': favorite.get('year') or '',
                'cover': favorite.get('cover') or '',
                'save_time': int(favorite.get('save_time') or now_ms()),
                'search_title': favorite.get('search_title') or '',
                'origin': favorite.get('origin') or None,
                'is_completed': bool(favorite.get('is_completed')),
                'vod_remarks': favorite.get('vod_remarks') or None,
            },
            ['username', 'key'],
            ['source_name', 'total_episodes', 'title', 'year', 'cover', 'save_time',
             'search_title', 'origin', 'is_completed', 'vod_remarks'],
        )

    def get_all_favorites(self, username):
        rows = Favorites.query.filter_by(username=username).order_by(Favorites.save_time.desc()).all()
        return {row.key: _favorite(row) for row in rows}

    @_write
    def delete_favorite(self, username, key):
        Favorites.query.filter_by(username=username, key=key).delete()

    @_write
    def clear_all_favorites(self, username):
        Favorites.query.filter_by(username=username).delete()

    # Skip configs

    @logged_read()
    def get_skip_config(self, username, source, video_id):
        row = db.session.get(SkipConfigs, (username, skip_config_key(source, video_id)))
        return _skip_config(row) if row else None

    @_write
    def set_skip_config(self, username, source, video_id, config):
        _upsert(
            SkipConfigs,
            {
                'username': username,
                'key': skip_config_key(source, video_id),
                'enable': bool(config.get('enable')),
                'intro_time': int(config.get('intro_time') or 0),
                'outro_time': int(config.get('outro_time') or 0),
            },
            ['username', 'key'],
            ['enable', 'intro_time', 'outro_time'],
        )

    @_write
    def delete_skip_config(self, username, source, video_id):
        SkipConfigs.query.filter_by(username=username, key=skip_config_key(source, video_id)).delete()

    @logged_read(default=dict)
    def get_all_skip_configs(self, username):
        return {row.key: _skip_config(row) for row in SkipConfigs.query.filter_by(username=username).all()}

    # Danmaku filter

    @logged_read()
    def get_danmaku_filter_config(self, username):
        row = db.session.get(DanmakuFilterConfigs, username)
        return row.rules if row else None

    @_write
    def set_danmaku_filter_config(self, username, config):
        _upsert(DanmakuFilterConfigs, {'username': username, 'rules': config}, ['username'], ['rules'])

    @_write
    def delete_danmaku_filter_config(self, username):
        DanmakuFilterConfigs.query.filter_by(username=username).delete()

    # Search history

    @logged_read(default=list)
    def get_search_history(self, username):
        rows = db.session.query(SearchHistory.keyword).filter(
            SearchHistory.username == username
        ).order_by(SearchHistory.timestamp.desc()).limit(SEARCH_HISTORY_LIMIT).all()
        return [row[0] for row in rows]

    @_write
    def add_search_history(self, username, keyword):
        _upsert(
            SearchHistory,
            {'username': username, 'keyword': keyword, 'timestamp': now_ms()},
            ['username', 'keyword'],
            ['timestamp'],
        )
        count = SearchHistory.query.filter_by(username=username).count()
        if count > SEARCH_HISTORY_LIMIT:
            keep_ids = db.session.query(SearchHistory.id).filter(
                SearchHistory.username == username
            ).order_by(SearchHistory.timestamp.desc()).limit(SEARCH_HISTORY_LIMIT).subquery()
            SearchHistory.query.filter(
                SearchHistory.username == username,
                SearchHistory.id.notin_(db.session.query(keep_ids.c.id)),
            ).delete(synchronize_session=False)

    @_write
    def delete_search_history(self, username, keyword=None):
        query = SearchHistory.query.filter_by(username=username)
        if keyword:
            query = query.filter_by(keyword=keyword)
        query.delete()

    # Notifications

    @logged_read(default=list)
    def get_notifications(self, username):
        rows = Notifications.query.filter_by(username=username).order_by(Notifications.timestamp.desc()).all()
        return [_notification(row) for row in rows]

    @_write
    def add_notification(self, username, notification):
        db.session.add(Notifications(
            id=notification['id'],
            username=username,
            type=notification['type'],
            title=notification['title'],
            message=notification['message'],
            timestamp=int(notification.get('timestamp') or now_ms()),
            read=bool(notification.get('read')),
            meta=notification.get('metadata'),
        ))

    @_write
    def mark_notification_as_read(self, username, notification_id):
        Notifications.query.filter_by(username=username, id=notification_id).update({'read': True})

    @_write
    def delete_notification(self, username, notification_id):
        Notifications.query.filter_by(username=username, id=notification_id).delete()

    @_write
    def clear_all_notifications(self, username):
        Notifications.query.filter_by(username=username).delete()

    @logged_read(default=0)
    def get_unread_notification_count(self, username):
        return Notifications.query.filter_by(username=username, read=False).count()

    # Movie requests

    @logged_read(default=list)
    def get_all_movie_requests(self):
        return [_movie_request(row) for row in MovieRequests.query.order_by(MovieRequests.created_at.desc()).all()]

    @logged_read()
    def get_movie_request(self, request_id):
        row = db.session.get(MovieRequests, request_id)
        return _movie_request(row) if row else None

    @_write
    def create_movie_request(self, request):
        created_at = int(request.get('createdAt') or now_ms())
        db.session.add(MovieRequests(
            id=request['id'],
            tmdb_id=request.get('tmdbId'),
            title=request['title'],
            year=request.get('year'),
            media_type=request['mediaType'],
            season=request.get('season'),
            poster=request.get('poster'),
            overview=request.get('overview'),
            requested_by=list(request.get('requestedBy') or []),
            request_count=int(request.get('requestCount') or 0),
            status=request.get('status') or 'pending',
            created_at=created_at,
            updated_at=int(request.get('updatedAt') or created_at),
            fulfilled_at=request.get('fulfilledAt'),
            fulfilled_source=request.get('fulfilledSource'),
            fulfilled_id=request.get('fulfilledId'),
        ))

    @_write
    def update_movie_request(self, request_id, updates):
        row = db.session.get(MovieRequests, request_id)
        if row is None:
            return
        columns = {
            'requestedBy': 'requested_by',
            'requestCount': 'request_count',
            'status': 'status',
            'fulfilledAt': 'fulfilled_at',
            'fulfilledSource': 'fulfilled_source',
            'fulfilledId': 'fulfilled_id',
        }
        for field, column in columns.items():
            if field in updates:
                value = updates[field]
                if field == 'requestedBy':
                    value = list(value or [])
                setattr(row, column, value)
        row.updated_at = now_ms()

    @_write
    def delete_movie_request(self, request_id):
        row = db.session.get(MovieRequests, request_id)
        if row is not None:
            db.session.delete(row)

    @logged_read(default=list)
    def get_user_movie_requests(self, username):
        rows = db.session.query(UserMovieRequests.request_id).filter(UserMovieRequests.username == username).all()
        return [row[0] for row in rows]

    @_write
    def add_user_movie_request(self, username, request_id):
        _upsert(UserMovieRequests, {'username': username, 'request_id': request_id}, ['username', 'request_id'], None)

    @_write
    def remove_user_movie_request(self, username, request_id):
        UserMovieRequests.query.filter_by(username=username, request_id=request_id).delete()

    # Music play records

    @logged_read()
    def get_music_play_record(self, username, key):
        row = db.session.get(MusicPlayRecords, (username, key))
        return _music_record(row) if row else None

    @_write
    def set_music_play_record(self, username, key, record):
        _upsert(
            MusicPlayRecords,
            _music_record_values(username, key, record),
            ['username', 'key'],
            _MUSIC_RECORD_UPDATE,
        )

    @_write
    def batch_set_music_play_records(self, username, records):
        for item in records or []:
            _upsert(
                MusicPlayRecords,
                _music_record_values(username, item['key'], item['record']),
                ['username', 'key'],
                ['platform', 'song_id'] + _MUSIC_RECORD_UPDATE,
            )

    def get_all_music_play_records(self, username):
        rows = MusicPlayRecords.query.filter_by(username=username).order_by(MusicPlayRecords.save_time.desc()).all()
        return {row.key: _music_record(row) for row in rows}

    @_write
    def delete_music_play_record(self, username, key):
        MusicPlayRecords.query.filter_by(username=username, key=key).delete()

    @_write
    def clear_all_music_play_records(self, username):
        MusicPlayRecords.query.filter_by(username=username).delete()

    # Music playlists

    @_write
    def create_music_playlist(self, username, playlist):
        now = now_ms()
        db.session.add(MusicPlaylists(
            id=playlist['id'],
            username=username,
            name=playlist['name'],
            description=playlist.get('description'),
            cover=playlist.get('cover'),
            created_at=now,
            updated_at=now,
        ))

    @logged_read()
    def get_music_playlist(self, playlist_id):
        row = db.session.get(MusicPlaylists, playlist_id)
        return _playlist(row) if row else None

    @logged_read(default=list)
    def get_user_music_playlists(self, username):
        rows = MusicPlaylists.query.filter_by(username=username).order_by(MusicPlaylists.created_at.desc()).all()
        return [_playlist(row) for row in rows]

    @_write
    def update_music_playlist(self, playlist_id, name=None, description=None, cover=None):
        row = db.session.get(MusicPlaylists, playlist_id)
        if row is None or (name is None and description is None and cover is None):
            return
        if name is not None:
            row.name = name
        if description is not None:
            row.description = description
        if cover is not None:
            row.cover = cover
        row.updated_at = now_ms()

    @_write
    def delete_music_playlist(self, playlist_id):
        row = db.session.get(MusicPlaylists, playlist_id)
        if row is not None:
            db.session.delete(row)

    def _touch_playlist(self, playlist_id, now=None):
        MusicPlaylists.query.filter_by(id=playlist_id).update({'updated_at': now or now_ms()})

    @_write
    def add_song_to_playlist(self, playlist_id, song):
        now = now_ms()
        max_sort = db.session.query(func.max(MusicPlaylistSongs.sort_order)).filter(
            MusicPlaylistSongs.playlist_id == playlist_id
        ).scalar()
        _upsert(
            MusicPlaylistSongs,
            {
                'playlist_id': playlist_id,
                'platform': song['platform'],
                'song_id': str(song['id']),
                'name': song['name'],
                'artist': song['artist'],
                'album': song.get('album'),
                'pic': song.get('pic'),
                'duration': song.get('duration') or 0,
                'added_at': now,
                'sort_order': (max_sort or 0) + 1,
            },
            ['playlist_id', 'platform', 'song_id'],
            ['name', 'artist', 'album', 'pic', 'duration'],
        )
        self._touch_playlist(playlist_id, now)

    @_write
    def remove_song_from_playlist(self, playlist_id, platform, song_id):
        MusicPlaylistSongs.query.filter_by(playlist_id=playlist_id, platform=platform, song_id=str(song_id)).delete()
        self._touch_playlist(playlist_id)

    @logged_read(default=list)
    def get_playlist_songs(self, playlist_id):
        rows = MusicPlaylistSongs.query.filter_by(playlist_id=playlist_id).order_by(MusicPlaylistSongs.sort_order.asc()).all()
        return [_playlist_song(row) for row in rows]

    @_write
    def update_playlist_song_order(self, playlist_id, song_orders):
        for order in song_orders or []:
            MusicPlaylistSongs.query.filter_by(
                playlist_id=playlist_id,
                platform=order['platform'],
                song_id=str(order['songId']),
            ).update({'sort_order': int(order['sortOrder'])})
        self._touch_playlist(playlist_id)

    # Admin config and global values

    @logged_read()
    def get_admin_config(self):
        row = db.session.get(AdminConfig, 1)
        return row.config if row else None

    @_write
    def set_admin_config(self, config):
        _upsert(AdminConfig, {'id': 1, 'config': config, 'updated_at': now_ms()}, ['id'], ['config', 'updated_at'])

    @logged_read()
    def get_global_value(self, key):
        row = db.session.get(GlobalConfig, key)
        return row.value if row else None

    @_write
    def set_global_value(self, key, value):
        _upsert(GlobalConfig, {'key': key, 'value': value, 'updated_at': now_ms()}, ['key'], ['value', 'updated_at'])

    @_write
    def delete_global_value(self, key):
        GlobalConfig.query.filter_by(key=key).delete()

    @logged_read(default=0)
    def get_last_favorite_check_time(self, username):
        row = db.session.get(FavoriteCheckTimes, username)
        return row.last_check_time if row else 0

    @_write
    def set_last_favorite_check_time(self, username, timestamp):
        _upsert(
            FavoriteCheckTimes,
            {'username': username, 'last_check_time': int(timestamp)},
            ['username'],
            ['last_check_time'],
        )

    @_write
    def clear_all_data(self):
        # Users and the admin config survive; everything they own goes.
        for model in (
            PlayRecords,
            Favorites,
            SearchHistory,
            SkipConfigs,
            DanmakuFilterConfigs,
            Notifications,
            UserMovieRequests,
            MovieRequests,
            FavoriteCheckTimes,
            GlobalConfig,
            MusicPlayRecords,
            MusicPlaylistSongs,
            MusicPlaylists,
        ):
            model.query.delete()
