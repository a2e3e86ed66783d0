from flask import Blueprint, request
from flask_login import current_user
from moontv.auth import access_required, storage_required
from moontv.constants import *
from moontv.settings import load_settings, get_owner_credentials
from moontv.storage import get_storage, new_notification
from moontv.utils import api_error, api_success, now_ms
import math
import uuid

import logging

# Retrieve main logger
logger = logging.getLogger('main')

api_blueprint = Blueprint('api', __name__)

MAX_KEYWORD_LENGTH = 200

PLAY_RECORD_NUMBERS = ('index', 'total_episodes', 'play_time', 'total_time', 'save_time')
FAVORITE_NUMBERS = ('total_episodes', 'save_time')
SKIP_CONFIG_NUMBERS = ('intro_time', 'outro_time')
MUSIC_RECORD_FLOATS = ('play_time', 'duration')


def _json_body():
    return request.get_json(silent=True) or {}


def _valid_record_key(key):
    # Records are keyed "source+id".
    if not isinstance(key, str) or '+' not in key:
        return False
    source, _, video_id = key.partition('+')
    return bool(source) and bool(video_id)


def _as_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _number(value, integer=True):
    if isinstance(value, bool):
        raise ValueError(f'{value!r} is not a number')
    if integer and isinstance(value, int):
        return value
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f'{value!r} is not a finite number')
    return int(number) if integer else number


def _with_numbers(data, int_fields=(), float_fields=()):
    """Return a copy of data with the listed fields parsed as numbers.

    Absent or empty fields are skipped. Raises ValueError naming the first
    field that does not hold a number.
    """
    data = dict(data)
    fields = [(name, True) for name in int_fields] + [(name, False) for name in float_fields]
    for name, integer in fields:
        if data.get(name) in (None, ''):
            continue
        try:
            data[name] = _number(data[name], integer)
        except (TypeError, ValueError):
            raise ValueError(f'{name} must be a number.')
    return data


# Play records

@api_blueprint.route('/api/playrecords', methods=['GET'])
@access_required('user')
@storage_required
def get_play_records():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        return api_success({'record': storage.get_play_record(current_user.username, key)})
    return api_success({'records': storage.get_all_play_records(current_user.username)})


@api_blueprint.route('/api/playrecords', methods=['POST'])
@access_required('user')
@storage_required
def save_play_record():
    data = _json_body()
    key = data.get('key')
    record = data.get('record')
    if not _valid_record_key(key):
        return api_error('Invalid key, expected source+id.', 400)
    if not isinstance(record, dict) or not record.get('title') or not record.get('source_name'):
        return api_error('Record needs title and source_name.', 400)

    try:
        record = _with_numbers(record, PLAY_RECORD_NUMBERS)
    except ValueError as e:
        return api_error(str(e), 400)
    record['save_time'] = record.get('save_time') or now_ms()
    storage = get_storage()
    storage.set_play_record(current_user.username, key, record)
    storage.cleanup_old_play_records(current_user.username)
    return api_success()


@api_blueprint.route('/api/playrecords', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_play_records():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        storage.delete_play_record(current_user.username, key)
    else:
        storage.clear_all_play_records(current_user.username)
    return api_success()


# Favorites

@api_blueprint.route('/api/favorites', methods=['GET'])
@access_required('user')
@storage_required
def get_favorites():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        return api_success({'favorite': storage.get_favorite(current_user.username, key)})
    return api_success({'favorites': storage.get_all_favorites(current_user.username)})


@api_blueprint.route('/api/favorites', methods=['POST'])
@access_required('user')
@storage_required
def save_favorite():
    data = _json_body()
    key = data.get('key')
    favorite = data.get('favorite')
    if not _valid_record_key(key):
        return api_error('Invalid key, expected source+id.', 400)
    if not isinstance(favorite, dict) or not favorite.get('title') or not favorite.get('source_name'):
        return api_error('Favorite needs title and source_name.', 400)
    origin = favorite.get('origin')
    if origin is not None and origin not in FAVORITE_ORIGINS:
        return api_error(f'origin must be one of {", ".join(FAVORITE_ORIGINS)}.', 400)

    try:
        favorite = _with_numbers(favorite, FAVORITE_NUMBERS)
    except ValueError as e:
        return api_error(str(e), 400)
    favorite['save_time'] = favorite.get('save_time') or now_ms()
    get_storage().set_favorite(current_user.username, key, favorite)
    return api_success()


@api_blueprint.route('/api/favorites', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_favorites():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        storage.delete_favorite(current_user.username, key)
    else:
        storage.clear_all_favorites(current_user.username)
    return api_success()


# Skip configs

@api_blueprint.route('/api/skipconfigs', methods=['GET'])
@access_required('user')
@storage_required
def get_skip_configs():
    source = request.args.get('source')
    video_id = request.args.get('id')
    storage = get_storage()
    if source and video_id:
        return api_success({'config': storage.get_skip_config(current_user.username, source, video_id)})
    return api_success({'configs': storage.get_all_skip_configs(current_user.username)})


@api_blueprint.route('/api/skipconfigs', methods=['POST'])
@access_required('user')
@storage_required
def save_skip_config():
    data = _json_body()
    source = data.get('source')
    video_id = data.get('id')
    config = data.get('config')
    if not source or not video_id:
        return api_error('source and id are required.', 400)
    if not isinstance(config, dict):
        return api_error('config is required.', 400)
    try:
        config = _with_numbers(config, SKIP_CONFIG_NUMBERS)
    except ValueError as e:
        return api_error(str(e), 400)
    get_storage().set_skip_config(current_user.username, source, str(video_id), config)
    return api_success()


@api_blueprint.route('/api/skipconfigs', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_skip_config():
    source = request.args.get('source')
    video_id = request.args.get('id')
    if not source or not video_id:
        return api_error('source and id are required.', 400)
    get_storage().delete_skip_config(current_user.username, source, video_id)
    return api_success()


# Search history

@api_blueprint.route('/api/searchhistory', methods=['GET'])
@access_required('user')
@storage_required
def get_search_history():
    return api_success({'history': get_storage().get_search_history(current_user.username)})


@api_blueprint.route('/api/searchhistory', methods=['POST'])
@access_required('user')
@storage_required
def add_search_history():
    keyword = str(_json_body().get('keyword') or '').strip()
    if not keyword:
        return api_error('keyword is required.', 400)
    if len(keyword) > MAX_KEYWORD_LENGTH:
        return api_error(f'keyword must be at most {MAX_KEYWORD_LENGTH} characters.', 400)
    storage = get_storage()
    storage.add_search_history(current_user.username, keyword)
    return api_success({'history': storage.get_search_history(current_user.username)})


@api_blueprint.route('/api/searchhistory', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_search_history():
    keyword = (request.args.get('keyword') or '').strip()
    get_storage().delete_search_history(current_user.username, keyword or None)
    return api_success()


# Danmaku filter

@api_blueprint.route('/api/danmaku-filter', methods=['GET'])
@access_required('user')
@storage_required
def get_danmaku_filter():
    return api_success({'config': get_storage().get_danmaku_filter_config(current_user.username)})


@api_blueprint.route('/api/danmaku-filter', methods=['POST'])
@access_required('user')
@storage_required
def save_danmaku_filter():
    config = _json_body().get('config')
    if not isinstance(config, dict):
        return api_error('config is required.', 400)
    get_storage().set_danmaku_filter_config(current_user.username, config)
    return api_success()


@api_blueprint.route('/api/danmaku-filter', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_danmaku_filter():
    get_storage().delete_danmaku_filter_config(current_user.username)
    return api_success()


# Notifications

@api_blueprint.route('/api/notifications', methods=['GET'])
@access_required('user')
@storage_required
def get_notifications():
    storage = get_storage()
    return api_success({
        'notifications': storage.get_notifications(current_user.username),
        'unreadCount': storage.get_unread_notification_count(current_user.username),
    })


@api_blueprint.route('/api/notifications/<notification_id>/read', methods=['POST'])
@access_required('user')
@storage_required
def mark_notification_read(notification_id):
    get_storage().mark_notification_as_read(current_user.username, notification_id)
    return api_success()


@api_blueprint.route('/api/notifications/<notification_id>', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_notification(notification_id):
    get_storage().delete_notification(current_user.username, notification_id)
    return api_success()


@api_blueprint.route('/api/notifications', methods=['DELETE'])
@access_required('user')
@storage_required
def clear_notifications():
    get_storage().clear_all_notifications(current_user.username)
    return api_success()


# Movie requests

def _find_matching_request(storage, tmdb_id, media_type, season):
    for existing in storage.get_all_movie_requests():
        if existing.get('tmdbId') != tmdb_id or existing.get('mediaType') != media_type:
            continue
        if media_type == 'tv' and existing.get('season') != season:
            continue
        return existing
    return None


def _admin_usernames(storage):
    names = []
    owner_name, _ = get_owner_credentials()
    if owner_name and storage.get_user_info(owner_name):
        names.append(owner_name)
    for name in storage.get_all_users():
        if name in names:
            continue
        info = storage.get_user_info(name) or {}
        if info.get('role') in ('admin', 'owner'):
            names.append(name)
    return names


def _notify(storage, usernames, notification_type, title, message, metadata=None):
    for name in usernames:
        try:
            storage.add_notification(name, new_notification(notification_type, title, message, metadata))
        except Exception as e:
            logger.warning(f'Could not notify {name}: {e}')


@api_blueprint.route('/api/movie-requests', methods=['GET'])
@access_required('user')
@storage_required
def list_movie_requests():
    storage = get_storage()
    status = request.args.get('status')
    requests_ = storage.get_all_movie_requests()
    if status:
        requests_ = [r for r in requests_ if r.get('status') == status]
    return api_success({
        'requests': requests_,
        'myRequests': storage.get_user_movie_requests(current_user.username),
    })


@api_blueprint.route('/api/movie-requests', methods=['POST'])
@access_required('user')
@storage_required
def create_movie_request():
    data = _json_body()
    title = str(data.get('title') or '').strip()
    media_type = data.get('mediaType')
    tmdb_id = data.get('tmdbId')
    season = data.get('season')
    if not title:
        return api_error('title is required.', 400)
    if media_type not in MOVIE_REQUEST_MEDIA_TYPES:
        return api_error('mediaType must be movie or tv.', 400)
    if tmdb_id is not None:
        tmdb_id = _as_int(tmdb_id, None)
        if tmdb_id is None:
            return api_error('tmdbId must be an integer.', 400)
    season = _as_int(season, None) if media_type == 'tv' and season is not None else None

    storage = get_storage()
    username = current_user.username
    cooldown_ms = load_settings()['site']['movie_request_cooldown_seconds'] * 1000
    info = storage.get_user_info(username) or {}
    elapsed = now_ms() - int(info.get('last_movie_request_time') or 0)
    if cooldown_ms and elapsed < cooldown_ms:
        remaining_s = int((cooldown_ms - elapsed + 999) // 1000)
        return api_error(f'Please wait {remaining_s}s before requesting again.', 429)

    existing = _find_matching_request(storage, tmdb_id, media_type, season) if tmdb_id is not None else None
    if existing:
        if existing.get('status') == 'fulfilled':
            return api_error('This title is already available.', 409)
        requested_by = list(existing.get('requestedBy') or [])
        if username in requested_by:
            return api_error('You have already requested this title.', 409)
        requested_by.append(username)
        storage.update_movie_request(existing['id'], {
            'requestedBy': requested_by,
            'requestCount': len(requested_by),
        })
        request_id = existing['id']
    else:
        request_id = uuid.uuid4().hex
        storage.create_movie_request({
            'id': request_id,
            'tmdbId': tmdb_id,
            'title': title,
            'year': data.get('year'),
            'mediaType': media_type,
            'season': season,
            'poster': data.get('poster'),
            'overview': data.get('overview'),
            'requestedBy': [username],
            'requestCount': 1,
            'status': 'pending',
        })
        _notify(
            storage,
            [name for name in _admin_usernames(storage) if name != username],
            'movie_request',
            'New movie request',
            f'{username} requested {title}',
            {'requestId': request_id},
        )

    storage.add_user_movie_request(username, request_id)
    storage.update_last_movie_request_time(username, now_ms())
    logger.info(f'User {username} requested {media_type} {title}')
    return api_success({'request': storage.get_movie_request(request_id)})


@api_blueprint.route('/api/movie-requests/<request_id>', methods=['DELETE'])
@access_required('user')
@storage_required
def withdraw_movie_request(request_id):
    storage = get_storage()
    existing = storage.get_movie_request(request_id)
    if existing is None:
        return api_error('Request not found.', 404)

    username = current_user.username
    if current_user.has_role('admin'):
        storage.delete_movie_request(request_id)
        logger.info(f'Admin {username} deleted movie request {request_id}')
        return api_success()

    requested_by = [name for name in existing.get('requestedBy') or [] if name != username]
    if len(requested_by) == len(existing.get('requestedBy') or []):
        return api_error('You have not requested this title.', 403)
    storage.remove_user_movie_request(username, request_id)
    if requested_by:
        storage.update_movie_request(request_id, {'requestedBy': requested_by, 'requestCount': len(requested_by)})
    else:
        storage.delete_movie_request(request_id)
    return api_success()


@api_blueprint.route('/api/movie-requests/<request_id>/fulfill', methods=['POST'])
@access_required('admin')
@storage_required
def fulfill_movie_request(request_id):
    storage = get_storage()
    existing = storage.get_movie_request(request_id)
    if existing is None:
        return api_error('Request not found.', 404)
    if existing.get('status') == 'fulfilled':
        return api_error('Request already fulfilled.', 409)

    data = _json_body()
    storage.update_movie_request(request_id, {
        'status': 'fulfilled',
        'fulfilledAt': now_ms(),
        'fulfilledSource': data.get('source'),
        'fulfilledId': data.get('id'),
    })
    _notify(
        storage,
        existing.get('requestedBy') or [],
        'request_fulfilled',
        'Request fulfilled',
        f'{existing.get("title")} is now available',
        {
            'requestId': request_id,
            'source': data.get('source'),
            'id': data.get('id'),
        },
    )
    logger.info(f'Admin {current_user.username} fulfilled movie request {request_id}')
    return api_success({'request': storage.get_movie_request(request_id)})


# Music play records

def _valid_music_record(record):
    return (
        isinstance(record, dict)
        and record.get('platform') in MUSIC_PLATFORMS
        and record.get('id') not in (None, '')
        and bool(record.get('name'))
        and record.get('artist') is not None
    )


@api_blueprint.route('/api/music/playrecords', methods=['GET'])
@access_required('user')
@storage_required
def get_music_play_records():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        return api_success({'record': storage.get_music_play_record(current_user.username, key)})
    return api_success({'records': storage.get_all_music_play_records(current_user.username)})


@api_blueprint.route('/api/music/playrecords', methods=['POST'])
@access_required('user')
@storage_required
def save_music_play_records():
    data = _json_body()
    storage = get_storage()
    if 'records' in data:
        items = data.get('records')
        if not isinstance(items, list):
            return api_error('records must be a list.', 400)
        for item in items:
            if not isinstance(item, dict) or not item.get('key') or not _valid_music_record(item.get('record')):
                return api_error('Each entry needs key and a valid record.', 400)
        try:
            items = [
                {'key': item['key'], 'record': _with_numbers(item['record'], ('save_time',), MUSIC_RECORD_FLOATS)}
                for item in items
            ]
        except ValueError as e:
            return api_error(str(e), 400)
        storage.batch_set_music_play_records(current_user.username, items)
        return api_success({'count': len(items)})

    key = data.get('key')
    record = data.get('record')
    if not key or not _valid_music_record(record):
        return api_error('key and a valid record are required.', 400)
    try:
        record = _with_numbers(record, ('save_time',), MUSIC_RECORD_FLOATS)
    except ValueError as e:
        return api_error(str(e), 400)
    storage.set_music_play_record(current_user.username, key, record)
    return api_success()


@api_blueprint.route('/api/music/playrecords', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_music_play_records():
    key = request.args.get('key')
    storage = get_storage()
    if key:
        storage.delete_music_play_record(current_user.username, key)
    else:
        storage.clear_all_music_play_records(current_user.username)
    return api_success()


# Music playlists

def _own_playlist(playlist_id):
    playlist = get_storage().get_music_playlist(playlist_id)
    if playlist is None or playlist.get('username') != current_user.username:
        return None
    return playlist


@api_blueprint.route('/api/music/playlists', methods=['GET'])
@access_required('user')
@storage_required
def list_music_playlists():
    return api_success({'playlists': get_storage().get_user_music_playlists(current_user.username)})


@api_blueprint.route('/api/music/playlists', methods=['POST'])
@access_required('user')
@storage_required
def create_music_playlist():
    data = _json_body()
    name = str(data.get('name') or '').strip()
    if not name:
        return api_error('name is required.', 400)
    playlist_id = uuid.uuid4().hex
    storage = get_storage()
    storage.create_music_playlist(current_user.username, {
        'id': playlist_id,
        'name': name,
        'description': data.get('description'),
        'cover': data.get('cover'),
    })
    return api_success({'playlist': storage.get_music_playlist(playlist_id)})


@api_blueprint.route('/api/music/playlists/<playlist_id>', methods=['GET'])
@access_required('user')
@storage_required
def get_music_playlist(playlist_id):
    playlist = _own_playlist(playlist_id)
    if playlist is None:
        return api_error('Playlist not found.', 404)
    return api_success({'playlist': playlist, 'songs': get_storage().get_playlist_songs(playlist_id)})


@api_blueprint.route('/api/music/playlists/<playlist_id>', methods=['PATCH'])
@access_required('user')
@storage_required
def update_music_playlist(playlist_id):
    if _own_playlist(playlist_id) is None:
        return api_error('Playlist not found.', 404)
    data = _json_body()
    name = data.get('name')
    if name is not None and not str(name).strip():
        return api_error('name must not be empty.', 400)
    storage = get_storage()
    storage.update_music_playlist(
        playlist_id,
        name=str(name).strip() if name is not None else None,
        description=data.get('description'),
        cover=data.get('cover'),
    )
    return api_success({'playlist': storage.get_music_playlist(playlist_id)})


@api_blueprint.route('/api/music/playlists/<playlist_id>', methods=['DELETE'])
@access_required('user')
@storage_required
def delete_music_playlist(playlist_id):
    if _own_playlist(playlist_id) is None:
        return api_error('Playlist not found.', 404)
    get_storage().delete_music_playlist(playlist_id)
    return api_success()


@api_blueprint.route('/api/music/playlists/<playlist_id>/songs', methods=['POST'])
@access_required('user')
@storage_required
def add_playlist_song(playlist_id):
    if _own_playlist(playlist_id) is None:
        return api_error('Playlist not found.', 404)
    song = _json_body().get('song')
    if not _valid_music_record(song):
        return api_error('A song with platform, id, name and artist is required.', 400)
    try:
        song = _with_numbers(song, float_fields=('duration',))
    except ValueError as e:
        return api_error(str(e), 400)
    storage = get_storage()
    storage.add_song_to_playlist(playlist_id, song)
    return api_success({'songs': storage.get_playlist_songs(playlist_id)})


@api_blueprint.route('/api/music/playlists/<playlist_id>/songs', methods=['DELETE'])
@access_required('user')
@storage_required
def remove_playlist_song(playlist_id):
    if _own_playlist(playlist_id) is None:
        return api_error('Playlist not found.', 404)
    platform = request.args.get('platform')
    song_id = request.args.get('id')
    if not platform or not song_id:
        return api_error('platform and id are required.', 400)
    get_storage().remove_song_from_playlist(playlist_id, platform, song_id)
    return api_success()


@api_blueprint.route('/api/music/playlists/<playlist_id>/songs/order', methods=['PUT'])
@access_required('user')
@storage_required
def reorder_playlist_songs(playlist_id):
    if _own_playlist(playlist_id) is None:
        return api_error('Playlist not found.', 404)
    orders = _json_body().get('songOrders')
    if not isinstance(orders, list):
        return api_error('songOrders must be a list.', 400)
    for order in orders:
        if not isinstance(order, dict) or not order.get('platform') or order.get('songId') in (None, '') \
                or _as_int(order.get('sortOrder'), None) is None:
            return api_error('Each order needs platform, songId and sortOrder.', 400)
    storage = get_storage()
    storage.update_playlist_song_order(playlist_id, orders)
    return api_success({'songs': storage.get_playlist_songs(playlist_id)})
