from flask import Blueprint, jsonify, request
from moontv.auth import access_required
from moontv.constants import *
from moontv.settings import load_settings
from moontv.storage import load_admin_config
from moontv.utils import ExpiringCache
import requests

import logging

# Retrieve main logger
logger = logging.getLogger('main')

tmdb_blueprint = Blueprint('tmdb', __name__)

_trending_cache = ExpiringCache(TMDB_TRENDING_CACHE_TTL_S, max_entries=4)

TMDB_LANGUAGE = 'zh-CN'


class TmdbClient:
    def __init__(self, api_key, proxy='', reverse_proxy='', timeout=15):
        self.api_key = api_key
        self.base_url = (reverse_proxy or TMDB_API_BASE_URL).rstrip('/')
        self.proxies = {'http': proxy, 'https': proxy} if proxy else None
        self.timeout = timeout

    def get(self, path, **params):
        params = dict(params, api_key=self.api_key)
        resp = requests.get(
            f'{self.base_url}{path}',
            params=params,
            proxies=self.proxies,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def trending(self):
        data = self.get('/trending/all/week', language=TMDB_LANGUAGE)
        return [item for item in data.get('results') or [] if item.get('media_type') in ('movie', 'tv')]

    def video_key(self, media_type, item_id):
        """First YouTube trailer or teaser, or None."""
        try:
            data = self.get(f'/{media_type}/{item_id}/videos')
        except (requests.RequestException, ValueError) as e:
            logger.debug(f'No videos for {media_type}/{item_id}: {e}')
            return None
        for video in data.get('results') or []:
            if video.get('site') == 'YouTube' and video.get('type') in ('Trailer', 'Teaser'):
                return video.get('key')
        return None

    def credits(self, media_type, item_id):
        return self.get(f'/{media_type}/{item_id}/credits', language=TMDB_LANGUAGE)


def get_tmdb_client():
    site_config = load_admin_config()['SiteConfig']
    api_key = site_config.get('TMDBApiKey')
    if not api_key:
        return None
    return TmdbClient(
        api_key,
        proxy=site_config.get('TMDBProxy') or '',
        reverse_proxy=site_config.get('TMDBReverseProxy') or '',
        timeout=load_settings()['proxy']['request_timeout_seconds'],
    )


@tmdb_blueprint.route('/api/tmdb/trending', methods=['GET'])
def tmdb_trending():
    cached = _trending_cache.get('trending')
    if cached is not None:
        return jsonify(cached)

    client = get_tmdb_client()
    if client is None:
        return jsonify({'code': 400, 'message': 'TMDB API key is not configured'}), 400
    try:
        items = client.trending()
        for item in items:
            item['video_key'] = client.video_key(item['media_type'], item['id'])
    except Exception as e:
        logger.error(f'Failed to fetch TMDB trending: {e}')
        return jsonify({'code': 500, 'message': 'Failed to fetch trending content'}), 500

    result = {'code': 200, 'list': items, 'source': 'TMDB'}
    _trending_cache.set('trending', result)
    return jsonify(result)


@tmdb_blueprint.route('/api/tmdb/credits', methods=['GET'])
@access_required()
def tmdb_credits():
    item_id = request.args.get('id')
    media_type = request.args.get('type') or 'movie'
    if not item_id:
        return jsonify({'error': 'Missing id parameter'}), 400
    if media_type not in ('movie', 'tv'):
        return jsonify({'error': 'type must be movie or tv'}), 400
    try:
        item_id = int(item_id)
    except ValueError:
        return jsonify({'error': 'id must be an integer'}), 400

    client = get_tmdb_client()
    if client is None:
        return jsonify({'error': 'TMDB API key is not configured'}), 400
    try:
        return jsonify(client.credits(media_type, item_id))
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else 502
        logger.warning(f'TMDB credits for {media_type}/{item_id} failed: {e}')
        return jsonify({'error': 'Failed to fetch TMDB credits', 'code': status}), status
    except Exception as e:
        logger.error(f'TMDB credits for {media_type}/{item_id} failed: {e}')
        return jsonify({'error': 'Failed to fetch credits', 'details': str(e)}), 500
