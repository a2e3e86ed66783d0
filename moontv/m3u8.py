from flask import Blueprint, Response, jsonify, request
from moontv.constants import *
from moontv.settings import load_settings, get_site_base, get_proxy_m3u8_token
from moontv.storage import load_admin_config
from moontv.utils import encode_uri_component
from urllib.parse import urljoin, urlsplit
import requests
import re

import logging

# Retrieve main logger
logger = logging.getLogger('main')

m3u8_blueprint = Blueprint('m3u8', __name__)

_KEY_URI_RE = re.compile(r'URI="([^"]+)"')


def _is_absolute(url):
    return url.startswith('http://') or url.startswith('https://')


def _origin_of(url):
    parts = urlsplit(url)
    return f'{parts.scheme}://{parts.netloc}'


def _absolute(uri, base_url):
    if _is_absolute(uri):
        return uri
    if uri.startswith('/'):
        return _origin_of(base_url) + uri
    return urljoin(base_url, uri)


def filter_ads(content, keywords=None):
    """Drop discontinuity markers and segments whose URI looks like an ad."""
    if not content:
        return ''
    keywords = [str(k).lower() for k in (keywords or M3U8_AD_KEYWORDS) if str(k).strip()]
    lines = content.split('\n')
    kept = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if '#EXT-X-DISCONTINUITY' in line:
            i += 1
            continue
        if '#EXTINF:' in line and i + 1 < len(lines):
            next_line = lines[i + 1].lower()
            if any(keyword in next_line for keyword in keywords):
                i += 2
                continue
        kept.append(line)
        i += 1
    return '\n'.join(kept)


def proxy_url(url, origin, source='', token=''):
    out = f'{origin}/api/proxy-m3u8?url={encode_uri_component(url)}'
    if source:
        out += f'&source={encode_uri_component(source)}'
    if token:
        out += f'&token={encode_uri_component(token)}'
    return out


def resolve_links(content, base_url, origin, source='', token=''):
    """Make every URI absolute and route nested playlists back through the proxy."""
    resolved = []
    next_is_stream = False
    for line in content.split('\n'):
        if line.startswith('#EXT-X-KEY:'):
            match = _KEY_URI_RE.search(line)
            if match and not _is_absolute(match.group(1)):
                key_uri = _absolute(match.group(1), base_url)
                line = _KEY_URI_RE.sub(lambda _: f'URI="{key_uri}"', line, count=1)
            resolved.append(line)
            continue
        if line.startswith('#'):
            resolved.append(line)
            if line.startswith('#EXT-X-STREAM-INF:'):
                next_is_stream = True
            continue
        if not line.strip():
            resolved.append(line)
            continue

        url = _absolute(line.strip(), base_url)
        if '.m3u8' in url or next_is_stream:
            url = proxy_url(url, origin, source, token)
        resolved.append(url)
        next_is_stream = False
    return '\n'.join(resolved)


def _ad_keywords():
    keywords = load_admin_config()['SiteConfig'].get('AdFilterKeywords') or []
    return [k for k in keywords if isinstance(k, str) and k.strip()] or None


@m3u8_blueprint.route('/api/proxy-m3u8', methods=['GET'])
def proxy_m3u8():
    m3u8_url = request.args.get('url')
    source = request.args.get('source') or ''
    token = request.args.get('token') or ''

    expected_token = get_proxy_m3u8_token()
    if expected_token and token != expected_token:
        return jsonify({'error': 'Invalid access token'}), 401
    if not m3u8_url:
        return jsonify({'error': 'Missing required parameter: url'}), 400

    origin = get_site_base() or request.host_url.rstrip('/')
    try:
        upstream = requests.get(
            m3u8_url,
            timeout=load_settings()['proxy']['request_timeout_seconds'],
            headers={
                'User-Agent': BROWSER_USER_AGENT,
                'Accept': '*/*',
                'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
                'Referer': _origin_of(m3u8_url) + '/',
            },
        )
        if not upstream.ok:
            return jsonify({'error': 'Failed to fetch m3u8'}), upstream.status_code
        content = filter_ads(upstream.text, _ad_keywords())
        content = resolve_links(content, m3u8_url, origin, source, token)
    except Exception as e:
        logger.error(f'M3U8 proxy failed for {m3u8_url}: {e}')
        return jsonify({'error': 'Proxy failed', 'details': str(e)}), 500

    return Response(content, headers={
        'Content-Type': M3U8_CONTENT_TYPE,
        'Access-Control-Allow-Origin': '*',
        'Cache-Control': 'no-cache',
    })
