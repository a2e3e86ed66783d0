from flask import Blueprint, Response, jsonify, request, stream_with_context
from moontv.constants import *
from moontv.settings import load_settings
from moontv.storage import load_admin_config
from moontv.utils import ExpiringCache, encode_uri_component
import requests
import ast
import os
import re

import logging

# Retrieve main logger
logger = logging.getLogger('main')

music_blueprint = Blueprint('music', __name__)

_method_config_cache = ExpiringCache(MUSIC_CACHE_TTL_S, max_entries=200)
_response_cache = ExpiringCache(MUSIC_CACHE_TTL_S, max_entries=2000)

_TEMPLATE_RE = re.compile(r'\{\{(.+?)\}\}')
_PROXY_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'


class MusicError(Exception):
    pass


def get_tunehub_config():
    music_config = load_admin_config()['MusicConfig']
    return {
        'enabled': bool(music_config.get('TuneHubEnabled')),
        'base_url': (
            music_config.get('TuneHubBaseUrl')
            or os.environ.get('TUNEHUB_BASE_URL')
            or TUNEHUB_DEFAULT_BASE_URL
        ).rstrip('/'),
        'api_key': music_config.get('TuneHubApiKey') or os.environ.get('TUNEHUB_API_KEY') or '',
    }


def _numeric(value):
    """Template variables behave as numbers when they parse as one."""
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    if not text:
        return value
    try:
        number = float(text)
    except ValueError:
        return value
    if number.is_integer() and re.fullmatch(r'[+-]?\d+', text):
        return int(number)
    return number


def _eval_node(node, context):
    if isinstance(node, ast.Expression):
        return _eval_node(node.body, context)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float, str)):
        return node.value
    if isinstance(node, ast.Name):
        if node.id not in context:
            raise NameError(node.id)
        return context[node.id]
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        operand = _eval_node(node.operand, context)
        return -operand if isinstance(node.op, ast.USub) else +operand
    if isinstance(node, ast.BinOp):
        left = _eval_node(node.left, context)
        right = _eval_node(node.right, context)
        if isinstance(node.op, ast.Add):
            if isinstance(left, str) or isinstance(right, str):
                return f'{_render(left)}{_render(right)}'
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        if isinstance(node.op, ast.Div):
            return left / right
        if isinstance(node.op, ast.FloorDiv):
            return left // right
        if isinstance(node.op, ast.Mod):
            return left % right
    raise ValueError(f'Unsupported expression {type(node).__name__}')


def _render(value):
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def evaluate_expression(expression, context):
    """Evaluate a template expression over names, numbers and arithmetic."""
    tree = ast.parse(expression.strip(), mode='eval')
    return _eval_node(tree, context)


def render_template_value(value, context):
    if isinstance(value, str):
        def _substitute(match):
            try:
                return _render(evaluate_expression(match.group(1), context))
            except Exception as e:
                logger.warning(f'Template expression {match.group(1)!r} failed: {e}')
                return '0'
        return _TEMPLATE_RE.sub(_substitute, value)
    if isinstance(value, list):
        return [render_template_value(item, context) for item in value]
    if isinstance(value, dict):
        return {k: render_template_value(v, context) for k, v in value.items()}
    return value


def proxy_kuwo_images(value):
    if isinstance(value, str):
        if value.startswith('http://') and 'kwcdn.kuwo.cn' in value:
            return f'/api/music/proxy?url={encode_uri_component(value)}'
        return value
    if isinstance(value, list):
        return [proxy_kuwo_images(item) for item in value]
    if isinstance(value, dict):
        return {k: proxy_kuwo_images(v) for k, v in value.items()}
    return value


def _timeout():
    return load_settings()['proxy']['request_timeout_seconds']


def get_method_config(base_url, platform, func):
    cache_key = f'{base_url}|{platform}|{func}'
    config = _method_config_cache.get(cache_key)
    if config is None:
        resp = requests.get(
            f'{base_url}/v1/methods/{platform}/{func}',
            timeout=_timeout(),
            headers={'User-Agent': _PROXY_USER_AGENT},
        )
        resp.raise_for_status()
        config = (resp.json() or {}).get('data')
        if not config:
            raise MusicError(f'No method config for {platform}/{func}')
        _method_config_cache.set(cache_key, config)
    return config


def execute_method(base_url, platform, func, variables=None):
    config = get_method_config(base_url, platform, func)
    context = {key: _numeric(value) for key, value in (variables or {}).items()}

    method = str(config.get('method') or 'GET').upper()
    params = render_template_value(config.get('params') or {}, context)
    body = render_template_value(config.get('body'), context) if config.get('body') else None
    headers = dict(config.get('headers') or {})
    headers['User-Agent'] = _PROXY_USER_AGENT

    kwargs = {'headers': headers, 'timeout': _timeout()}
    if method == 'GET' and params:
        kwargs['params'] = params
    if method == 'POST' and body:
        kwargs['json'] = body
    resp = requests.request(method, config['url'], **kwargs)
    data = resp.json()

    if config.get('transform') and isinstance(data, dict):
        # The client runs the transform function.
        data['__transform'] = config['transform']
    if platform == 'kuwo':
        data = proxy_kuwo_images(data)
    return data


def _cached_method(cache_key, base_url, platform, func, variables=None):
    data = _response_cache.get(cache_key)
    if data is None:
        data = execute_method(base_url, platform, func, variables)
        _response_cache.set(cache_key, data)
    return data


@music_blueprint.route('/api/music', methods=['GET'])
def music_get():
    try:
        tunehub = get_tunehub_config()
        if not tunehub['enabled']:
            return jsonify({'error': 'Music is not enabled'}), 403

        action = request.args.get('action')
        platform = request.args.get('platform')
        base_url = tunehub['base_url']
        if not action:
            return jsonify({'error': 'Missing action parameter'}), 400

        if action == 'toplists':
            if not platform:
                return jsonify({'error': 'Missing platform parameter'}), 400
            return jsonify(_cached_method(f'toplists-{platform}', base_url, platform, 'toplists'))

        if action in ('toplist', 'playlist'):
            item_id = request.args.get('id')
            if not platform or not item_id:
                return jsonify({'error': 'Missing platform or id parameter'}), 400
            return jsonify(_cached_method(f'{action}-{platform}-{item_id}', base_url, platform, action, {'id': item_id}))

        if action == 'search':
            keyword = request.args.get('keyword')
            page = request.args.get('page') or '1'
            page_size = request.args.get('pageSize') or '20'
            if not platform or not keyword:
                return jsonify({'error': 'Missing platform or keyword parameter'}), 400
            return jsonify(_cached_method(
                f'search-{platform}-{keyword}-{page}-{page_size}',
                base_url,
                platform,
                'search',
                # Some platforms name the page size "limit".
                {'keyword': keyword, 'page': page, 'pageSize': page_size, 'limit': page_size},
            ))

        return jsonify({'error': 'Unsupported action'}), 400
    except Exception as e:
        logger.error(f'Music API error: {e}')
        return jsonify({'error': 'Request failed', 'details': str(e)}), 500


@music_blueprint.route('/api/music', methods=['POST'])
def music_post():
    try:
        tunehub = get_tunehub_config()
        if not tunehub['enabled']:
            return jsonify({'error': 'Music is not enabled'}), 403

        body = request.get_json(silent=True) or {}
        action = body.get('action')
        if not action:
            return jsonify({'error': 'Missing action parameter'}), 400
        if action != 'parse':
            return jsonify({'error': 'Unsupported action'}), 400
        return _parse_songs(tunehub, body)
    except Exception as e:
        logger.error(f'Music API error: {e}')
        return jsonify({'error': 'Request failed', 'details': str(e)}), 500


def _parse_songs(tunehub, body):
    if not tunehub['api_key']:
        message = 'TuneHub API key is not configured'
        return jsonify({'code': -1, 'error': message, 'message': message}), 403

    platform = body.get('platform')
    ids = body.get('ids')
    if not platform or not ids:
        message = 'Missing platform or ids parameter'
        return jsonify({'code': -1, 'error': message, 'message': message}), 400

    quality = body.get('quality') or MUSIC_DEFAULT_QUALITY
    ids_key = ','.join(str(i) for i in ids) if isinstance(ids, list) else str(ids)
    cache_key = f'parse-{platform}-{ids_key}-{quality}'
    cached = _response_cache.get(cache_key)
    if cached is not None:
        return jsonify(cached)

    try:
        resp = requests.post(
            f'{tunehub["base_url"]}/v1/parse',
            json={'platform': platform, 'ids': ids, 'quality': quality},
            headers={'X-API-Key': tunehub['api_key'], 'User-Agent': _PROXY_USER_AGENT},
            timeout=_timeout(),
        )
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f'Song parse request failed: {e}')
        return jsonify({'code': -1, 'message': 'Parse request failed', 'error': str(e)})

    if not resp.ok or data.get('code') != 0:
        message = data.get('message') or data.get('error') or 'Parse failed'
        return jsonify({
            'code': data.get('code') or -1,
            'message': message,
            'error': data.get('error') or message,
        })

    _response_cache.set(cache_key, data)
    return jsonify(data)


@music_blueprint.route('/api/music/proxy', methods=['GET'])
def music_image_proxy():
    url = request.args.get('url') or ''
    if not url.startswith('http://') and not url.startswith('https://'):
        return jsonify({'error': 'Invalid url'}), 400
    try:
        upstream = requests.get(url, timeout=_timeout(), stream=True, headers={'User-Agent': _PROXY_USER_AGENT})
    except requests.RequestException as e:
        logger.warning(f'Music image proxy failed for {url}: {e}')
        return jsonify({'error': 'Proxy failed', 'details': str(e)}), 502
    if not upstream.ok:
        upstream.close()
        return jsonify({'error': 'Upstream error'}), upstream.status_code

    def _generate():
        try:
            for chunk in upstream.iter_content(chunk_size=8192):
                if chunk:
                    yield chunk
        finally:
            upstream.close()

    return Response(
        stream_with_context(_generate()),
        content_type=upstream.headers.get('Content-Type') or 'application/octet-stream',
        headers={'Cache-Control': 'public, max-age=86400'},
    )
