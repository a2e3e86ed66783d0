from flask import Blueprint, request
from flask_login import current_user
from moontv.anime import AnimeCheckError, check_lock, check_subscription, record_check_progress
from moontv.auth import access_required, storage_required
from moontv.constants import *
from moontv.storage import admin_config_lock, load_admin_config, save_admin_config, StorageError
from moontv.utils import api_error, api_success, now_ms
import uuid

import logging

# Retrieve main logger
logger = logging.getLogger('main')

admin_blueprint = Blueprint('admin', __name__)


@admin_blueprint.route('/api/admin/config', methods=['GET'])
@access_required('admin')
def get_admin_config():
    return api_success({'config': load_admin_config()})


@admin_blueprint.route('/api/admin/config', methods=['POST'])
@access_required('admin')
@storage_required
def set_admin_config():
    config = (request.get_json(silent=True) or {}).get('config')
    if not isinstance(config, dict):
        return api_error('config must be an object.', 400)
    for section in DEFAULT_ADMIN_CONFIG:
        if section in config and not isinstance(config[section], dict):
            return api_error(f'{section} must be an object.', 400)
    with admin_config_lock:
        save_admin_config(config)
    logger.info(f'Admin config updated by {current_user.username}')
    return api_success({'config': load_admin_config()})


def _parse_episode(value):
    """Non-negative integer or None when invalid."""
    try:
        episode = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return episode if episode >= 0 else None


def _find_subscription(config, subscription_id):
    for subscription in config['AnimeSubscriptionConfig']['Subscriptions']:
        if subscription.get('id') == subscription_id:
            return subscription
    return None


@admin_blueprint.route('/api/admin/anime-subscription', methods=['GET'])
@access_required('admin')
def list_anime_subscriptions():
    anime_config = load_admin_config()['AnimeSubscriptionConfig']
    return api_success({
        'Enabled': bool(anime_config.get('Enabled')),
        'Subscriptions': anime_config.get('Subscriptions') or [],
    })


@admin_blueprint.route('/api/admin/anime-subscription', methods=['POST'])
@access_required('admin')
@storage_required
def create_anime_subscription():
    data = request.get_json(silent=True) or {}
    title = str(data.get('title') or '').strip()
    filter_text = str(data.get('filterText') or '').strip()
    source = data.get('source')
    if not title or not filter_text or not source:
        return api_error('title, filterText and source are required.', 400)
    if source not in ANIME_SOURCES:
        return api_error(f'source must be one of {", ".join(ANIME_SOURCES)}.', 400)

    last_episode = 0
    if data.get('lastEpisode') is not None:
        last_episode = _parse_episode(data.get('lastEpisode'))
        if last_episode is None:
            return api_error('lastEpisode must be a non-negative integer.', 400)

    now = now_ms()
    subscription = {
        'id': str(uuid.uuid4()),
        'title': title,
        'filterText': filter_text,
        'source': source,
        'enabled': bool(data['enabled']) if data.get('enabled') is not None else True,
        'lastCheckTime': 0,
        'lastEpisode': last_episode,
        'createdAt': now,
        'updatedAt': now,
        'createdBy': current_user.username,
    }
    with admin_config_lock:
        config = load_admin_config()
        config['AnimeSubscriptionConfig']['Subscriptions'].append(subscription)
        save_admin_config(config)
    logger.info(f'Anime subscription {title} created by {current_user.username}')
    return api_success({'subscription': subscription})


@admin_blueprint.route('/api/admin/anime-subscription/toggle', methods=['PUT'])
@access_required('admin')
@storage_required
def toggle_anime_subscriptions():
    enabled = (request.get_json(silent=True) or {}).get('enabled')
    if not isinstance(enabled, bool):
        return api_error('enabled must be a boolean.', 400)
    with admin_config_lock:
        config = load_admin_config()
        config['AnimeSubscriptionConfig']['Enabled'] = enabled
        save_admin_config(config)
    logger.info(f'Anime subscriptions {"enabled" if enabled else "disabled"} by {current_user.username}')
    return api_success({'enabled': enabled})


@admin_blueprint.route('/api/admin/anime-subscription/<subscription_id>', methods=['PUT'])
@access_required('admin')
@storage_required
def update_anime_subscription(subscription_id):
    updates = request.get_json(silent=True) or {}
    if updates.get('source') is not None and updates['source'] not in ANIME_SOURCES:
        return api_error(f'source must be one of {", ".join(ANIME_SOURCES)}.', 400)
    last_episode = None
    if updates.get('lastEpisode') is not None:
        last_episode = _parse_episode(updates['lastEpisode'])
        if last_episode is None:
            return api_error('lastEpisode must be a non-negative integer.', 400)

    with admin_config_lock:
        config = load_admin_config()
        subscription = _find_subscription(config, subscription_id)
        if subscription is None:
            return api_error('Subscription not found.', 404)

        if updates.get('title') is not None:
            subscription['title'] = str(updates['title']).strip()
        if updates.get('filterText') is not None:
            subscription['filterText'] = str(updates['filterText']).strip()
        if updates.get('source') is not None:
            subscription['source'] = updates['source']
        if updates.get('enabled') is not None:
            subscription['enabled'] = bool(updates['enabled'])
        if last_episode is not None:
            subscription['lastEpisode'] = last_episode
        subscription['updatedAt'] = now_ms()
        save_admin_config(config)
    return api_success({'subscription': subscription})


@admin_blueprint.route('/api/admin/anime-subscription/<subscription_id>', methods=['DELETE'])
@access_required('admin')
@storage_required
def delete_anime_subscription(subscription_id):
    with admin_config_lock:
        config = load_admin_config()
        subscriptions = config['AnimeSubscriptionConfig']['Subscriptions']
        remaining = [sub for sub in subscriptions if sub.get('id') != subscription_id]
        if len(remaining) == len(subscriptions):
            return api_error('Subscription not found.', 404)
        config['AnimeSubscriptionConfig']['Subscriptions'] = remaining
        save_admin_config(config)
    logger.info(f'Anime subscription {subscription_id} deleted by {current_user.username}')
    return api_success()


@admin_blueprint.route('/api/admin/anime-subscription/<subscription_id>/check', methods=['POST'])
@access_required('admin')
@storage_required
def check_anime_subscription(subscription_id):
    if not check_lock.acquire(blocking=False):
        return api_error('An anime subscription check is already running.', 409)
    try:
        subscription = _find_subscription(load_admin_config(), subscription_id)
        if subscription is None:
            return api_error('Subscription not found.', 404)
        try:
            result = check_subscription(subscription)
        except AnimeCheckError as e:
            logger.error(f'Manual check of {subscription.get("title")} failed: {e}')
            return api_error(str(e), 500)
        try:
            record_check_progress({subscription_id: subscription})
        except StorageError as e:
            return api_error(str(e), 500)
        return api_success(result)
    finally:
        check_lock.release()
