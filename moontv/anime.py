from moontv.constants import *
from moontv.settings import load_settings
from moontv.storage import admin_config_lock, get_storage, load_admin_config, save_admin_config, new_notification
from moontv.utils import encode_uri_component, now_ms
from datetime import timedelta
import xml.etree.ElementTree as ET
import requests
import threading
import re

import logging

# Retrieve main logger
logger = logging.getLogger('main')

# One subscription check at a time, scheduled or manual.
check_lock = threading.Lock()

# Most specific first; fansub titles mix several numbering styles.
_EPISODE_PATTERNS = [
    re.compile(r'第\s*(\d{1,4})\s*[集话話]'),
    re.compile(r'\[(\d{1,4})(?:v\d)?(?:\s*END)?\]', re.IGNORECASE),
    re.compile(r'【(\d{1,4})(?:v\d)?】'),
    re.compile(r'\bS\d{1,2}E(\d{1,4})\b', re.IGNORECASE),
    re.compile(r'\bEP?\.?\s?(\d{1,4})\b', re.IGNORECASE),
    re.compile(r'\s-\s(\d{1,4})(?:v\d)?(?=[\s\[(【.]|$)'),
    re.compile(r'#(\d{1,4})\b'),
]

# Bracketed numbers that are really resolutions or years.
_NOT_EPISODES = {480, 540, 720, 1080, 2160}


class AnimeCheckError(Exception):
    pass


def extract_episode(title):
    """Return the episode number found in a release title, or None."""
    text = str(title or '')
    for pattern in _EPISODE_PATTERNS:
        for match in pattern.finditer(text):
            episode = int(match.group(1))
            if episode in _NOT_EPISODES or 1900 <= episode <= 2100:
                continue
            return episode
    return None


def build_feed_url(source, filter_text):
    template = ANIME_RSS_URLS.get(source)
    if template is None:
        raise AnimeCheckError(f'Unknown source {source}')
    return template.format(query=encode_uri_component(filter_text))


def parse_rss_items(xml_text):
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise AnimeCheckError(f'Invalid RSS feed: {e}')
    items = []
    for item in root.iter('item'):
        title = (item.findtext('title') or '').strip()
        if not title:
            continue
        enclosure = item.find('enclosure')
        items.append({
            'title': title,
            'link': (item.findtext('link') or '').strip(),
            'torrent': enclosure.get('url') if enclosure is not None else None,
            'pubDate': (item.findtext('pubDate') or '').strip(),
        })
    return items


def fetch_feed_items(source, filter_text, timeout=15):
    url = build_feed_url(source, filter_text)
    try:
        resp = requests.get(url, timeout=timeout, headers={'User-Agent': BROWSER_USER_AGENT})
        resp.raise_for_status()
    except requests.RequestException as e:
        raise AnimeCheckError(f'Failed to fetch {source} feed: {e}')
    return parse_rss_items(resp.text)


def find_new_episodes(items, filter_text, last_episode):
    """Group matching items by episode and keep those newer than last_episode."""
    needle = str(filter_text or '').lower()
    found = {}
    for item in items:
        if needle not in item['title'].lower():
            continue
        episode = extract_episode(item['title'])
        if episode is None or episode <= last_episode:
            continue
        found.setdefault(episode, dict(item, episode=episode))
    return [found[episode] for episode in sorted(found)]


def check_subscription(subscription, timeout=None):
    """Check one subscription in place and notify its creator of new episodes.

    Mutates `lastEpisode` and `lastCheckTime` on the given dict; the caller
    stores them with record_check_progress.
    """
    if timeout is None:
        timeout = load_settings()['proxy']['request_timeout_seconds']
    last_episode = int(subscription.get('lastEpisode') or 0)
    items = fetch_feed_items(subscription['source'], subscription['filterText'], timeout=timeout)
    new_episodes = find_new_episodes(items, subscription['filterText'], last_episode)

    subscription['lastCheckTime'] = now_ms()
    if new_episodes:
        subscription['lastEpisode'] = new_episodes[-1]['episode']
        _notify_new_episodes(subscription, new_episodes)
        logger.info(f'Anime subscription {subscription["title"]}: {len(new_episodes)} new episode(s), '
                    f'now at {subscription["lastEpisode"]}')
    else:
        logger.debug(f'Anime subscription {subscription["title"]}: no new episodes')

    return {
        'newEpisodes': new_episodes,
        'lastEpisode': subscription['lastEpisode'] if new_episodes else last_episode,
    }


def _notify_new_episodes(subscription, episodes):
    storage = get_storage()
    username = subscription.get('createdBy')
    if storage is None or not username:
        return
    # Ensures the environment owner has a record before writing to it.
    if storage.get_user_info(username) is None:
        return
    for item in episodes:
        try:
            storage.add_notification(username, new_notification(
                'system',
                f'{subscription["title"]} episode {item["episode"]}',
                item['title'],
                {
                    'subscriptionId': subscription['id'],
                    'episode': item['episode'],
                    'link': item.get('link'),
                    'torrent': item.get('torrent'),
                },
            ))
        except Exception as e:
            logger.warning(f'Could not notify {username} about {subscription["title"]}: {e}')


def record_check_progress(checked):
    """Write lastEpisode and lastCheckTime of checked subscriptions into the stored config.

    `checked` maps subscription id to the checked copy. The config is reloaded
    under the admin config lock so edits made while feeds were fetched survive,
    and subscriptions deleted in the meantime stay deleted.
    """
    with admin_config_lock:
        config = load_admin_config()
        for subscription in config['AnimeSubscriptionConfig'].get('Subscriptions') or []:
            progress = checked.get(subscription.get('id'))
            if progress is None:
                continue
            subscription['lastEpisode'] = progress['lastEpisode']
            subscription['lastCheckTime'] = progress['lastCheckTime']
        save_admin_config(config)


def run_subscription_checks():
    """Check enabled subscriptions that are due. Returns the number checked."""
    if not check_lock.acquire(blocking=False):
        logger.info('Skipping anime subscription check: previous run still in progress.')
        return 0
    try:
        anime_config = load_admin_config()['AnimeSubscriptionConfig']
        if not anime_config.get('Enabled'):
            return 0
        interval_ms = load_settings()['anime']['check_interval_minutes'] * 60 * 1000
        now = now_ms()
        checked = {}
        for subscription in anime_config.get('Subscriptions') or []:
            if not subscription.get('enabled'):
                continue
            if now - int(subscription.get('lastCheckTime') or 0) < interval_ms:
                continue
            try:
                check_subscription(subscription)
            except Exception as e:
                logger.error(f'Error checking anime subscription {subscription.get("title")}: {e}')
                continue
            checked[subscription.get('id')] = subscription
        if checked:
            record_check_progress(checked)
        return len(checked)
    finally:
        check_lock.release()


def schedule_anime_checks(app):
    def anime_check_job():
        with app.app_context():
            run_subscription_checks()

    interval_minutes = load_settings()['anime']['check_interval_minutes']
    app.scheduler.add_job(
        job_id=ANIME_CHECK_JOB_ID,
        func=anime_check_job,
        interval=timedelta(minutes=interval_minutes),
        run_first=False,
    )
