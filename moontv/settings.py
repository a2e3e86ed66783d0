from moontv.constants import *
import yaml
import os
import copy
import re
import time

import logging

# Retrieve main logger
logger = logging.getLogger('main')

# Cache for settings
_settings_cache = None
_settings_cache_time = 0
_settings_cache_ttl = 5  # Cache for 5 seconds

_MERGED_SECTIONS = ('storage', 'security', 'site', 'playrecords', 'anime', 'proxy')


_TRUE_WORDS = ('1', 'true', 'yes', 'on')
_FALSE_WORDS = ('0', 'false', 'no', 'off')

# (section, key) -> how the value is cleaned after merging file, defaults and env.
_FIELD_RULES = {
    ('security', 'trust_proxy_headers'): ('bool', False),
    ('security', 'trusted_proxies'): ('ip_list',),
    ('security', 'auth_ip_lockout_enabled'): ('bool', True),
    ('security', 'auth_ip_lockout_threshold'): ('int', 5, 1, 1000),
    ('security', 'auth_ip_lockout_window_seconds'): ('int', 600, 10, 86400),
    ('security', 'auth_ip_lockout_duration_seconds'): ('int', 1800, 10, 604800),
    ('security', 'auth_permanent_ip_blacklist'): ('ip_list',),
    ('site', 'allow_register'): ('bool', False),
    ('site', 'movie_request_cooldown_seconds'): ('int', 60, 0, None),
    ('playrecords', 'max_per_user'): ('int', 100, 1, None),
    ('anime', 'check_interval_minutes'): ('int', 60, 5, 10080),
    ('proxy', 'request_timeout_seconds'): ('int', 15, 1, 300),
}


def _parse_bool_text(text):
    lowered = str(text).strip().lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    return None

def _read_env_bool(key):
    raw = os.environ.get(key)
    return None if raw is None else _parse_bool_text(raw)

def _read_env_csv(key):
    raw = os.environ.get(key)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(',') if item.strip()]

def _read_env_str(*keys):
    for key in keys:
        raw = (os.environ.get(key) or '').strip()
        if raw:
            return raw
    return None

def _coerce_bool(value, default=False):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        parsed = _parse_bool_text(value)
        if parsed is not None:
            return parsed
    return bool(default)

def _coerce_int(value, default=0, minimum=None, maximum=None):
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = int(default)
    if minimum is not None and number < minimum:
        number = int(minimum)
    if maximum is not None and number > maximum:
        number = int(maximum)
    return number

def _normalize_ip_entries(raw):
    """Flatten a string or list of IP/CIDR entries split on commas or newlines, deduplicated."""
    if isinstance(raw, str):
        raw = [raw]
    elif not isinstance(raw, (list, tuple, set)):
        return []
    entries = []
    for item in raw:
        for candidate in re.split(r'[,\r\n]+', str(item or '')):
            candidate = candidate.strip()
            if candidate and candidate.lower() not in (e.lower() for e in entries):
                entries.append(candidate)
    return entries

def _normalize_section(section, values):
    for (rule_section, key), rule in _FIELD_RULES.items():
        if rule_section != section:
            continue
        kind = rule[0]
        if kind == 'bool':
            values[key] = _coerce_bool(values.get(key), default=rule[1])
        elif kind == 'int':
            values[key] = _coerce_int(values.get(key), default=rule[1], minimum=rule[2], maximum=rule[3])
        else:
            values[key] = _normalize_ip_entries(values.get(key))
    return values

def _normalize_storage_settings(raw_storage):
    defaults = DEFAULT_SETTINGS.get('storage', {}) or {}
    merged = defaults.copy()
    if isinstance(raw_storage, dict):
        merged.update(raw_storage)
    storage_type = str(merged.get('type') or defaults.get('type')).strip().lower()
    if storage_type not in STORAGE_TYPES:
        logger.warning(f'Unknown storage type {storage_type}, falling back to sqlite.')
        storage_type = 'sqlite'
    merged['type'] = storage_type
    for key in ('postgres_url', 'redis_url', 'kvrocks_url', 'upstash_url'):
        merged[key] = str(merged.get(key) or '').strip()
    return merged

def _merge_section(settings, section):
    defaults = copy.deepcopy(DEFAULT_SETTINGS.get(section, {}))
    if isinstance(settings.get(section), dict):
        defaults.update(settings[section])
    settings[section] = defaults

def _apply_env_overrides(settings):
    security = settings['security']
    env_trust = _read_env_bool('MOONTV_TRUST_PROXY_HEADERS')
    if env_trust is not None:
        security['trust_proxy_headers'] = env_trust
    env_proxies = _read_env_csv('MOONTV_TRUSTED_PROXIES')
    if env_proxies is not None:
        security['trusted_proxies'] = env_proxies

    env_storage = _read_env_str('STORAGE_TYPE', 'NEXT_PUBLIC_STORAGE_TYPE')
    if env_storage:
        settings['storage']['type'] = env_storage
    for key, env_name in (
        ('postgres_url', 'POSTGRES_URL'),
        ('redis_url', 'REDIS_URL'),
        ('kvrocks_url', 'KVROCKS_URL'),
        ('upstash_url', 'UPSTASH_URL'),
    ):
        env_value = _read_env_str(env_name)
        if env_value:
            settings['storage'][key] = env_value

    env_max_records = _read_env_str('MAX_PLAY_RECORDS_PER_USER')
    if env_max_records:
        settings['playrecords']['max_per_user'] = env_max_records

def _normalize_settings(settings):
    for section in _MERGED_SECTIONS:
        if section == 'storage':
            settings['storage'] = _normalize_storage_settings(settings.get('storage'))
        else:
            _normalize_section(section, settings[section])
    return settings

def load_settings(force_reload=False):
    global _settings_cache, _settings_cache_time

    current_time = time.time()

    # Return cached settings if still valid and not forcing reload
    if not force_reload and _settings_cache is not None and (current_time - _settings_cache_time) < _settings_cache_ttl:
        return _settings_cache

    if os.path.exists(CONFIG_FILE):
        logger.debug('Reading configuration file.')
        with open(CONFIG_FILE, 'r') as yaml_file:
            settings = yaml.safe_load(yaml_file) or {}
        for section in _MERGED_SECTIONS:
            _merge_section(settings, section)
    else:
        settings = copy.deepcopy(DEFAULT_SETTINGS)
        os.makedirs(CONFIG_DIR, exist_ok=True)
        with open(CONFIG_FILE, 'w') as yaml_file:
            yaml.dump(settings, yaml_file)

    # Environment wins over the file but is never written back.
    _apply_env_overrides(settings)
    _normalize_settings(settings)

    _settings_cache = settings
    _settings_cache_time = current_time

    return settings

def _read_settings_file():
    if not os.path.exists(CONFIG_FILE):
        return copy.deepcopy(DEFAULT_SETTINGS)
    with open(CONFIG_FILE, 'r') as yaml_file:
        return yaml.safe_load(yaml_file) or {}

def set_settings_section(section, data):
    if section not in _MERGED_SECTIONS:
        raise ValueError(f'Unknown settings section {section}')
    settings = _read_settings_file()
    for name in _MERGED_SECTIONS:
        _merge_section(settings, name)
    settings[section].update(data or {})
    if section == 'storage':
        settings['storage'] = _normalize_storage_settings(settings['storage'])
    else:
        _normalize_section(section, settings[section])
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_FILE, 'w') as yaml_file:
        yaml.dump(settings, yaml_file)
    # Invalidate cache
    global _settings_cache
    _settings_cache = None

def get_owner_credentials():
    """Owner username and password, read from the environment on every call."""
    return (os.environ.get('USERNAME') or '').strip(), os.environ.get('PASSWORD') or ''

def get_site_base():
    return (os.environ.get('SITE_BASE') or '').strip().rstrip('/')

def get_proxy_m3u8_token():
    return _read_env_str('PROXY_M3U8_TOKEN', 'NEXT_PUBLIC_PROXY_M3U8_TOKEN') or ''
