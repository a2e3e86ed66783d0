import logging
import re
import threading
import os
import time
import subprocess
from urllib.parse import quote

from flask import jsonify

_version_cache = None
_version_cache_time = 0
_version_cache_ttl = 30

# Custom logging formatter to support colors
class ColoredFormatter(logging.Formatter):
    # Define color codes
    COLORS = {
        'DEBUG': '\033[94m',   # Blue
        'INFO': '\033[92m',    # Green
        'WARNING': '\033[93m', # Yellow
        'ERROR': '\033[91m',   # Red
        'CRITICAL': '\033[95m' # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        return super().format(record)

# Filter to remove date from http access logs
class FilterRemoveDateFromWerkzeugLogs(logging.Filter):
    # '192.168.0.102 - - [30/Jun/2024 01:14:03] "%s" %s %s' -> '192.168.0.102 - "%s" %s %s'
    pattern: re.Pattern = re.compile(r' - - \[.+?] "')

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.pattern.sub(' - "', record.msg)
        return True


class ExpiringCache:
    """Small thread-safe in-process cache with a fixed time-to-live per entry."""

    def __init__(self, ttl_s, max_entries=1000):
        self.ttl_s = float(ttl_s)
        self.max_entries = int(max_entries)
        self._lock = threading.Lock()
        self._entries = {}

    def get(self, key):
        now = time.time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if now - stored_at >= self.ttl_s:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key, value):
        now = time.time()
        with self._lock:
            self._entries[key] = (now, value)
            if len(self._entries) > self.max_entries:
                # Drop the oldest half when the cache grows past its bound.
                ordered = sorted(self._entries.items(), key=lambda kv: kv[1][0], reverse=True)
                self._entries = dict(ordered[: self.max_entries // 2])

    def pop(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()


def now_ms():
    return int(time.time() * 1000)


def encode_uri_component(value):
    # Same reserved set as JavaScript's encodeURIComponent.
    return quote(str(value), safe="-_.!~*'()")


def get_app_version(fallback=None):
    global _version_cache, _version_cache_time
    now = time.time()
    if _version_cache and (now - _version_cache_time) < _version_cache_ttl:
        return _version_cache

    env_version = os.environ.get('MOONTV_VERSION') or os.environ.get('APP_VERSION')
    if env_version:
        _version_cache = env_version.strip()
        _version_cache_time = now
        return _version_cache

    version = None
    try:
        repo_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        result = subprocess.run(
            ['git', 'describe', '--tags', '--dirty', '--always'],
            cwd=repo_root,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=2,
            check=False,
        )
        if result.returncode == 0:
            version = result.stdout.strip()
    except Exception:
        version = None

    if version and version.endswith('-dirty'):
        version = f"{version[:-6]} (dirty)"
    if not version:
        version = (fallback or '').strip() or 'dev'

    _version_cache = version
    _version_cache_time = now
    return version


# API response helper functions for consistent error handling
def api_error(message, status_code=400, error_code=None):
    """Return a standardized error response."""
    response = {'success': False, 'message': message}
    if error_code:
        response['error_code'] = error_code
    return jsonify(response), status_code

def api_success(data=None, message=None):
    """Return a standardized success response."""
    response = {'success': True}
    if data:
        response.update(data)
    if message:
        response['message'] = message
    return jsonify(response)
