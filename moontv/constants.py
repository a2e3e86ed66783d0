import os

APP_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_DIR = os.environ.get('MOONTV_CONFIG_DIR') or os.path.join(APP_DIR, 'config')
DB_FILE = os.environ.get('MOONTV_DB_FILE') or os.path.join(CONFIG_DIR, 'moontv.db')
CONFIG_FILE = os.path.join(CONFIG_DIR, 'settings.yaml')
ALEMBIC_DIR = os.path.join(APP_DIR, 'migrations')
ALEMBIC_CONF = os.path.join(ALEMBIC_DIR, 'alembic.ini')

APP_VERSION = os.environ.get('MOONTV_VERSION') or os.environ.get('APP_VERSION') or 'dev'

SQLITE_DB = 'sqlite:///' + DB_FILE

STORAGE_TYPES = [
    'sqlite',
    'd1',
    'postgres',
    'redis',
    'kvrocks',
    'upstash',
    'localstorage',
]
SQL_STORAGE_TYPES = ('sqlite', 'd1', 'postgres')
REDIS_STORAGE_TYPES = ('redis', 'kvrocks', 'upstash')

DEFAULT_SETTINGS = {
    "storage": {
        # One of STORAGE_TYPES. localstorage keeps all user data in the browser.
        "type": "sqlite",
        "postgres_url": "",
        "redis_url": "",
        "kvrocks_url": "",
        "upstash_url": "",
    },
    "security": {
        # If running behind a reverse proxy, list its IP/CIDR here
        # so the login throttle sees the real client address.
        # Examples: ["172.18.0.0/16", "192.168.1.10"]
        "trusted_proxies": [],
        # When true, use X-Forwarded-For only if request.remote_addr is trusted.
        "trust_proxy_headers": False,
        # Temporary lockout after repeated failed login attempts from same client IP.
        "auth_ip_lockout_enabled": True,
        "auth_ip_lockout_threshold": 5,
        "auth_ip_lockout_window_seconds": 600,
        "auth_ip_lockout_duration_seconds": 1800,
        # Permanent deny-list of IP/CIDR entries for authentication endpoints.
        "auth_permanent_ip_blacklist": [],
    },
    "site": {
        "allow_register": False,
        "movie_request_cooldown_seconds": 60,
    },
    "playrecords": {
        "max_per_user": 100,
    },
    "anime": {
        "check_interval_minutes": 60,
    },
    "proxy": {
        "request_timeout_seconds": 15,
    },
}

# Grace added on top of the play record limit before pruning kicks in.
PLAY_RECORD_CLEANUP_GRACE = 10
SEARCH_HISTORY_LIMIT = 20
USER_INFO_CACHE_TTL_S = 300

FAVORITE_ORIGINS = ['vod', 'live']
MOVIE_REQUEST_MEDIA_TYPES = ['movie', 'tv']
MUSIC_PLATFORMS = ['netease', 'qq', 'kuwo']

ANIME_SOURCES = ['acgrip', 'mikan', 'dmhy']
ANIME_RSS_URLS = {
    'acgrip': 'https://acg.rip/.xml?term={query}',
    'mikan': 'https://mikanani.me/RSS/Search?searchstr={query}',
    'dmhy': 'https://share.dmhy.org/topics/rss/rss.xml?keyword={query}',
}
ANIME_CHECK_JOB_ID = 'anime_subscription_check_job'

M3U8_AD_KEYWORDS = [
    'sponsor',
    '/ad/',
    '/ads/',
    'advert',
    'advertisement',
    '/adjump',
    'redtraffic',
]
M3U8_CONTENT_TYPE = 'application/vnd.apple.mpegurl'
BROWSER_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

TUNEHUB_DEFAULT_BASE_URL = 'https://tunehub.sayqz.com/api'
MUSIC_CACHE_TTL_S = 24 * 60 * 60
MUSIC_DEFAULT_QUALITY = '320k'

TMDB_API_BASE_URL = 'https://api.themoviedb.org/3'
TMDB_TRENDING_CACHE_TTL_S = 3 * 60 * 60

DEFAULT_ADMIN_CONFIG = {
    "SiteConfig": {
        "SiteName": "MoonTV",
        "Announcement": "",
        "TMDBApiKey": "",
        "TMDBProxy": "",
        "TMDBReverseProxy": "",
        "AdFilterKeywords": [],
    },
    "MusicConfig": {
        "TuneHubEnabled": False,
        "TuneHubBaseUrl": "",
        "TuneHubApiKey": "",
    },
    "AnimeSubscriptionConfig": {
        "Enabled": False,
        "Subscriptions": [],
    },
}
