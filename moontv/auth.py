from flask import Blueprint, request
from flask_login import LoginManager, UserMixin, login_user, logout_user, current_user
from functools import wraps
from moontv.settings import load_settings, get_owner_credentials, _coerce_bool, _coerce_int
from moontv.storage import get_storage
from moontv.utils import api_error, api_success
import hashlib
import ipaddress

import logging
import threading
import time

# Retrieve main logger
logger = logging.getLogger('main')

ROLE_RANK = {'user': 0, 'admin': 1, 'owner': 2}
MAX_USERNAME_LENGTH = 100
MAX_USER_PAGE_SIZE = 100

_REAL_CLIENT_HEADERS = ('CF-Connecting-IP', 'True-Client-IP', 'X-Real-IP')


def _parse_address(value):
    """IP address object for header or peer text, unwrapping IPv4-mapped IPv6."""
    text = str(value or '').strip().strip('[]')
    try:
        address = ipaddress.ip_address(text)
    except ValueError:
        return None
    if address.version == 6 and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _parse_networks(entries):
    networks = []
    for entry in entries or []:
        try:
            networks.append(ipaddress.ip_network(str(entry).strip(), strict=False))
        except ValueError:
            logger.warning(f'Ignoring invalid IP entry {entry!r}')
    return networks


def _in_networks(address, networks):
    return address is not None and any(address in network for network in networks)


class LockoutPolicy:
    def __init__(self, enabled=True, threshold=5, window_s=600, duration_s=1800, blacklist=None):
        self.enabled = enabled
        self.threshold = threshold
        self.window_s = window_s
        self.duration_s = duration_s
        self.blacklist = _parse_networks(blacklist)

    @classmethod
    def from_settings(cls, settings):
        security = (settings or {}).get('security') or {}
        return cls(
            enabled=_coerce_bool(security.get('auth_ip_lockout_enabled'), default=True),
            threshold=_coerce_int(security.get('auth_ip_lockout_threshold'), default=5, minimum=1, maximum=1000),
            window_s=_coerce_int(security.get('auth_ip_lockout_window_seconds'), default=600, minimum=10, maximum=86400),
            duration_s=_coerce_int(security.get('auth_ip_lockout_duration_seconds'), default=1800, minimum=10, maximum=604800),
            blacklist=security.get('auth_permanent_ip_blacklist'),
        )

    def is_blacklisted(self, client_ip):
        return _in_networks(_parse_address(client_ip), self.blacklist)


class LoginThrottle:
    """Failed login bookkeeping per client IP.

    The same credentials retried within `burst_window_s` count as one failure,
    so a client firing parallel requests is not locked out by one typo.
    """

    def __init__(self, burst_window_s=1.5, max_tracked=5000):
        self.burst_window_s = burst_window_s
        self.max_tracked = max_tracked
        self._lock = threading.Lock()
        self.failures = {}
        self.lockouts = {}
        self.recent_credentials = {}

    def reset(self):
        with self._lock:
            self.failures.clear()
            self.lockouts.clear()
            self.recent_credentials.clear()

    def lockout_remaining(self, client_ip):
        now = time.time()
        with self._lock:
            until = self.lockouts.get(client_ip, 0)
            if until <= now:
                self.lockouts.pop(client_ip, None)
                return 0
        return max(1, int(round(until - now)))

    def is_repeat(self, client_ip, username, password):
        now = time.time()
        fingerprint = hashlib.sha256(
            f'{client_ip}|{username.lower()}\x00{password}'.encode('utf-8', errors='ignore')
        ).hexdigest()
        with self._lock:
            last = self.recent_credentials.get(fingerprint)
            if last is not None and now - last < self.burst_window_s:
                return True
            self.recent_credentials[fingerprint] = now
            if len(self.recent_credentials) > self.max_tracked * 4:
                horizon = now - self.burst_window_s * 4
                self.recent_credentials = {
                    key: seen for key, seen in self.recent_credentials.items() if seen >= horizon
                }
        return False

    def record_failure(self, client_ip, policy):
        """Count a failure. Returns the lockout length when this one triggers it, else 0."""
        now = time.time()
        with self._lock:
            recent = [ts for ts in self.failures.get(client_ip, []) if ts >= now - policy.window_s]
            recent.append(now)
            self.failures[client_ip] = recent[-policy.threshold * 4:]
            triggered = len(recent) >= policy.threshold
            if triggered:
                self.lockouts[client_ip] = now + policy.duration_s
            self._prune(now)
        return policy.duration_s if triggered else 0

    def _prune(self, now):
        keep = self.max_tracked // 2
        if len(self.failures) > self.max_tracked:
            newest = sorted(self.failures.items(), key=lambda item: item[1][-1], reverse=True)
            self.failures = dict(newest[:keep])
        if len(self.lockouts) > self.max_tracked:
            active = sorted(
                ((ip, until) for ip, until in self.lockouts.items() if until > now),
                key=lambda item: item[1],
                reverse=True,
            )
            self.lockouts = dict(active[:keep])

    def clear(self, client_ip):
        with self._lock:
            had_failures = self.failures.pop(client_ip, None) is not None
            had_lockout = self.lockouts.pop(client_ip, None) is not None
        return had_failures or had_lockout

    def active_lockouts(self, window_s):
        now = time.time()
        with self._lock:
            self.lockouts = {ip: until for ip, until in self.lockouts.items() if until > now}
            items = [
                {
                    'ip': ip,
                    'remaining_seconds': max(1, int(round(until - now))),
                    'locked_until': int(until),
                    'failed_attempts_recent': sum(1 for ts in self.failures.get(ip, []) if ts >= now - window_s),
                }
                for ip, until in self.lockouts.items()
            ]
        return sorted(items, key=lambda item: item['remaining_seconds'], reverse=True)


login_throttle = LoginThrottle()


def _effective_client_ip(settings):
    """Client IP for auth decisions.

    Forwarding headers are read only when proxy trust is on and the direct peer
    is one of the configured proxies. The X-Forwarded-For chain is walked from
    the nearest hop back to the first address that is not a trusted proxy.
    """
    peer = (request.remote_addr or '').strip()
    security = (settings or {}).get('security') or {}
    if not security.get('trust_proxy_headers'):
        return peer
    trusted = _parse_networks(security.get('trusted_proxies'))
    if not _in_networks(_parse_address(peer), trusted):
        return peer

    chain = [_parse_address(part) for part in (request.headers.get('X-Forwarded-For') or '').split(',')]
    for address in reversed([a for a in chain if a is not None]):
        if not _in_networks(address, trusted):
            return str(address)
    for header in _REAL_CLIENT_HEADERS:
        address = _parse_address(request.headers.get(header))
        if address is not None and not _in_networks(address, trusted):
            return str(address)
    return peer


class AuthUser(UserMixin):
    def __init__(self, username, role='user'):
        self.username = username
        self.role = role

    def get_id(self):
        return self.username

    def has_role(self, role):
        return ROLE_RANK.get(self.role, -1) >= ROLE_RANK.get(role, 99)

    @property
    def is_owner(self):
        return self.role == 'owner'


auth_blueprint = Blueprint('auth', __name__)

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    owner_name, _ = get_owner_credentials()
    storage = get_storage()
    if storage is None:
        # Only the owner can hold a session when data stays in the browser.
        if user_id == (owner_name or 'owner'):
            return AuthUser(user_id, 'owner')
        return None
    if owner_name and user_id == owner_name:
        return AuthUser(user_id, 'owner')
    info = storage.get_user_info(user_id)
    if not info or info.get('banned'):
        return None
    return AuthUser(user_id, info.get('role') or 'user')


@login_manager.unauthorized_handler
def unauthorized_json():
    return api_error('Authentication required.', 401)


def access_required(role: str = 'user'):
    def _access_required(f):
        @wraps(f)
        def decorated_view(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if not current_user.has_role(role):
                return api_error('Forbidden', 403)
            return f(*args, **kwargs)
        return decorated_view
    return _access_required


def storage_required(f):
    @wraps(f)
    def decorated_view(*args, **kwargs):
        if get_storage() is None:
            return api_error('Not available with localstorage storage; data is kept in the browser.', 400)
        return f(*args, **kwargs)
    return decorated_view


def _validate_username(username):
    if not username:
        return 'Username is required.'
    if len(username) > MAX_USERNAME_LENGTH:
        return f'Username must be at most {MAX_USERNAME_LENGTH} characters.'
    if any(ch.isspace() for ch in username):
        return 'Username must not contain whitespace.'
    return None


def _login_failed(client_ip, policy, username, password):
    logger.warning(f'Incorrect login for user {username}')
    if policy.enabled and client_ip and not login_throttle.is_repeat(client_ip, username, password):
        duration_s = login_throttle.record_failure(client_ip, policy)
        if duration_s:
            logger.warning(f'Login lockout activated for {client_ip} for {duration_s}s')
    return api_error('Incorrect username or password.', 401)


@auth_blueprint.route('/api/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')

    settings = load_settings()
    policy = LockoutPolicy.from_settings(settings)
    client_ip = _effective_client_ip(settings)

    if policy.is_blacklisted(client_ip):
        logger.warning(f'Blocked login from permanently blacklisted IP {client_ip}')
        return api_error('Access blocked for this client IP.', 403)
    remaining_s = login_throttle.lockout_remaining(client_ip)
    if remaining_s:
        logger.warning(f'Blocked login from temporarily locked IP {client_ip}, remaining {remaining_s}s')
        return api_error(f'Too many failed attempts from this client IP. Try again in {int(remaining_s)}s.', 429)

    if not password:
        return api_error('Password is required.', 400)

    owner_name, owner_password = get_owner_credentials()
    storage = get_storage()

    if storage is None:
        if not owner_password or password != owner_password:
            return _login_failed(client_ip, policy, username, password)
        user = AuthUser(owner_name or 'owner', 'owner')
    else:
        if not username:
            return api_error('Username is required.', 400)
        if not storage.verify_user(username, password):
            return _login_failed(client_ip, policy, username, password)
        if owner_name and username == owner_name:
            # Creates the owner record on first login.
            storage.get_user_info(username)
            user = AuthUser(username, 'owner')
        else:
            info = storage.get_user_info(username) or {}
            user = AuthUser(username, info.get('role') or 'user')

    logger.info(f'Successful login for user {user.username}')
    login_throttle.clear(client_ip)
    login_user(user, remember=bool(data.get('remember')))
    return api_success({'username': user.username, 'role': user.role})


@auth_blueprint.route('/api/logout', methods=['POST'])
def logout():
    if current_user.is_authenticated:
        logger.info(f'User {current_user.username} logged out')
    logout_user()
    return api_success()


@auth_blueprint.route('/api/register', methods=['POST'])
@storage_required
def register():
    settings = load_settings()
    if not settings['site']['allow_register']:
        return api_error('Registration is disabled.', 403)

    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    error = _validate_username(username)
    if error:
        return api_error(error, 400)
    if not password:
        return api_error('Password is required.', 400)

    storage = get_storage()
    if storage.check_user_exist(username):
        return api_error('User already exists.', 409)
    try:
        storage.create_user(username, password, role='user')
    except Exception as e:
        logger.error(f'Registration failed for {username}: {e}')
        return api_error('Registration failed.', 500)

    logger.info(f'Registered new user {username}')
    login_user(AuthUser(username, 'user'))
    return api_success({'username': username, 'role': 'user'})


@auth_blueprint.route('/api/change-password', methods=['POST'])
@access_required('user')
@storage_required
def change_password():
    if current_user.is_owner:
        return api_error('The site owner password is set by environment and cannot be changed here.', 403)

    data = request.get_json(silent=True) or {}
    old_password = str(data.get('oldPassword') or '')
    new_password = str(data.get('newPassword') or '')
    if not new_password:
        return api_error('New password is required.', 400)

    storage = get_storage()
    if not storage.verify_stored_password(current_user.username, old_password):
        return api_error('Current password is incorrect.', 403)
    try:
        storage.change_password(current_user.username, new_password)
    except Exception as e:
        logger.error(f'Password change failed for {current_user.username}: {e}')
        return api_error('Password change failed.', 500)
    logger.info(f'Password changed for user {current_user.username}')
    return api_success()


def _may_manage(target_role):
    # Admins manage plain users; only the owner manages admins.
    if current_user.is_owner:
        return target_role != 'owner'
    return target_role == 'user'


@auth_blueprint.route('/api/admin/users', methods=['GET'])
@access_required('admin')
@storage_required
def list_users():
    offset = _coerce_int(request.args.get('offset'), default=0, minimum=0)
    limit = _coerce_int(request.args.get('limit'), default=20, minimum=1, maximum=MAX_USER_PAGE_SIZE)
    owner_name, _ = get_owner_credentials()
    page = get_storage().get_user_list(offset=offset, limit=limit, owner_username=owner_name or None)
    return api_success(page)


@auth_blueprint.route('/api/admin/users', methods=['POST'])
@access_required('admin')
@storage_required
def create_user():
    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')
    role = str(data.get('role') or 'user')

    error = _validate_username(username)
    if error:
        return api_error(error, 400)
    if not password:
        return api_error('Password is required.', 400)
    if role not in ('user', 'admin'):
        return api_error('Role must be user or admin.', 400)
    if not _may_manage(role):
        return api_error('Only the site owner can create admins.', 403)

    storage = get_storage()
    if storage.check_user_exist(username):
        return api_error('User already exists.', 409)
    try:
        storage.create_user(
            username,
            password,
            role=role,
            tags=data.get('tags'),
            enabled_apis=data.get('enabledApis'),
        )
    except Exception as e:
        logger.error(f'Could not create user {username}: {e}')
        return api_error('Create failed.', 500)
    logger.info(f'User {current_user.username} created {role} {username}')
    return api_success({'username': username, 'role': role})


@auth_blueprint.route('/api/admin/users/<username>', methods=['PATCH'])
@access_required('admin')
@storage_required
def update_user(username):
    storage = get_storage()
    owner_name, _ = get_owner_credentials()
    if owner_name and username == owner_name:
        return api_error('The site owner cannot be modified.', 403)
    info = storage.get_user_info(username) if storage.has_user_record(username) else None
    if not info:
        return api_error('User not found.', 404)
    if not _may_manage(info.get('role')):
        return api_error('Forbidden', 403)

    data = request.get_json(silent=True) or {}
    role = data.get('role')
    if role is not None:
        if role not in ('user', 'admin'):
            return api_error('Role must be user or admin.', 400)
        if not current_user.is_owner:
            return api_error('Only the site owner can change roles.', 403)
    tags = data.get('tags')
    if tags is not None and not isinstance(tags, list):
        return api_error('tags must be a list.', 400)
    enabled_apis = data.get('enabledApis')
    if enabled_apis is not None and not isinstance(enabled_apis, list):
        return api_error('enabledApis must be a list.', 400)
    banned = data.get('banned')

    try:
        storage.update_user_info(
            username,
            role=role,
            banned=_coerce_bool(banned) if banned is not None else None,
            tags=tags,
            enabled_apis=enabled_apis,
        )
        if data.get('password'):
            storage.change_password(username, str(data['password']))
    except Exception as e:
        logger.error(f'Could not update user {username}: {e}')
        return api_error('Update failed.', 500)
    logger.info(f'User {current_user.username} updated {username}')
    return api_success({'user': storage.get_user_info(username)})


@auth_blueprint.route('/api/admin/users/<username>', methods=['DELETE'])
@access_required('admin')
@storage_required
def delete_user(username):
    storage = get_storage()
    owner_name, _ = get_owner_credentials()
    if owner_name and username == owner_name:
        return api_error('The site owner cannot be deleted.', 403)
    if not storage.has_user_record(username):
        return api_error('User not found.', 404)
    info = storage.get_user_info(username) or {}
    if not _may_manage(info.get('role')):
        return api_error('Forbidden', 403)

    try:
        storage.delete_user(username)
    except Exception as e:
        logger.error(f'Could not delete user {username}: {e}')
        return api_error('Delete failed.', 500)
    logger.info(f'User {current_user.username} deleted {username}')
    return api_success()


@auth_blueprint.route('/api/admin/auth/lockouts', methods=['GET'])
@access_required('admin')
def get_auth_lockouts():
    items = login_throttle.active_lockouts(LockoutPolicy.from_settings(load_settings()).window_s)
    return api_success({'items': items, 'count': len(items), 'timestamp': int(time.time())})


@auth_blueprint.route('/api/admin/auth/lockouts/unlock', methods=['POST'])
@access_required('admin')
def unlock_auth_lockout():
    data = request.get_json(silent=True) or {}
    ip = str(data.get('ip') or '').strip()
    if not ip:
        return api_error('Missing ip.', 400)
    removed = login_throttle.clear(ip)
    logger.info(f'Auth lockout unlock requested for {ip}: removed={removed}')
    return api_success({'ip': ip, 'removed': bool(removed)})
