"""Initial schema: users and per-user media data

Revision ID: 3e8d1c5a9b20
Revises:

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3e8d1c5a9b20'
down_revision = None
branch_labels = None
depends_on = None


def _user_fk():
    return sa.ForeignKey('users.username', ondelete='CASCADE')


def upgrade():
    op.create_table(
        'users',
        sa.Column('username', sa.String(length=100), primary_key=True),
        sa.Column('password_hash', sa.String(), nullable=False, server_default=''),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='user'),
        sa.Column('banned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('oidc_sub', sa.String(), nullable=True, unique=True),
        sa.Column('enabled_apis', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('playrecord_migrated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('favorite_migrated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('skip_migrated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_movie_request_time', sa.BigInteger(), nullable=True, server_default='0'),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('email_notifications', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("role IN ('owner', 'admin', 'user')", name='ck_users_role'),
    )
    op.create_index('idx_users_role', 'users', ['role'])
    op.create_index('idx_users_created_at', 'users', ['created_at'])

    op.create_table(
        'play_records',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('source_name', sa.String(), nullable=False),
        sa.Column('cover', sa.String(), nullable=True),
        sa.Column('year', sa.String(), nullable=True),
        sa.Column('episode_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_episodes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('play_time', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_time', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('save_time', sa.BigInteger(), nullable=False),
        sa.Column('search_title', sa.String(), nullable=True),
    )
    op.create_index('idx_play_records_username_save_time', 'play_records', ['username', 'save_time'])
    op.create_index('idx_play_records_username_source', 'play_records', ['username', 'source_name'])

    op.create_table(
        'favorites',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('source_name', sa.String(), nullable=False),
        sa.Column('total_episodes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('year', sa.String(), nullable=True),
        sa.Column('cover', sa.String(), nullable=True),
        sa.Column('save_time', sa.BigInteger(), nullable=False),
        sa.Column('search_title', sa.String(), nullable=True),
        sa.Column('origin', sa.String(length=8), nullable=True),
        sa.Column('is_completed', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('vod_remarks', sa.String(), nullable=True),
        sa.CheckConstraint("origin IS NULL OR origin IN ('vod', 'live')", name='ck_favorites_origin'),
    )
    op.create_index('idx_favorites_username_save_time', 'favorites', ['username', 'save_time'])
    op.create_index('idx_favorites_username_source', 'favorites', ['username', 'source_name'])

    op.create_table(
        'search_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('username', sa.String(length=100), _user_fk(), nullable=False),
        sa.Column('keyword', sa.String(), nullable=False),
        sa.Column('timestamp', sa.BigInteger(), nullable=False),
        sa.UniqueConstraint('username', 'keyword', name='uq_search_history_username_keyword'),
    )
    op.create_index('idx_search_history_username_timestamp', 'search_history', ['username', 'timestamp'])

    op.create_table(
        'skip_configs',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('enable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('intro_time', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outro_time', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'danmaku_filter_configs',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column('rules', sa.JSON(), nullable=False),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('username', sa.String(length=100), _user_fk(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.String(), nullable=False),
        sa.Column('timestamp', sa.BigInteger(), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.CheckConstraint(
            "type IN ('favorite_update', 'system', 'announcement', 'movie_request', 'request_fulfilled')",
            name='ck_notifications_type',
        ),
    )
    op.create_index('idx_notifications_username_timestamp', 'notifications', ['username', 'timestamp'])
    op.create_index('idx_notifications_username_read', 'notifications', ['username', 'read'])

    op.create_table(
        'movie_requests',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('tmdb_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('year', sa.String(), nullable=True),
        sa.Column('media_type', sa.String(length=8), nullable=False),
        sa.Column('season', sa.Integer(), nullable=True),
        sa.Column('poster', sa.String(), nullable=True),
        sa.Column('overview', sa.String(), nullable=True),
        sa.Column('requested_by', sa.JSON(), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
        sa.Column('fulfilled_at', sa.BigInteger(), nullable=True),
        sa.Column('fulfilled_source', sa.String(), nullable=True),
        sa.Column('fulfilled_id', sa.String(), nullable=True),
        sa.CheckConstraint("media_type IN ('movie', 'tv')", name='ck_movie_requests_media_type'),
        sa.CheckConstraint("status IN ('pending', 'fulfilled')", name='ck_movie_requests_status'),
    )
    op.create_index('idx_movie_requests_status', 'movie_requests', ['status'])
    op.create_index('idx_movie_requests_created_at', 'movie_requests', ['created_at'])
    op.create_index('idx_movie_requests_tmdb_id', 'movie_requests', ['tmdb_id'])

    op.create_table(
        'user_movie_requests',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column(
            'request_id',
            sa.String(),
            sa.ForeignKey('movie_requests.id', ondelete='CASCADE'),
            primary_key=True,
        ),
    )

    op.create_table(
        'global_config',
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=True),
    )

    op.create_table(
        'admin_config',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=True),
        sa.CheckConstraint('id = 1', name='ck_admin_config_singleton'),
    )

    op.create_table(
        'favorite_check_times',
        sa.Column('username', sa.String(length=100), _user_fk(), primary_key=True),
        sa.Column('last_check_time', sa.BigInteger(), nullable=False),
    )


def downgrade():
    op.drop_table('favorite_check_times')
    op.drop_table('admin_config')
    op.drop_table('global_config')
    op.drop_table('user_movie_requests')
    op.drop_index('idx_movie_requests_tmdb_id', table_name='movie_requests')
    op.drop_index('idx_movie_requests_created_at', table_name='movie_requests')
    op.drop_index('idx_movie_requests_status', table_name='movie_requests')
    op.drop_table('movie_requests')
    op.drop_index('idx_notifications_username_read', table_name='notifications')
    op.drop_index('idx_notifications_username_timestamp', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('danmaku_filter_configs')
    op.drop_table('skip_configs')
    op.drop_index('idx_search_history_username_timestamp', table_name='search_history')
    op.drop_table('search_history')
    op.drop_index('idx_favorites_username_source', table_name='favorites')
    op.drop_index('idx_favorites_username_save_time', table_name='favorites')
    op.drop_table('favorites')
    op.drop_index('idx_play_records_username_source', table_name='play_records')
    op.drop_index('idx_play_records_username_save_time', table_name='play_records')
    op.drop_table('play_records')
    op.drop_index('idx_users_created_at', table_name='users')
    op.drop_index('idx_users_role', table_name='users')
    op.drop_table('users')
