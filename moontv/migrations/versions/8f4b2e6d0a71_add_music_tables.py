"""Add music play records and playlists

Revision ID: 8f4b2e6d0a71
Revises: 3e8d1c5a9b20

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8f4b2e6d0a71'
down_revision = '3e8d1c5a9b20'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'music_play_records',
        sa.Column(
            'username',
            sa.String(length=100),
            sa.ForeignKey('users.username', ondelete='CASCADE'),
            primary_key=True,
        ),
        sa.Column('key', sa.String(), primary_key=True),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('song_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('artist', sa.String(), nullable=False),
        sa.Column('album', sa.String(), nullable=True),
        sa.Column('pic', sa.String(), nullable=True),
        sa.Column('play_time', sa.Float(), nullable=False, server_default='0'),
        sa.Column('duration', sa.Float(), nullable=False, server_default='0'),
        sa.Column('save_time', sa.BigInteger(), nullable=False),
        sa.CheckConstraint("platform IN ('netease', 'qq', 'kuwo')", name='ck_music_play_records_platform'),
    )
    op.create_index(
        'idx_music_play_records_username_save_time',
        'music_play_records',
        ['username', 'save_time'],
    )

    op.create_table(
        'music_playlists',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column(
            'username',
            sa.String(length=100),
            sa.ForeignKey('users.username', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('cover', sa.String(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
    )
    op.create_index(
        'idx_music_playlists_username_created_at',
        'music_playlists',
        ['username', 'created_at'],
    )

    op.create_table(
        'music_playlist_songs',
        sa.Column(
            'playlist_id',
            sa.String(),
            sa.ForeignKey('music_playlists.id', ondelete='CASCADE'),
            primary_key=True,
        ),
        sa.Column('platform', sa.String(length=16), primary_key=True),
        sa.Column('song_id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('artist', sa.String(), nullable=False),
        sa.Column('album', sa.String(), nullable=True),
        sa.Column('pic', sa.String(), nullable=True),
        sa.Column('duration', sa.Float(), nullable=False, server_default='0'),
        sa.Column('added_at', sa.BigInteger(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint("platform IN ('netease', 'qq', 'kuwo')", name='ck_music_playlist_songs_platform'),
    )
    op.create_index(
        'idx_music_playlist_songs_playlist_sort',
        'music_playlist_songs',
        ['playlist_id', 'sort_order'],
    )


def downgrade():
    op.drop_index('idx_music_playlist_songs_playlist_sort', table_name='music_playlist_songs')
    op.drop_table('music_playlist_songs')
    op.drop_index('idx_music_playlists_username_created_at', table_name='music_playlists')
    op.drop_table('music_playlists')
    op.drop_index('idx_music_play_records_username_save_time', table_name='music_play_records')
    op.drop_table('music_play_records')
