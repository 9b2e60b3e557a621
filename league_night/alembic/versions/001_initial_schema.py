"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 12:00:00.000000

League night schema: read-side league tables, per-night state tables and
push subscriptions, including the partial unique indexes that enforce one
active check-in, one active partnership per player, one pending score per
match and one live match per court.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _partial_unique_index(name: str, table: str, columns, predicate: str) -> None:
    op.create_index(
        name,
        table,
        columns,
        unique=True,
        postgresql_where=sa.text(predicate),
        sqlite_where=sa.text(predicate),
    )


def upgrade() -> None:
    """Create all league night tables."""
    op.create_table(
        'profiles',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False, server_default=''),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('skill_level', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'leagues',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'league_days',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('league_id', sa.Integer(), sa.ForeignKey('leagues.id'), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('total_courts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('court_labels', sa.JSON(), nullable=True),
    )
    op.create_index('idx_league_days_league', 'league_days', ['league_id'])

    op.create_table(
        'league_members',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('league_id', sa.Integer(), sa.ForeignKey('leagues.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('league_id', 'user_id'),
    )
    op.create_index('idx_league_members_user', 'league_members', ['user_id'])

    op.create_table(
        'league_night_instances',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('league_id', sa.Integer(), sa.ForeignKey('leagues.id'), nullable=False),
        sa.Column('league_day_id', sa.Integer(), sa.ForeignKey('league_days.id'), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('courts_available', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('court_labels', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('auto_assignment_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('league_id', 'date', name='uq_league_night_instances_league_date'),
    )
    op.create_index('idx_league_night_instances_status', 'league_night_instances', ['status'])

    op.create_table(
        'league_night_checkins',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('league_night_instances.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('checked_in_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checked_out_at', sa.DateTime(timezone=True), nullable=True),
    )
    _partial_unique_index(
        'uq_checkins_active_instance_user', 'league_night_checkins',
        ['instance_id', 'user_id'], 'is_active = true',
    )
    op.create_index(
        'idx_checkins_instance_checked_in', 'league_night_checkins', ['instance_id', 'checked_in_at']
    )

    op.create_table(
        'partnership_requests',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('league_night_instances.id'), nullable=False),
        sa.Column('requester_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('requested_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('requester_id <> requested_id', name='ck_partnership_requests_distinct'),
    )
    _partial_unique_index(
        'uq_partnership_requests_pending_pair', 'partnership_requests',
        ['instance_id', 'requester_id', 'requested_id'], "status = 'pending'",
    )
    op.create_index(
        'idx_partnership_requests_instance_status', 'partnership_requests', ['instance_id', 'status']
    )

    op.create_table(
        'confirmed_partnerships',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('league_night_instances.id'), nullable=False),
        sa.Column('player1_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('player2_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('request_id', sa.Integer(), sa.ForeignKey('partnership_requests.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('dissolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('player1_id <> player2_id', name='ck_confirmed_partnerships_distinct'),
    )
    op.create_index(
        'idx_confirmed_partnerships_instance_active', 'confirmed_partnerships', ['instance_id', 'is_active']
    )

    op.create_table(
        'partnership_members',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('partnership_id', sa.Integer(), sa.ForeignKey('confirmed_partnerships.id'), nullable=False),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('league_night_instances.id'), nullable=False),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    _partial_unique_index(
        'uq_partnership_members_active_player', 'partnership_members',
        ['instance_id', 'player_id'], 'is_active = true',
    )

    op.create_table(
        'matches',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('instance_id', sa.Integer(), sa.ForeignKey('league_night_instances.id'), nullable=False),
        sa.Column('partnership1_id', sa.Integer(), sa.ForeignKey('confirmed_partnerships.id'), nullable=False),
        sa.Column('partnership2_id', sa.Integer(), sa.ForeignKey('confirmed_partnerships.id'), nullable=False),
        sa.Column('court_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('team1_player1_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('team1_player2_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('team2_player1_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('team2_player2_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('team1_score', sa.Integer(), nullable=True),
        sa.Column('team2_score', sa.Integer(), nullable=True),
        sa.Column('winner', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('partnership1_id <> partnership2_id', name='ck_matches_distinct_partnerships'),
    )
    _partial_unique_index(
        'uq_matches_live_court', 'matches',
        ['instance_id', 'court_number'], "status IN ('queued', 'in_progress')",
    )
    op.create_index('idx_matches_instance_status', 'matches', ['instance_id', 'status'])
    op.create_index('idx_matches_partnership1', 'matches', ['partnership1_id'])
    op.create_index('idx_matches_partnership2', 'matches', ['partnership2_id'])

    op.create_table(
        'match_scores',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('matches.id'), nullable=False),
        sa.Column('team1_score', sa.Integer(), nullable=False),
        sa.Column('team2_score', sa.Integer(), nullable=False),
        sa.Column('submitted_by_team', sa.Integer(), nullable=False),
        sa.Column('submitted_by_user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('responded_by_user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=True),
        sa.Column('dispute_reason', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('submitted_by_team IN (1, 2)', name='ck_match_scores_team'),
    )
    _partial_unique_index(
        'uq_match_scores_pending_match', 'match_scores', ['match_id'], "status = 'pending'",
    )

    op.create_table(
        'player_league_stats',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('league_id', sa.Integer(), sa.ForeignKey('leagues.id'), nullable=False),
        sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('games_won', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('games_lost', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('average_points', sa.Float(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'league_id'),
    )
    op.create_index('idx_player_league_stats_league', 'player_league_stats', ['league_id'])

    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('p256dh_key', sa.String(), nullable=False),
        sa.Column('auth_key', sa.String(), nullable=False),
        sa.Column('device_info', sa.JSON(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'endpoint', name='uq_push_subscriptions_user_endpoint'),
    )
    op.create_index('idx_push_subscriptions_user_active', 'push_subscriptions', ['user_id', 'is_active'])


def downgrade() -> None:
    """Drop all league night tables."""
    for table in (
        'push_subscriptions',
        'player_league_stats',
        'match_scores',
        'matches',
        'partnership_members',
        'confirmed_partnerships',
        'partnership_requests',
        'league_night_checkins',
        'league_night_instances',
        'league_members',
        'league_days',
        'leagues',
        'profiles',
    ):
        op.drop_table(table)
