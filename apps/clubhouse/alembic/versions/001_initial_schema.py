"""001_initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Creates the registration and payment schema:
- accounts: parents
- registrations: players, teams, registrations
- payments: payment_configurations, payments
- mail: email_templates
- unique indexes backing duplicate-registration checks
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create all tables."""
    jsonb = postgresql.JSONB(astext_type=sa.Text())

    op.create_table(
        'parents',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('address', jsonb, nullable=True),
        sa.Column('relationship', sa.String(), nullable=True),
        sa.Column('is_coach', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('aau_number', sa.String(), nullable=True),
        sa.Column('role', sa.String(), nullable=False, server_default='user'),
        sa.Column('register_method', sa.String(), nullable=False, server_default='self'),
        sa.Column('email_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('email_verification_token', sa.String(), nullable=True),
        sa.Column('email_verification_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reset_password_token', sa.String(), nullable=True),
        sa.Column('reset_password_expires', sa.DateTime(timezone=True), nullable=True),
        sa.Column('additional_guardians', jsonb, nullable=False, server_default='[]'),
        sa.Column('communication_preferences', jsonb, nullable=False, server_default='{}'),
        sa.Column('square_customer_id', sa.String(), nullable=True),
        sa.Column('clover_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('paypal_customer_id', sa.String(), nullable=True),
        sa.Column('registration_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('avatar', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_parents_role', 'parents', ['role'])

    op.create_table(
        'players',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('gender', sa.String(), nullable=False),
        sa.Column('dob', sa.Date(), nullable=False),
        sa.Column('school_name', sa.String(), nullable=True),
        sa.Column('grade', sa.String(), nullable=True),
        sa.Column('health_concerns', sa.Text(), nullable=True),
        sa.Column('aau_number', sa.String(), nullable=True),
        sa.Column('season', sa.String(), nullable=True),
        sa.Column('registration_year', sa.Integer(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('registration_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('seasons', jsonb, nullable=False, server_default='[]'),
        sa.Column('avatar', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_players_parent', 'players', ['parent_id'])
    op.execute(
        "CREATE UNIQUE INDEX uq_players_parent_identity "
        "ON players (parent_id, lower(full_name), dob, gender)"
    )

    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('grade', sa.String(), nullable=False),
        sa.Column('sex', sa.String(), nullable=False),
        sa.Column('level_of_competition', sa.String(), nullable=False, server_default='Silver'),
        sa.Column('registration_year', sa.Integer(), nullable=True),
        sa.Column('tournament', sa.String(), nullable=True),
        sa.Column('coach_ids', jsonb, nullable=False, server_default='[]'),
        sa.Column('tournaments', jsonb, nullable=False, server_default='[]'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('idx_teams_name_grade_sex', 'teams', ['name', 'grade', 'sex'])

    op.create_table(
        'payment_configurations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_system', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('square_config', jsonb, nullable=False, server_default='{}'),
        sa.Column('clover_config', jsonb, nullable=False, server_default='{}'),
        sa.Column('stripe_config', jsonb, nullable=False, server_default='{}'),
        sa.Column('paypal_config', jsonb, nullable=False, server_default='{}'),
        sa.Column('settings', jsonb, nullable=False, server_default='{}'),
        sa.Column('webhook_urls', jsonb, nullable=False, server_default='{}'),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('parents.id'), nullable=True),
        sa.Column('last_modified_by', sa.Integer(), sa.ForeignKey('parents.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        'idx_payment_configurations_active', 'payment_configurations', ['payment_system', 'is_active']
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('player_ids', jsonb, nullable=False, server_default='[]'),
        sa.Column('team_ids', jsonb, nullable=False, server_default='[]'),
        sa.Column('payment_id', sa.String(), nullable=False, unique=True),
        sa.Column('payment_system', sa.String(), nullable=False),
        sa.Column(
            'configuration_id', sa.Integer(), sa.ForeignKey('payment_configurations.id'), nullable=True
        ),
        sa.Column('order_id', sa.String(), nullable=True),
        sa.Column('location_id', sa.String(), nullable=True),
        sa.Column('merchant_id', sa.String(), nullable=True),
        sa.Column('buyer_email', sa.String(), nullable=False),
        sa.Column('card_last_four', sa.String(4), nullable=True),
        sa.Column('card_brand', sa.String(), nullable=True),
        sa.Column('card_exp_month', sa.Integer(), nullable=True),
        sa.Column('card_exp_year', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(), nullable=False, server_default='completed'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('receipt_url', sa.String(), nullable=True),
        sa.Column('payment_type', sa.String(), nullable=False, server_default='general'),
        sa.Column('note', sa.String(), nullable=True),
        sa.Column('players', jsonb, nullable=False, server_default='[]'),
        sa.Column('tournament_name', sa.String(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('metadata', jsonb, nullable=False, server_default='{}'),
        sa.Column('refunds', jsonb, nullable=False, server_default='[]'),
        sa.Column('refunded_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('refund_status', sa.String(), nullable=False, server_default='none'),
        *_timestamps(),
    )
    op.create_index('idx_payments_parent', 'payments', ['parent_id'])
    op.create_index('idx_payments_system', 'payments', ['payment_system'])

    op.create_table(
        'registrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('players.id'), nullable=True),
        sa.Column('parent_id', sa.Integer(), sa.ForeignKey('parents.id'), nullable=False),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id'), nullable=True),
        sa.Column('season', sa.String(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('tryout_id', sa.String(), nullable=True),
        sa.Column('tournament', sa.String(), nullable=True),
        sa.Column('level_of_competition', sa.String(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_id', sa.String(), nullable=True),
        sa.Column('payment_record_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('amount_paid', sa.Numeric(10, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_brand', sa.String(), nullable=True),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('registration_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('idx_registrations_parent', 'registrations', ['parent_id'])
    op.create_index('idx_registrations_player', 'registrations', ['player_id'])
    op.create_index('idx_registrations_team', 'registrations', ['team_id'])
    op.execute(
        "CREATE UNIQUE INDEX uq_registrations_player_program "
        "ON registrations (player_id, lower(season), year, coalesce(tryout_id, ''), parent_id) "
        "WHERE player_id IS NOT NULL"
    )
    op.execute(
        "CREATE UNIQUE INDEX uq_registrations_team_tournament "
        "ON registrations (parent_id, team_id, tournament, year) "
        "WHERE team_id IS NOT NULL"
    )

    op.create_table(
        'email_templates',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('title', sa.String(), nullable=False, unique=True),
        sa.Column('subject', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('include_signature', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('signature_config', jsonb, nullable=False, server_default='{}'),
        sa.Column('category', sa.String(), nullable=False, server_default='system'),
        sa.Column('attachments', jsonb, nullable=False, server_default='[]'),
        *_timestamps(),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('email_templates')
    op.drop_table('registrations')
    op.drop_table('payments')
    op.drop_table('payment_configurations')
    op.drop_table('teams')
    op.drop_table('players')
    op.drop_table('parents')
