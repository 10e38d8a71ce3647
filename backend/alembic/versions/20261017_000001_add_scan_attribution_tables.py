"""Add scan attribution tables (listings, qrcodes, scan_sessions, analytics, leads, page_view_events).

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000

WHAT:
    Creates the scan attribution schema:
    - listings / qrcodes: listing surface the scan routes resolve against
    - scan_sessions: one row per (listing, correlation token)
    - analytics: daily counters per (listing, local date)
    - leads: contact-form leads with correlated scan_timestamp
    - page_view_events: append-only page-view log

WHY:
    The two unique constraints are the conflict targets of the upsert
    engine; without them concurrent handlers duplicate sessions and days.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Listing surface
    # =========================================================================
    op.create_table(
        'listings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('slug', sa.String(), nullable=True, unique=True),
        sa.Column('address', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )

    op.create_table(
        'qrcodes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('listing_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('scan_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('redirect_url', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
    )
    op.create_index('ix_qrcodes_listing_id', 'qrcodes', ['listing_id'])

    # =========================================================================
    # STEP 2: scan_sessions
    # =========================================================================
    # WHAT: One row per visitor browser per listing
    # WHY: uq_scan_session_token lets concurrent scan/page-view handlers converge
    op.create_table(
        'scan_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('listing_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('session_token', sa.String(128), nullable=False),
        # qr | direct | microsite | NULL; qr is sticky
        sa.Column('source', sa.String(16), nullable=True),
        sa.Column('scan_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('device_type', sa.String(16), nullable=False, server_default='unknown'),
        sa.Column('time_of_day', sa.Integer(), nullable=True),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('listing_id', 'session_token', name='uq_scan_session_token'),
        sa.CheckConstraint('scan_count >= 0', name='ck_scan_sessions_scan_count_non_negative'),
    )
    # Unique visitors per day and the QR fallback lookup filter on this pair
    op.create_index(
        'ix_scan_sessions_listing_first_seen',
        'scan_sessions',
        ['listing_id', 'first_seen_at'],
    )

    # =========================================================================
    # STEP 3: analytics (daily counters)
    # =========================================================================
    op.create_table(
        'analytics',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('listing_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_scans', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_leads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_visitors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('page_views', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()')),
        sa.UniqueConstraint('listing_id', 'date', name='uq_analytics_listing_date'),
    )

    # =========================================================================
    # STEP 4: leads
    # =========================================================================
    op.create_table(
        'leads',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('listing_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('source', sa.String(16), nullable=False, server_default='qr_scan'),
        sa.Column('scan_timestamp', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_leads_listing_created', 'leads', ['listing_id', 'created_at'])

    # =========================================================================
    # STEP 5: page_view_events (append-only)
    # =========================================================================
    # WHAT: One row per accepted page-view beacon
    # WHY: Lets the repair job rebuild analytics.page_views instead of flooring it
    op.create_table(
        'page_view_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('listing_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('session_token', sa.String(128), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('device_type', sa.String(16), nullable=False, server_default='unknown'),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_page_view_events_listing_occurred',
        'page_view_events',
        ['listing_id', 'occurred_at'],
    )


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_index('ix_page_view_events_listing_occurred', table_name='page_view_events')
    op.drop_table('page_view_events')
    op.drop_index('ix_leads_listing_created', table_name='leads')
    op.drop_table('leads')
    op.drop_table('analytics')
    op.drop_index('ix_scan_sessions_listing_first_seen', table_name='scan_sessions')
    op.drop_table('scan_sessions')
    op.drop_index('ix_qrcodes_listing_id', table_name='qrcodes')
    op.drop_table('qrcodes')
    op.drop_table('listings')
