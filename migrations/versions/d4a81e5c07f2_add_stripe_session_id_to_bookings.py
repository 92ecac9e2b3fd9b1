"""add stripe_session_id to bookings

Revision ID: d4a81e5c07f2
Revises: 6c1f0a9d2b37
Create Date: 2026-10-06 14:31:09.552710

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'd4a81e5c07f2'
down_revision = '6c1f0a9d2b37'
branch_labels = None
depends_on = None


def upgrade():
    # --- Checkout session id as a real column (notes token kept for old rows) ---
    op.add_column('bookings', sa.Column('stripe_session_id', sa.String(length=255), nullable=True))
    op.create_index('ix_bookings_stripe_session_id', 'bookings', ['stripe_session_id'], unique=False)

    # Backfill from the `stripe_session:<id>` token where the database can do it
    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        op.execute(
            "UPDATE bookings "
            "SET stripe_session_id = substring(notes from 'stripe_session:([^[:space:]]+)') "
            "WHERE stripe_session_id IS NULL AND notes LIKE '%stripe_session:%'"
        )


def downgrade():
    op.drop_index('ix_bookings_stripe_session_id', table_name='bookings')
    op.drop_column('bookings', 'stripe_session_id')
