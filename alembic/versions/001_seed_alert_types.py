"""seed_alert_types

Revision ID: 001
Revises: 000
Create Date: 2026-09-14 10:30:00.000000

Seeds the reference data required by the alert engine and the sync module:
- alert types: Emergency, Speed, Geofence, Cargo, Non-Report, Message
- cargo alert types: Door, Humidity, Temperature, Shock, Battery
- feature: Asset Syncing
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, Sequence[str], None] = '000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ALERT_TYPES = ['Emergency', 'Speed', 'Geofence', 'Cargo', 'Non-Report', 'Message']
CARGO_ALERT_TYPES = ['Door', 'Humidity', 'Temperature', 'Shock', 'Battery']


def upgrade() -> None:
    """Seed alert types, cargo alert types and the sync feature."""

    # Create table references
    alert_type_table = sa.table('alert_type', sa.column('type', sa.String))
    cargo_alert_type_table = sa.table('cargo_alert_type', sa.column('type', sa.String))
    feature_table = sa.table('feature', sa.column('title', sa.String))

    op.bulk_insert(alert_type_table, [{'type': name} for name in ALERT_TYPES])
    op.bulk_insert(cargo_alert_type_table, [{'type': name} for name in CARGO_ALERT_TYPES])
    op.bulk_insert(feature_table, [{'title': 'Asset Syncing'}])


def downgrade() -> None:
    """Remove seeded reference data."""

    op.execute("DELETE FROM feature WHERE title = 'Asset Syncing'")
    op.execute("""
        DELETE FROM cargo_alert_type
        WHERE type IN ('Door', 'Humidity', 'Temperature', 'Shock', 'Battery')
    """)
    op.execute("""
        DELETE FROM alert_type
        WHERE type IN ('Emergency', 'Speed', 'Geofence', 'Cargo', 'Non-Report', 'Message')
    """)
