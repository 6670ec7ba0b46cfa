"""Initial fleet sync and alert schema

Revision ID: 000
Revises:
Create Date: 2026-09-14 10:00:00.000000

Creates the fleet entities (clients, devices, groups, users, geofences, POIs),
the three sync ledger tiers with device sync info and the MH command queue,
and the alert tables with their type specific managers.
For new installations, run: alembic upgrade head
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '000'
down_revision = None
branch_labels = None
depends_on = None


LEDGER_TABLES = ('sync_pending', 'sync_backup', 'sync_history')
ENTITY_COLUMNS = ('geofences', 'pois', 'users', 'groups', 'devices')


def upgrade():
    """Create complete initial database schema"""

    # ===========================
    # Clients & features
    # ===========================
    op.create_table(
        'client',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('comm_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_client_comm_id', 'client', ['comm_id'])

    op.create_table(
        'feature',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=100), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('title')
    )

    op.create_table(
        'client_feature',
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('feature_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('client_id', 'feature_id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['feature_id'], ['feature.id'], ondelete='CASCADE')
    )

    # ===========================
    # Devices, groups, users
    # ===========================
    op.create_table(
        'device',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('comm_id', sa.Integer(), nullable=True),
        sa.Column('device_type', sa.String(length=50), nullable=False, server_default='Whisper'),
        sa.Column('mode', sa.String(length=50), nullable=True),
        sa.Column('min_speed', sa.Float(), nullable=True),
        sa.Column('max_speed', sa.Float(), nullable=True),
        sa.Column('non_report_threshold', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE')
    )
    op.create_index('ix_device_client_id', 'device', ['client_id'])
    op.create_index('ix_device_comm_id', 'device', ['comm_id'], unique=True)

    op.create_table(
        'device_group',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('comm_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE')
    )
    op.create_index('ix_device_group_client_id', 'device_group', ['client_id'])
    op.create_index('ix_device_group_comm_id', 'device_group', ['comm_id'])

    op.create_table(
        'platform_user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone_number', sa.String(length=50), nullable=True),
        sa.Column('role', sa.String(length=50), nullable=False, server_default='Operator'),
        sa.Column('comm_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE')
    )
    op.create_index('ix_platform_user_client_id', 'platform_user', ['client_id'])
    op.create_index('ix_platform_user_comm_id', 'platform_user', ['comm_id'])

    op.create_table(
        'group_device',
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('group_id', 'device_id'),
        sa.ForeignKeyConstraint(['group_id'], ['device_group.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['device_id'], ['device.id'], ondelete='CASCADE')
    )

    op.create_table(
        'group_user',
        sa.Column('group_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('group_id', 'user_id'),
        sa.ForeignKeyConstraint(['group_id'], ['device_group.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['platform_user.id'], ondelete='CASCADE')
    )

    # ===========================
    # Geofences & POIs
    # ===========================
    op.create_table(
        'geofence',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('note', sa.String(), nullable=True),
        sa.Column('shape', sa.Enum('POLYGON', 'BOX', 'RECTANGLE', 'PATH', 'CIRCLE', name='geofenceshape'), nullable=False),
        sa.Column('width', sa.Float(), nullable=True),
        sa.Column('coordinates', sa.JSON(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('inclusive', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('approved', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('min_speed', sa.Float(), nullable=True),
        sa.Column('max_speed', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE')
    )
    op.create_index('ix_geofence_client_id', 'geofence', ['client_id'])

    op.create_table(
        'geofence_trigger',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('geofence_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=True),
        sa.Column('group_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['geofence_id'], ['geofence.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['device_id'], ['device.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['group_id'], ['device_group.id'], ondelete='CASCADE')
    )
    op.create_index('ix_geofence_trigger_geofence_id', 'geofence_trigger', ['geofence_id'])
    op.create_index('ix_geofence_trigger_device_id', 'geofence_trigger', ['device_id'])
    op.create_index('ix_geofence_trigger_group_id', 'geofence_trigger', ['group_id'])

    op.create_table(
        'poi',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('note', sa.String(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('image_id', sa.Integer(), nullable=True),
        sa.Column('nato_code', sa.String(length=20), nullable=True),
        sa.Column('approved', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('creator_device_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['creator_device_id'], ['device.id'], ondelete='SET NULL')
    )
    op.create_index('ix_poi_client_id', 'poi', ['client_id'])

    op.create_table(
        'sync_assignment',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.Enum('GEOFENCE', 'POI', 'USER', 'GROUP', 'DEVICE', name='syncentitytype'), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['device_id'], ['device.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('entity_type', 'entity_id', 'device_id', name='uq_sync_assignment')
    )
    op.create_index('ix_sync_assignment_entity_type', 'sync_assignment', ['entity_type'])
    op.create_index('ix_sync_assignment_entity_id', 'sync_assignment', ['entity_id'])
    op.create_index('ix_sync_assignment_device_id', 'sync_assignment', ['device_id'])

    op.create_table(
        'report',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('heading', sa.Float(), nullable=True),
        sa.Column('panic', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('report_timestamp', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['device_id'], ['device.id'], ondelete='CASCADE')
    )
    op.create_index('ix_report_device_id', 'report', ['device_id'])
    op.create_index('ix_report_report_timestamp', 'report', ['report_timestamp'])

    # ===========================
    # Sync ledger
    # ===========================
    for table_name in LEDGER_TABLES:
        op.create_table(
            table_name,
            sa.Column('device_id', sa.Integer(), nullable=False),
            sa.Column('client_id', sa.Integer(), nullable=True),
            sa.Column('watermark', sa.BigInteger(), nullable=False, server_default='0'),
            *[sa.Column(column, sa.JSON(), nullable=True) for column in ENTITY_COLUMNS],
            sa.PrimaryKeyConstraint('device_id')
        )
        op.create_index(f'ix_{table_name}_client_id', table_name, ['client_id'])

    op.create_table(
        'device_sync_info',
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.Column('watermark', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('ring_sent', sa.BigInteger(), nullable=True),
        sa.Column('sync_received', sa.BigInteger(), nullable=True),
        sa.Column('ack_received', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('device_id')
    )

    op.create_table(
        'mh_command_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('path', sa.String(length=255), nullable=False),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('options', sa.Text(), nullable=True),
        sa.Column('data', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # ===========================
    # Alerts
    # ===========================
    op.create_table(
        'alert_type',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('type')
    )

    op.create_table(
        'cargo_alert_type',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('type')
    )

    op.create_table(
        'alert',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('alert_type_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.Column('start_timestamp', sa.BigInteger(), nullable=False),
        sa.Column('end_timestamp', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['alert_type_id'], ['alert_type.id'])
    )
    op.create_index('ix_alert_alert_type_id', 'alert', ['alert_type_id'])
    op.create_index('ix_alert_device_id', 'alert', ['device_id'])
    op.create_index('ix_alert_end_timestamp', 'alert', ['end_timestamp'])

    op.create_table(
        'emergency_alert_manager',
        sa.Column('alert_id', sa.Integer(), nullable=False),
        sa.Column('is_reset', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('reset_user_id', sa.Integer(), nullable=True),
        sa.Column('start_report_id', sa.Integer(), nullable=True),
        sa.Column('end_report_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('alert_id'),
        sa.ForeignKeyConstraint(['alert_id'], ['alert.id'], ondelete='CASCADE')
    )

    op.create_table(
        'speed_alert_manager',
        sa.Column('alert_id', sa.Integer(), nullable=False),
        sa.Column('geofence_id', sa.Integer(), nullable=True),
        sa.Column('geofence_title', sa.String(length=200), nullable=True),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('min_speed', sa.Float(), nullable=True),
        sa.Column('max_speed', sa.Float(), nullable=True),
        sa.Column('start_report_id', sa.Integer(), nullable=True),
        sa.Column('end_report_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('alert_id'),
        sa.ForeignKeyConstraint(['alert_id'], ['alert.id'], ondelete='CASCADE')
    )
    op.create_index('ix_speed_alert_manager_geofence_id', 'speed_alert_manager', ['geofence_id'])

    op.create_table(
        'geofence_alert_manager',
        sa.Column('alert_id', sa.Integer(), nullable=False),
        sa.Column('geofence_id', sa.Integer(), nullable=False),
        sa.Column('geofence_title', sa.String(length=200), nullable=True),
        sa.Column('geofence_inclusive', sa.Boolean(), nullable=True),
        sa.Column('start_report_id', sa.Integer(), nullable=True),
        sa.Column('end_report_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('alert_id'),
        sa.ForeignKeyConstraint(['alert_id'], ['alert.id'], ondelete='CASCADE')
    )
    op.create_index('ix_geofence_alert_manager_geofence_id', 'geofence_alert_manager', ['geofence_id'])

    op.create_table(
        'cargo_alert_manager',
        sa.Column('alert_id', sa.Integer(), nullable=False),
        sa.Column('cargo_alert_type_id', sa.Integer(), nullable=False),
        sa.Column('cargo_alert_type_title', sa.String(length=50), nullable=True),
        sa.Column('cargo_alert_value', sa.String(length=50), nullable=True),
        sa.Column('start_status_id', sa.Integer(), nullable=True),
        sa.Column('end_status_id', sa.Integer(), nullable=True),
        sa.Column('start_report_id', sa.Integer(), nullable=True),
        sa.Column('end_report_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('alert_id'),
        sa.ForeignKeyConstraint(['alert_id'], ['alert.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['cargo_alert_type_id'], ['cargo_alert_type.id'])
    )
    op.create_index('ix_cargo_alert_manager_cargo_alert_type_id', 'cargo_alert_manager', ['cargo_alert_type_id'])

    op.create_table(
        'non_report_alert_manager',
        sa.Column('alert_id', sa.Integer(), nullable=False),
        sa.Column('start_report_id', sa.Integer(), nullable=True),
        sa.Column('end_report_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('alert_id'),
        sa.ForeignKeyConstraint(['alert_id'], ['alert.id'], ondelete='CASCADE')
    )

    op.create_table(
        'alert_rule',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('alert_types', sa.JSON(), nullable=True),
        sa.Column('member_device_ids', sa.JSON(), nullable=True),
        sa.Column('member_group_ids', sa.JSON(), nullable=True),
        sa.Column('subscriber_device_ids', sa.JSON(), nullable=True),
        sa.Column('subscriber_group_ids', sa.JSON(), nullable=True),
        sa.Column('subscriber_users', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['client_id'], ['client.id'], ondelete='CASCADE')
    )
    op.create_index('ix_alert_rule_client_id', 'alert_rule', ['client_id'])


def downgrade():
    """Drop all tables"""
    op.drop_table('alert_rule')
    op.drop_table('non_report_alert_manager')
    op.drop_table('cargo_alert_manager')
    op.drop_table('geofence_alert_manager')
    op.drop_table('speed_alert_manager')
    op.drop_table('emergency_alert_manager')
    op.drop_table('alert')
    op.drop_table('cargo_alert_type')
    op.drop_table('alert_type')

    op.drop_table('mh_command_queue')
    op.drop_table('device_sync_info')
    for table_name in reversed(LEDGER_TABLES):
        op.drop_table(table_name)

    op.drop_table('report')
    op.drop_table('sync_assignment')
    op.drop_table('poi')
    op.drop_table('geofence_trigger')
    op.drop_table('geofence')
    op.drop_table('group_user')
    op.drop_table('group_device')
    op.drop_table('platform_user')
    op.drop_table('device_group')
    op.drop_table('device')
    op.drop_table('client_feature')
    op.drop_table('feature')
    op.drop_table('client')

    op.execute("DROP TYPE IF EXISTS syncentitytype")
    op.execute("DROP TYPE IF EXISTS geofenceshape")
