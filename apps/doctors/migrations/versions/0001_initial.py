from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _schema():
    return os.getenv('DB_SCHEMA')


def _fk(schema, target):
    return f"{schema}.{target}" if schema else target


def upgrade() -> None:
    schema = _schema()
    op.create_table(
        'doctors',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='UTC'),
        sa.Column('video_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('chat_fee_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        schema=schema
    )
    op.create_table(
        'schedules',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('doctor_id', sa.Integer(), nullable=False, unique=True, index=True),
        sa.Column('custom_id', sa.String(length=16), nullable=False, unique=True),
        sa.Column('default_slot_duration', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('buffer_time', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('max_patients_per_slot', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['doctor_id'], [_fk(schema, 'doctors.id')]),
        schema=schema
    )
    op.create_table(
        'schedule_ranges',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('schedule_id', sa.Integer(), nullable=False, index=True),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_minute', sa.Integer(), nullable=False),
        sa.Column('end_minute', sa.Integer(), nullable=False),
        sa.Column('max_patients_per_slot', sa.Integer(), nullable=True),
        sa.Column('range_id', sa.String(length=16), nullable=False),
        sa.Column('label', sa.String(length=120), nullable=True),
        sa.CheckConstraint('start_minute < end_minute', name='ck_range_order'),
        sa.ForeignKeyConstraint(['schedule_id'], [_fk(schema, 'schedules.id')], ondelete='CASCADE'),
        schema=schema
    )
    op.create_table(
        'schedule_blocked_dates',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('schedule_id', sa.Integer(), nullable=False, index=True),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('slots', sa.JSON(), nullable=True),
        sa.UniqueConstraint('schedule_id', 'day', name='uq_blocked_day'),
        sa.ForeignKeyConstraint(['schedule_id'], [_fk(schema, 'schedules.id')], ondelete='CASCADE'),
        schema=schema
    )
    op.create_table(
        'appointments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('custom_id', sa.String(length=16), nullable=False, unique=True, index=True),
        sa.Column('doctor_id', sa.Integer(), nullable=False, index=True),
        sa.Column('patient_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('appointment_date', sa.Date(), nullable=False, index=True),
        sa.Column('appointment_time', sa.String(length=11), nullable=False),
        sa.Column('slot_id', sa.String(length=32), nullable=True),
        sa.Column('appointment_type', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', index=True),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending', index=True),
        sa.Column('checkout_lock_until', sa.DateTime(), nullable=True),
        sa.Column('razorpay_order_id', sa.String(length=64), nullable=True, index=True),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR'),
        sa.Column('consultation_fee_cents', sa.BigInteger(), nullable=False),
        sa.Column('doctor_earnings_cents', sa.BigInteger(), nullable=True),
        sa.Column('admin_commission_cents', sa.BigInteger(), nullable=True),
        sa.Column('refund_cents', sa.BigInteger(), nullable=True),
        sa.Column('reason', sa.String(length=500), nullable=True),
        sa.Column('reschedule_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('proposed_date', sa.Date(), nullable=True),
        sa.Column('proposed_time', sa.String(length=11), nullable=True),
        sa.Column('reschedule_reason', sa.String(length=500), nullable=True),
        sa.Column('rescheduled_from', sa.String(length=24), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=500), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=500), nullable=True),
        sa.Column('session_status', sa.String(length=24), nullable=True),
        sa.Column('session_start_time', sa.DateTime(), nullable=True),
        sa.Column('session_end_time', sa.DateTime(), nullable=True),
        sa.Column('doctor_notes', sa.String(length=4000), nullable=True),
        sa.Column('prescription_url', sa.String(length=500), nullable=True),
        sa.Column('post_consultation_chat_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('reschedule_count >= 0 AND reschedule_count <= 1', name='ck_reschedule_cap'),
        sa.ForeignKeyConstraint(['doctor_id'], [_fk(schema, 'doctors.id')]),
        schema=schema
    )
    op.create_index('ix_appt_slot', 'appointments', ['doctor_id', 'appointment_date', 'appointment_time'], schema=schema)
    op.create_index('ix_appt_patient_status', 'appointments', ['patient_id', 'status'], schema=schema)
    op.create_table(
        'wallets',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('owner_user_id', sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column('balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        schema=schema
    )
    op.create_table(
        'wallet_ledger_entries',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('owner_user_id', sa.String(length=64), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('related_appointment_id', sa.String(length=36), nullable=True, index=True),
        sa.Column('category', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('related_appointment_id', 'owner_user_id', 'category', name='uq_ledger_once'),
        sa.ForeignKeyConstraint(['related_appointment_id'], [_fk(schema, 'appointments.id')]),
        schema=schema
    )
    op.create_index('ix_ledger_owner_created', 'wallet_ledger_entries', ['owner_user_id', 'created_at'], schema=schema)
    op.create_table(
        'idempotency',
        sa.Column('key', sa.String(length=120), primary_key=True),
        sa.Column('patient_id', sa.String(length=64), nullable=True),
        sa.Column('ref_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        schema=schema
    )


def downgrade() -> None:
    schema = _schema()
    op.drop_table('idempotency', schema=schema)
    op.drop_index('ix_ledger_owner_created', table_name='wallet_ledger_entries', schema=schema)
    op.drop_table('wallet_ledger_entries', schema=schema)
    op.drop_table('wallets', schema=schema)
    op.drop_index('ix_appt_patient_status', table_name='appointments', schema=schema)
    op.drop_index('ix_appt_slot', table_name='appointments', schema=schema)
    op.drop_table('appointments', schema=schema)
    op.drop_table('schedule_blocked_dates', schema=schema)
    op.drop_table('schedule_ranges', schema=schema)
    op.drop_table('schedules', schema=schema)
    op.drop_table('doctors', schema=schema)
