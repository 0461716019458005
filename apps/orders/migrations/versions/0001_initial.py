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


def _now():
    # CURRENT_TIMESTAMP works on both SQLite and Postgres; NOW() does not.
    return sa.text('CURRENT_TIMESTAMP')


def upgrade() -> None:
    schema = _schema()
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(length=255), nullable=True, unique=True),
        sa.Column('full_name', sa.String(length=200), nullable=True),
        sa.Column('username', sa.String(length=100), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('loyalty_points', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('is_guest', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        schema=schema
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('order_number', sa.String(length=64), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=200), nullable=True),
        sa.Column('table_number', sa.Integer(), nullable=True),
        sa.Column('items_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('total_price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('order_type', sa.String(length=32), nullable=False, server_default='dine_in'),
        sa.Column('queue_position', sa.Integer(), nullable=True),
        sa.Column('business_day', sa.String(length=10), nullable=True),
        sa.Column('qr_code', sa.Text(), nullable=True),
        sa.Column('receipt_path', sa.String(length=400), nullable=True),
        sa.Column('staff_id', sa.Integer(), nullable=True),
        sa.Column('order_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('estimated_ready_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_index('ix_orders_business_day', 'orders', ['business_day'], schema=schema)
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('transaction_id', sa.String(length=128), nullable=False, unique=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='completed'),
        sa.Column('staff_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        schema=schema
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'], schema=schema)
    op.create_table(
        'loyalty_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('points_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('points_redeemed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transaction_type', sa.String(length=16), nullable=False, server_default='earn'),
        sa.Column('reason', sa.String(length=16), nullable=False, server_default='order'),
        sa.Column('description', sa.String(length=400), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        schema=schema
    )
    op.create_index('ix_loyalty_transactions_customer_id', 'loyalty_transactions', ['customer_id'], schema=schema)
    op.create_table(
        'ingredients',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('actual_quantity', sa.Float(), nullable=False, server_default='0'),
        sa.Column('actual_unit', sa.String(length=32), nullable=False, server_default='g'),
        sa.Column('low_stock_threshold', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_table(
        'menu_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.String(length=400), nullable=True),
        sa.Column('category', sa.String(length=80), nullable=True),
        sa.Column('price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('visible_in_customer_menu', sa.Boolean(), nullable=False, server_default=sa.true()),
        schema=schema
    )
    op.create_table(
        'menu_item_ingredients',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('menu_item_id', sa.Integer(), nullable=False),
        sa.Column('ingredient_id', sa.Integer(), nullable=False),
        sa.Column('required_display_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('recipe_unit', sa.String(length=32), nullable=False, server_default='g'),
        sa.UniqueConstraint('menu_item_id', 'ingredient_id', name='uq_menu_item_ingredient'),
        schema=schema
    )
    op.create_index('ix_menu_item_ingredients_menu_item_id', 'menu_item_ingredients', ['menu_item_id'], schema=schema)
    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('actor_type', sa.String(length=16), nullable=False, server_default='system'),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        schema=schema
    )
    op.create_table(
        'queue_counters',
        sa.Column('business_day', sa.String(length=10), primary_key=True),
        sa.Column('last_position', sa.Integer(), nullable=False, server_default='0'),
        schema=schema
    )


def downgrade() -> None:
    schema = _schema()
    op.drop_table('queue_counters', schema=schema)
    op.drop_table('activity_logs', schema=schema)
    op.drop_index('ix_menu_item_ingredients_menu_item_id', table_name='menu_item_ingredients', schema=schema)
    op.drop_table('menu_item_ingredients', schema=schema)
    op.drop_table('menu_items', schema=schema)
    op.drop_table('ingredients', schema=schema)
    op.drop_index('ix_loyalty_transactions_customer_id', table_name='loyalty_transactions', schema=schema)
    op.drop_table('loyalty_transactions', schema=schema)
    op.drop_index('ix_payment_transactions_order_id', table_name='payment_transactions', schema=schema)
    op.drop_table('payment_transactions', schema=schema)
    op.drop_index('ix_orders_business_day', table_name='orders', schema=schema)
    op.drop_table('orders', schema=schema)
    op.drop_table('customers', schema=schema)
