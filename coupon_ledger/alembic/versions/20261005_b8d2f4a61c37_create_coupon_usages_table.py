"""create coupon_usages table

Revision ID: b8d2f4a61c37
Revises: a3c1e7d90b12
Create Date: 2026-10-05 00:00:01.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "b8d2f4a61c37"
down_revision = "a3c1e7d90b12"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "coupon_usages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("coupon_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_id", sa.String(length=255), nullable=True),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "coupon_id", "purchase_id", name="uq_coupon_usages_coupon_purchase"
        ),
    )
    op.create_index("ix_coupon_usages_coupon_id", "coupon_usages", ["coupon_id"])
    op.create_index("ix_coupon_usages_user_id", "coupon_usages", ["user_id"])
    op.create_index("ix_coupon_usages_purchase_id", "coupon_usages", ["purchase_id"])


def downgrade() -> None:
    op.drop_index("ix_coupon_usages_purchase_id", table_name="coupon_usages")
    op.drop_index("ix_coupon_usages_user_id", table_name="coupon_usages")
    op.drop_index("ix_coupon_usages_coupon_id", table_name="coupon_usages")
    op.drop_table("coupon_usages")
