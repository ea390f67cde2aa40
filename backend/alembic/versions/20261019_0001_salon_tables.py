"""Create client roster, appointment history, and admin account tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("mobile", sa.String(length=17), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("services_taken_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_visit", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("client_id"),
    )
    op.create_index("ix_clients_mobile", "clients", ["mobile"], unique=True)
    op.create_index("ix_clients_email", "clients", ["email"], unique=False)
    op.create_index("ix_clients_next_due_date", "clients", ["next_due_date"], unique=False)

    op.create_table(
        "client_appointments",
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("service", sa.String(length=128), nullable=False),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="scheduled"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.client_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_client_appointments_client_id", "client_appointments", ["client_id"], unique=False)

    op.create_table(
        "admin_users",
        sa.Column("admin_id", sa.String(length=64), nullable=False),
        sa.Column("username", sa.String(length=50), nullable=False),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="admin"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("admin_id"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "admin_failed_login_attempts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("client_ip", sa.String(length=128), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_admin_failed_login_attempts_client_ip",
        "admin_failed_login_attempts",
        ["client_ip"],
        unique=False,
    )
    op.create_index(
        "ix_admin_failed_login_attempts_attempted_at",
        "admin_failed_login_attempts",
        ["attempted_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_admin_failed_login_attempts_attempted_at", table_name="admin_failed_login_attempts")
    op.drop_index("ix_admin_failed_login_attempts_client_ip", table_name="admin_failed_login_attempts")
    op.drop_table("admin_failed_login_attempts")
    op.drop_table("admin_users")
    op.drop_index("ix_client_appointments_client_id", table_name="client_appointments")
    op.drop_table("client_appointments")
    op.drop_index("ix_clients_next_due_date", table_name="clients")
    op.drop_index("ix_clients_email", table_name="clients")
    op.drop_index("ix_clients_mobile", table_name="clients")
    op.drop_table("clients")
