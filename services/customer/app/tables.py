"""
Customer Service — テーブル定義
"""

from sqlalchemy import Boolean, Column, DateTime, MetaData, String, Table

metadata = MetaData()

# phone は値があるときだけ一意。NULL 同士は衝突しない
customers = Table(
    "customers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("customer_name", String(100), nullable=False),
    Column("email", String(254), nullable=False, unique=True),
    Column("phone", String(20), nullable=True, unique=True),
    Column("is_blocked", Boolean, nullable=False, default=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
