"""
Alerts Service — テーブル定義
"""

from sqlalchemy import Boolean, Column, DateTime, MetaData, String, Table, Text

metadata = MetaData()

alerts = Table(
    "alerts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("type", String(50), nullable=False),
    Column("message", Text, nullable=False),
    Column("status", String(20), nullable=False, default="pending"),
    Column("resolved", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
