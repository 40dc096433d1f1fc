"""
Analytics Service — テーブル定義

このサービスが受け取った全ドメインイベントの追記専用ログ。
"""

from sqlalchemy import JSON, Column, DateTime, Float, Integer, MetaData, String, Table

metadata = MetaData()

analytics_events = Table(
    "analytics_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("topic", String(50), nullable=False),
    Column("event", String(100), nullable=False, index=True),
    Column("entity_id", String(64), nullable=True),
    Column("value", Float, nullable=True),
    Column("payload", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)
