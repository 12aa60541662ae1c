"""
Database schema definition for the SQLite primary store.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, Index, MetaData, PrimaryKeyConstraint, Table, Text

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

# Timestamps are fixed-width ISO-8601 UTC strings so that lexical order is time order.
records_table = Table(
    "records",
    metadata,
    Column("collection", Text, nullable=False),
    Column("record_id", Text, nullable=False),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text),
    Column("data", JSON, nullable=False),
    PrimaryKeyConstraint("collection", "record_id"),
)

# Keyset pagination and oldest-first migration selection
Index(
    "ix_records_collection_created",
    records_table.c.collection,
    records_table.c.created_at,
    records_table.c.record_id,
)
