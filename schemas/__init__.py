"""
Pydantic schemas for profiles, write requests and execution results.

Schemas:
    profile: ImportProfile and its nested format, mapping, pagination,
             delta sync and local target settings
    target: ImportWriteContext, ImportBatchResult, RowError, TargetColumnInfo
    execution: ImportExecutionResult returned by the runner

Usage:
    from schemas.profile import ImportProfile
    from schemas.target import ImportWriteContext, ImportBatchResult

Example:
    profile = ImportProfile(
        id="orders",
        source_type="Local",
        source_path="/data/in/orders.csv",
        target_database_type="PostgreSql",
        target_connection_string="postgresql://user:pw@db/shop",
        target_table="public.orders",
        upsert_key_columns="order_id"
    )
"""

__all__ = [
    "profile",
    "target",
    "execution",
]
