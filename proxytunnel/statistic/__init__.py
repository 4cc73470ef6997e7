"""User authentication, traffic accounting, and SQLite and MySQL back-ends."""

__all__ = ["statistics", "memory", "sqlite_store", "mysql_auth"]