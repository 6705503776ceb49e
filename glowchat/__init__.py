"""
GlowChat backend package.

Provides a FastAPI application for accounts, chats and stories, with
database, storage and realtime abstractions so the same code runs against
Postgres/S3 in production and SQLite or in-memory backends locally.
"""
