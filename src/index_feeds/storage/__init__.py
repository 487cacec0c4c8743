"""
Local stand-ins for the collaborators the engine depends on.

Components:
- keys.py: feed keypairs + persisted local identity
- formats.py: `classic` and `indexed-v1` feed formats (encode + sign)
- log_store.py: SQLite append-only log with paginated reads and live subscriptions
- metafeeds.py: SQLite find-or-create registry of derived feeds
"""
