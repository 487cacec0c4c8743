"""
Index-feed scheduling engine.

Components:
- cancel.py: cooperative cancellation token checked at every suspension point
- cursor.py: where an index feed left off in the source log
- merger.py: backlog + live tail as one ordered stream with a SyncPoint between
- writer.py: appends one index record per matching source message
- signals.py: per-query "backlog drained" one-shot broadcast
- registry.py: one task per query, start/stop/teardown
- service.py: public entry points (start / done_old / stop / autostart / close)
"""
