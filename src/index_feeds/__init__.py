"""
index-feeds: derived "index feeds" over the local append-only log.

For every registered query the engine keeps an append-only feed of pointers
to the log entries matching it, so peers can replicate the small index feed
instead of scanning the whole log.
"""

__version__ = "1.0.0"
