"""
Core types shared by storage and engine.

Components:
- errors.py: exception taxonomy
- models.py: messages, keys, index feed info, merged stream items
- query.py: QL0 query validation + canonical serialization
- ports.py: Protocols for the log store, subfeed resolver and feed formats
"""
