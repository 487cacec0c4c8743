"""
Connectors around the engine.

Components:
- engine_runner.py: runs the engine's asyncio loop in a background thread
- console_connector.py: interactive REPL driving the engine via slash commands
"""
