"""
Command-line entry point.

Components:
- bootstrap.py: composition root (settings -> identity -> stores -> engine)
- commands.py: slash-command registry used by the console connector
- main.py: logging, engine thread, console REPL, shutdown
"""
