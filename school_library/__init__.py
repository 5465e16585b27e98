"""School Library - loan and waitlist service

This package contains:
- Stock ledger, loan lifecycle and waitlist dispatcher (services/)
- Catalog, comment moderation, notifications and dashboards (services/)
- Persistence boundary over SQLite (store.py, database.py)
- HTTP API (api.py) and CLI (main.py)
"""
