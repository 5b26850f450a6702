"""
db/ - Database Layer
====================
The shared PostgreSQL connection pool and the idempotent schema bootstrap. Depends on nothing above it.
"""
