"""
Database Models

SQLAlchemy declarative models for the authorization server and the app
connection store.

- base.py: declarative Base, shared column types and the UTC helper
- oauth.py: registered clients, authorization codes and token pairs
- connection.py: per-user encrypted credentials for external apps
- health.py: in-process health gauge (not persisted)

All timestamps are timezone-aware UTC. Drivers that drop the offset
(SQLite in tests) are normalised through `base.ensure_utc` before any
comparison.
"""
