"""
App Connections

Per-user credentials for external apps (GitHub, Slack, Notion, ...).

- codec.py: AES-CBC + HMAC encryption of values at rest
- values.py: the tagged credential variants and request/view models
- apps.py: registry of connectable apps and their token endpoints
- chain.py: middleware-chained aiohttp client used for token exchanges
- oauth2.py: claim and refresh against external token endpoints
- manager.py: upsert, read-with-refresh, list and delete of stored connections
"""
