"""
Authorization Server

The first-party OAuth 2.0 server that MCP clients (Claude, VS Code, ...)
register with and obtain bearer tokens from.

- errors.py: RFC 6749 error types
- model.py: the storage port the server is written against
- store.py: SQLAlchemy implementation of that port
- pkce.py: RFC 7636 helpers
- server.py: authorize, token, register, revoke and bearer authentication
- metadata.py: discovery documents
"""
