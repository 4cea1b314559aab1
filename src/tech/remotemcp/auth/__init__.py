"""
Remote MCP Auth

OAuth 2.0 authorization server and connection credential lifecycle for the
Remote MCP platform.

Key Components:
- app: aiohttp web application, configuration, handlers and background tasks
- oauth: authorization server core (codes, tokens, PKCE, client registration)
- connections: encrypted storage, claiming and refreshing of credentials for
  external apps (GitHub, Slack, Notion, ...)
- model: SQLAlchemy models shared by both halves

Two token worlds meet here. Outward, the service is an authorization server
that issues opaque access and refresh tokens to MCP clients. Inward, it holds
the users' own OAuth2 credentials for third-party apps and keeps them fresh
so that tools can call those apps on the user's behalf.
"""
