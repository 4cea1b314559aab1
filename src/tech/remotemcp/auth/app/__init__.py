"""
Application Layer

aiohttp web application for the Remote MCP auth service.

Key Components:
- cli.py: `remotemcp-auth` entry point
- server.py: application factory, middleware and route table
- config.py: pydantic-settings configuration and AppKeys
- handlers/: request handlers for the OAuth, connection and internal APIs
- tasks.py: health gauge and expired token cleanup tasks
- metrics.py: metrics client abstraction
- cors.py: CORS headers for browser based MCP clients
- util/: `remotemcp-util` key generation and client registration
"""
