"""
Demo MCP tool servers.

Each server runs as a subprocess speaking JSON-RPC over stdio:

    python -m relaymcp.servers.health
    python -m relaymcp.servers.exchange
"""
