"""
Protocols Package
=================

Protocol-level integrations.

Modules:
--------
- mcp: tool-extension protocol client (transports, sessions, registry, manager)
"""
