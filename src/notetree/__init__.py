"""
notetree - a hierarchical note store with protected notes, history and audit.

This package implements the note lifecycle and protection engine: positional
tree placements, interval-bucketed content history, recursive field-level
encryption and cascading soft deletion, with an audit trail and a change feed
for replicas. An MCP server exposes the operations.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notetree-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
