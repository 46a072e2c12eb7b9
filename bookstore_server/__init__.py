"""Bookstore cart server: optimistic cart coordinator with MCP and HTTP front ends."""

__version__ = "0.1.0"
