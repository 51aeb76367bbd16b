"""Core business logic: identity rules, scoring, source adapters and data models.

This module is framework-agnostic. It has no dependency on MCP or on the
storage layer; the ingestion pipeline and the MCP server import from here.
"""
