"""Adapters for SQLite, Azure OpenAI and the marketplace tools."""
