"""Marketplace assistant: streaming chat with per-user memory and marketplace tools."""
