"""Entities, value objects and protocols. No I/O."""
