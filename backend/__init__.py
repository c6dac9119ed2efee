"""Backend demo service."""
