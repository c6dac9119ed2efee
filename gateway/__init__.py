"""API gateway demo service."""
