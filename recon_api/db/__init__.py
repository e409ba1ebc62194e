"""Persistence layer: models, engine/session builders and repository."""
