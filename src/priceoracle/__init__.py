"""Engagement aggregation and synthetic price derivation pipeline."""
