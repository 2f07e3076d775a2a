"""State layer.

This package is the single source of truth for how adapter results,
optimistic mutations and pushed change events are merged into one
consistent snapshot per resource key, and how those snapshots reach
consumers.
"""
