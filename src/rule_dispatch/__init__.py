"""Rule action dispatch: formats enriched events and delivers them to external services."""

__version__ = "0.1.0"
