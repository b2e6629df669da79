"""calsync: mirror calendar events into a Notion database."""

__version__ = "0.1.0"
