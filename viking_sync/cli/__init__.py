"""Command-line interface for viking_sync."""
