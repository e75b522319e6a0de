"""Dashboard server."""
