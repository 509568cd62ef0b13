"""Source-system connectors."""
