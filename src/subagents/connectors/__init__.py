"""Source-hosting connectors."""
