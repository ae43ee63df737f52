"""HTTP surface: webhook ingestion and the management API."""
