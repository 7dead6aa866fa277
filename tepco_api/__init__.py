"""HTTP API for stored TEPCO usage and manual collection."""
