"""TEPCO daily electricity usage collector."""
