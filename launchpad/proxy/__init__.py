"""Subdomain reverse proxy for build outputs."""
