"""Launchpad: build worker, log pipeline and subdomain proxy for static deployments."""

__version__ = "0.1.0"
