"""Routing database client, migrations and seeds for the product catalog service."""

__version__ = "0.1.0"
