"""Storage, validation, a deployments JSON API and WSGI middleware for a contract registry."""

__version__ = "0.1.0"