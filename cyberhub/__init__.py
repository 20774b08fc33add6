"""CyberHub: data access and services for multi-tenant cyber center management."""

__version__ = "1.0.0"
