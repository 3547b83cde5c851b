"""Descriptor-based rate limiting service: models, service, HTTP server, health, settings, stats, tracing and SRV discovery."""

__version__ = "0.1.0"