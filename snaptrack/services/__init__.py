"""Pipeline services: gateway, normaliser, progress, session and queue."""
