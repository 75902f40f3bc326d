"""
Pod Sync Application Layer

This package exposes the Pod connection service over HTTP using the aiohttp framework. The
calling application authenticates its own users and forwards the user id in the
``X-User-Id`` header.

Key Components:
- cli.py: Entry point for running the web server
- server.py: Web server configuration, shared resources and middleware setup
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics abstraction with Telegraf and no-op backends
- handlers/: Request handlers for the Solid and internal endpoints
- util/: Command line utilities for keys and issuer discovery

The application uses two middleware layers:
- Statsd middleware for request metrics
- Sentry middleware for error reporting

It provides the following main endpoints:
- Solid connection endpoints (/auth/solid/*)
- Internal API endpoints (/internal/api/solid/*)
- Health endpoints (/internal/alive, /internal/ready)
"""
