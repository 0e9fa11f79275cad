"""
Handle Service Application Layer

This package implements the web application layer for the atproto-handle service, using the
aiohttp framework. It serves claimed domains, accepts claims and hosts the shredder login.

Key Components:
- server.py: Web server configuration, startup and middleware setup
- config.py: Configuration management using Pydantic settings
- cli.py: Entry point for running the application
- metrics.py: Metrics abstraction (Telegraf or disabled)
- handlers/: Request handlers for different endpoints

The application uses several middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting
- Service error middleware that maps service errors to HTTP responses

It provides the following main endpoints:
- Domain endpoints (/, /.well-known/atproto-did)
- Claim endpoints (/claim, /add, /remove, /reload)
- Shredder endpoints (/shredder/*, /client-metadata.json)
- Health endpoints (/internal/alive, /internal/ready)
"""
