"""
Core package: settings and the HTTP plumbing shared by every router.

Modules:
    config          environment-driven settings and channel credential checks
    logging_config  JSON / pretty log formatters, request context, contact redaction
    errors          API exceptions and the JSON error envelope
    middleware      correlation IDs and the access log
    health          liveness / readiness probes
    database        async SQLAlchemy engine and session factory
"""
