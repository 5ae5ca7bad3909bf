"""Observability building blocks shared by the user and order services.

Correlation ids, a process-local metrics registry, the outbound propagator,
health aggregation and structlog setup. Everything here is passed around
explicitly; the only process-wide switch is ``configure_logging``.
"""
