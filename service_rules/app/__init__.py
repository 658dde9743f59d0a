"""
Rules Service package for the Warehouse platform.

This package evaluates declarative business rules against warehouse
lifecycle events (orders created, picks confirmed, inventory adjusted).
It provides:

- app.main: API surface for rule management, dry runs and event firing.
- app.rules: Rule model, condition evaluation, action dispatch and engine.
- app.persistence: In-memory and PostgreSQL rule repositories.
- app.audit: Sinks for per-rule execution records.
- app.cache: Redis-backed snapshots of eligible rules.

Guidelines:
- A misbehaving rule must never block the workflow that triggered it.
- Rule evaluation is deterministic for a given entity snapshot.
- Every fire call is observable through logs, metrics and audit records.
"""
