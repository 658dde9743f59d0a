"""
Audit package for the Rules Service.

Execution records produced by the engine are handed to an ``AuditSink``.
The PostgreSQL sink lives with the rest of the asyncpg code in
``app.persistence.postgres``.
"""
