"""
Persistence package for the Rules Service.

- base: the ``RuleRepository`` contract the engine and manager depend on.
- memory: thread-safe in-memory repository for local runs and tests.
- postgres: asyncpg-backed repository and execution-log audit sink.
"""
