"""
Cache package for the Rules Service.

Provides a Redis-backed snapshot cache of eligible rules per
(event, entity type) and a repository wrapper that reads through it and
invalidates it whenever a rule is written.
"""
