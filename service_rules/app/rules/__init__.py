"""
Rules engine package.

Modules of interest:
- models: Data classes for rules, conditions, actions and execution records.
- resolver / values: Field lookup and value coercion used by conditions.
- conditions: Single-condition operators and the left-to-right group fold.
- actions / capabilities: Capability registry, executor and built-in handlers.
- engine: Orchestrates a fire call across every eligible rule.
- tester: Dry-run preview that never invokes a capability.
- lifecycle: Validation, status transitions and the rule manager.
"""
