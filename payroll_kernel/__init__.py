"""
Payroll kernel: the shared foundation of the contributor payroll engine.

Logging, typed exceptions, domain values and DTOs, deterministic hashing,
and SQLAlchemy persistence.
"""
