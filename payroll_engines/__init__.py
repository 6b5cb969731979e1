"""
Module: payroll_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import payroll_kernel domain values, hashing and logging.
    MUST NOT import payroll_services or payroll_config.

Invariants enforced:
    - Purity: engines never read the clock; timestamps are passed in.
    - Decimal-only arithmetic for ratios and USD; native amounts are int.
    - Determinism: identical inputs always produce identical outputs.

Every engine invocation is traced via ``@traced_engine``, emitting
PAYROLL_ENGINE_TRACE log records with engine name, version, input
fingerprint and duration.
"""

from payroll_engines.distribution import MAX_CAP_ITERATIONS, DistributionCalculator
from payroll_engines.idempotency import derive_idempotency_key
from payroll_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "MAX_CAP_ITERATIONS",
    "DistributionCalculator",
    "compute_input_fingerprint",
    "derive_idempotency_key",
    "traced_engine",
]
