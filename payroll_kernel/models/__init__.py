"""SQLAlchemy ORM models for payroll persistence."""

from payroll_kernel.models.payroll import (
    RUN_SCOPE,
    SYSTEM_ACTOR,
    ArtifactModel,
    PayoutModel,
    PayrollRunModel,
)

__all__ = [
    "RUN_SCOPE",
    "SYSTEM_ACTOR",
    "ArtifactModel",
    "PayoutModel",
    "PayrollRunModel",
]
