"""
Payroll services: the stateful layer around the pure distribution engine.

PayrollService is the entry point; PayoutLedger owns persistence,
ExecutionOrchestrator settles payouts, ArtifactEmitter publishes records.
"""

from payroll_services.artifact_emitter import ArtifactEmitter
from payroll_services.execution_orchestrator import ExecutionOrchestrator
from payroll_services.execution_queue import ExecutionQueue
from payroll_services.payout_ledger import PayoutLedger
from payroll_services.payroll_service import PayrollService, retry_policy_from_settings
from payroll_services.ports import (
    ContentStore,
    ContributionDetail,
    ContributionReport,
    ContributionSource,
    DateRange,
    GatewayReceipt,
    GatewayStatus,
    IdentityResolver,
    PaymentGateway,
    PriceFeed,
    PriceQuote,
    RepoSelection,
)

__all__ = [
    "ArtifactEmitter",
    "ContentStore",
    "ContributionDetail",
    "ContributionReport",
    "ContributionSource",
    "DateRange",
    "ExecutionOrchestrator",
    "ExecutionQueue",
    "GatewayReceipt",
    "GatewayStatus",
    "IdentityResolver",
    "PaymentGateway",
    "PayoutLedger",
    "PayrollService",
    "PriceFeed",
    "PriceQuote",
    "RepoSelection",
    "retry_policy_from_settings",
]
