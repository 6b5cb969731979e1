"""HTTP adapters for the payroll service ports."""

from payroll_services.clients.gateway import HttpPaymentGateway
from payroll_services.clients.github import GitHubContributionSource
from payroll_services.clients.lighthouse import LighthouseContentStore
from payroll_services.clients.pyth import HermesPriceFeed

__all__ = [
    "GitHubContributionSource",
    "HermesPriceFeed",
    "HttpPaymentGateway",
    "LighthouseContentStore",
]
