"""
Custom exceptions for the business plan service
"""

from .plan_exceptions import (
    BusinessPlanError,
    ValidationError,
    NotFoundError,
    StaleChangeError,
    TransientError,
)

__all__ = [
    "BusinessPlanError",
    "ValidationError",
    "NotFoundError",
    "StaleChangeError",
    "TransientError",
]
