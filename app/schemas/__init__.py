"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import ErrorResponse
from app.schemas.entitlement import (
    CommitPurchaseRequest,
    CommitPurchaseResponse,
    EntitlementSummaryData,
    EntitlementSummaryResponse,
    PurchaseRecordData,
    PurchaseRecordListResponse,
    PurchaseSource,
    WebhookAck,
)

__all__ = [
    "ErrorResponse",
    "CommitPurchaseRequest",
    "CommitPurchaseResponse",
    "EntitlementSummaryData",
    "EntitlementSummaryResponse",
    "PurchaseRecordData",
    "PurchaseRecordListResponse",
    "PurchaseSource",
    "WebhookAck",
]
