"""
Payment specific codes and upstream status vocabularies.
"""
from __future__ import annotations

# Redirect-return query status -> canonical order status
REDIRECT_STATUS_TO_INTERNAL = {
    "completed": "completed",
    "successful": "completed",
    "success": "completed",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "invalid": "cancelled",
    "failed": "failed",
    "pending": "pending",
    "success-pending-validation": "pending",
}

# Gateway transaction status families
GATEWAY_PENDING_STATUSES = frozenset({"pending", "success-pending-validation"})
GATEWAY_SUCCESS_STATUSES = frozenset({"successful", "completed"})
GATEWAY_FAILED_STATUSES = frozenset({"failed"})

# Remote session vocabulary
PEND_REASON_BUYER_ACTION_REQUIRED = "BUYER_ACTION_REQUIRED"
REJECT_CODE_PROCESSING_ERROR = "PROCESSING_ERROR"

# Merchant-facing refund rejection messages
REFUND_MSG_PAYMENT_NOT_COMPLETED = "Payment not completed"
REFUND_MSG_ENVIRONMENT_MISMATCH = "Can't refund orders made in different environments"
REFUND_MSG_AMOUNT_EXCEEDS_PAID = "Refund amount greater than amount paid"
REFUND_MSG_UNABLE_TO_PROCESS = "Unable to process refund"
PAYMENT_MSG_DEFAULT_FAILURE = "Payment failed"

# ProgressGuard claim kinds
CLAIM_KIND_REFUND_RETRY = "refund"
