# Overview: Typed error taxonomy shared by services, routes and CLI.

"""
Tradeflow error taxonomy.

Business rejections (credit, stock, already-accepted) are expected outcomes,
not faults: the caller gets a typed error and state is left unchanged.
Infrastructure faults (PersistenceError) are retryable. NotificationError is
logged by the dispatcher and never reaches a caller.

Every error carries a `details` dict so the caller can decide whether to
retry, escalate or abandon without parsing the message.
"""

from __future__ import annotations


class TradeflowError(Exception):
    """Base class for all domain errors."""

    http_status = 400
    code = "TRADEFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class ValidationError(TradeflowError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"


# ----------------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------------

class NotFoundError(TradeflowError):
    http_status = 404
    code = "NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    code = "ORDER_NOT_FOUND"


class RoutingNotFoundError(NotFoundError):
    code = "ROUTING_NOT_FOUND"


# ----------------------------------------------------------------------------
# State machine misuse
# ----------------------------------------------------------------------------

class InvalidTransitionError(TradeflowError):
    http_status = 409
    code = "INVALID_TRANSITION"


class TerminalStateError(InvalidTransitionError):
    code = "TERMINAL_STATE"


class ConcurrentTransitionError(TradeflowError):
    """The order changed underneath the caller; safe to retry."""

    http_status = 409
    code = "CONCURRENT_TRANSITION"
    retryable = True


class MissingWholesalerError(TradeflowError):
    http_status = 409
    code = "WHOLESALER_NOT_ASSIGNED"


class DeliveryConfirmationError(TradeflowError):
    http_status = 403
    code = "DELIVERY_TOKEN_MISMATCH"


# ----------------------------------------------------------------------------
# Business rejections
# ----------------------------------------------------------------------------

class InsufficientCreditError(TradeflowError):
    http_status = 402
    code = "INSUFFICIENT_CREDIT"


class InsufficientStockError(TradeflowError):
    http_status = 409
    code = "INSUFFICIENT_STOCK"


class AlreadyAcceptedError(TradeflowError):
    """Another vendor already won the routing. Expected race outcome."""

    http_status = 409
    code = "ALREADY_ACCEPTED"


class LateResponseError(TradeflowError):
    http_status = 409
    code = "LATE_RESPONSE"


class VendorNotEligibleError(TradeflowError):
    http_status = 403
    code = "VENDOR_NOT_ELIGIBLE"


class NoEligibleVendorsError(TradeflowError):
    http_status = 409
    code = "NO_ELIGIBLE_VENDORS"


class NoWinnerError(TradeflowError):
    http_status = 409
    code = "NO_WINNER"


class BiddingClosedError(TradeflowError):
    http_status = 409
    code = "BIDDING_CLOSED"


class NoOffersError(TradeflowError):
    http_status = 409
    code = "NO_OFFERS"


class LedgerError(TradeflowError):
    code = "LEDGER_ERROR"


# ----------------------------------------------------------------------------
# Infrastructure
# ----------------------------------------------------------------------------

class PersistenceError(TradeflowError):
    http_status = 503
    code = "PERSISTENCE_ERROR"
    retryable = True


class NotificationError(TradeflowError):
    code = "NOTIFICATION_ERROR"
