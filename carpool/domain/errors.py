"""
Domain error taxonomy.

Every rejected operation raises a ``CarpoolError`` subclass carrying a
stable ``code`` (mapped to a localized message by the client) and the HTTP
status the API layer answers with.
"""

from __future__ import annotations


class CarpoolError(Exception):
    code = "carpool_error"
    status_code = 400
    message = "Request could not be processed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.message
        super().__init__(self.detail)


# ── Validation (400) ──────────────────────────────────────────────────


class ValidationFailed(CarpoolError):
    code = "validation_error"
    message = "Invalid request"


class InvalidReason(ValidationFailed):
    code = "invalid_reason"
    message = "A reason of at least 5 characters is required"


class InvalidTarget(ValidationFailed):
    code = "invalid_target"
    message = "Unsupported target state"


class InvalidSeats(ValidationFailed):
    code = "invalid_seats"
    message = "Requested seats exceed the trip capacity"


class InvalidRefund(ValidationFailed):
    code = "invalid_refund"
    message = "Invalid refund"


# ── Authorization (401 / 403) ─────────────────────────────────────────


class Unauthenticated(CarpoolError):
    code = "unauthenticated"
    status_code = 401
    message = "Invalid authentication"


class Forbidden(CarpoolError):
    code = "forbidden"
    status_code = 403
    message = "Access denied"


class WrongActor(Forbidden):
    code = "wrong_actor"
    message = "This action is not allowed for the current user"


class SelfActionForbidden(Forbidden):
    code = "self_action_forbidden"
    message = "Admins cannot perform this action on their own account"


class UserSuspended(Forbidden):
    code = "user_suspended"
    message = "User account is suspended"


class DriverPublishBanned(Forbidden):
    code = "publish_banned"
    message = "Driver is banned from publishing trips"


# ── Not found (404) ───────────────────────────────────────────────────


class NotFound(CarpoolError):
    code = "not_found"
    status_code = 404
    message = "Resource not found"


class TripNotFound(NotFound):
    code = "trip_not_found"
    message = "Trip not found"


class BookingNotFound(NotFound):
    code = "booking_not_found"
    message = "Booking not found"


class UserNotFound(NotFound):
    code = "user_not_found"
    message = "User not found"


class TransactionNotFound(NotFound):
    code = "transaction_not_found"
    message = "Payment not found"


# ── State conflicts (409) ─────────────────────────────────────────────


class StateConflict(CarpoolError):
    code = "state_conflict"
    status_code = 409
    message = "Resource changed state; re-fetch and retry"


class TripNotPublished(StateConflict):
    code = "trip_not_published"
    message = "Trip is not open for bookings"


class TripAlreadyStarted(StateConflict):
    code = "trip_already_started"
    message = "Trip has already started"


class TripNotEditable(StateConflict):
    code = "trip_not_editable"
    message = "Only draft trips can be edited"


class InvalidTripTransition(StateConflict):
    code = "invalid_trip_transition"
    message = "Trip cannot move to the requested status"


class InsufficientCapacity(StateConflict):
    code = "insufficient_capacity"
    message = "Not enough seats left on this trip"


class BookingNotPending(StateConflict):
    code = "booking_not_pending"
    message = "Booking is no longer pending"


class BookingNotAccepted(StateConflict):
    code = "booking_not_accepted"
    message = "Booking is not accepted"


class BookingNotCancelable(StateConflict):
    code = "booking_not_cancelable"
    message = "Booking can no longer be canceled"


class PaymentWindowClosed(StateConflict):
    code = "payment_window_closed"
    message = "Payment is not open for this booking"


class PaymentAlreadyCompleted(StateConflict):
    code = "payment_already_completed"
    message = "Payment was already completed"


class PaymentNotPending(StateConflict):
    code = "payment_not_pending"
    message = "No pending payment for this booking"


class PaymentMethodMismatch(StateConflict):
    code = "payment_method_mismatch"
    message = "Booking uses a different payment method"


class PaymentIntentMismatch(StateConflict):
    code = "payment_intent_mismatch"
    message = "Payment intent does not belong to this booking"


class PaymentNotSucceeded(StateConflict):
    code = "payment_not_succeeded"
    message = "Payment processor has not confirmed this payment"


class RefundNotAllowed(StateConflict):
    code = "refund_not_allowed"
    message = "Booking has no completed card payment to refund"


# ── Infrastructure (5xx) ──────────────────────────────────────────────


class PaymentProcessorError(CarpoolError):
    code = "payment_processor_error"
    status_code = 502
    message = "Payment processor request failed"


class LedgerInconsistency(CarpoolError):
    code = "ledger_inconsistency"
    status_code = 500
    message = "Seat ledger is inconsistent"
