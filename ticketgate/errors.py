"""Domain error codes and exceptions."""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Domain error codes."""

    INVENTORY_EXHAUSTED = "INVENTORY_EXHAUSTED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    SALE_CLOSED = "SALE_CLOSED"
    PENDING_RESERVATION_EXISTS = "PENDING_RESERVATION_EXISTS"
    INVALID_REQUEST = "INVALID_REQUEST"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    RECONCILIATION_ORPHAN = "RECONCILIATION_ORPHAN"
    TICKET_INVALID = "TICKET_INVALID"
    VERIFIER_NOT_AUTHORIZED = "VERIFIER_NOT_AUTHORIZED"
    REFUND_NOT_ALLOWED = "REFUND_NOT_ALLOWED"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    status_code = 400

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InventoryExhausted(DomainError):
    """No unit of the ticket template is available. Retry another one."""

    status_code = 409

    def __init__(self, template_id: str) -> None:
        super().__init__(
            ErrorCode.INVENTORY_EXHAUSTED, "Ticket type is sold out"
        )
        self.template_id = template_id


class TemplateNotFound(DomainError):
    status_code = 404

    def __init__(self, template_id: str) -> None:
        super().__init__(ErrorCode.TEMPLATE_NOT_FOUND, "Ticket type not found")
        self.template_id = template_id


class EventNotFound(DomainError):
    status_code = 404

    def __init__(self, event_id: str) -> None:
        super().__init__(ErrorCode.EVENT_NOT_FOUND, "Event not found")
        self.event_id = event_id


class TicketNotFound(DomainError):
    status_code = 404

    def __init__(self, ticket_id: str) -> None:
        super().__init__(ErrorCode.TICKET_NOT_FOUND, "Ticket not found")
        self.ticket_id = ticket_id


class SaleClosed(DomainError):
    def __init__(self, message: str = "Ticket sales are closed") -> None:
        super().__init__(ErrorCode.SALE_CLOSED, message)


class PendingReservationExists(DomainError):
    """The buyer already holds an unpaid reservation for this event."""

    status_code = 409

    def __init__(self, buyer_id: str, event_id: str) -> None:
        super().__init__(
            ErrorCode.PENDING_RESERVATION_EXISTS,
            "Finish or cancel your open checkout for this event first",
        )
        self.buyer_id = buyer_id
        self.event_id = event_id


class InvalidRequest(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_REQUEST, message)


class AuthenticationFailed(DomainError):
    """Payment notification failed its signature check. Never retried."""

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(ErrorCode.AUTHENTICATION_FAILED, message)


class ReconciliationOrphan(DomainError):
    """A payment notification that matches no reservation.

    Kept for operators; the processor still gets its acknowledgement.
    """

    status_code = 200

    def __init__(self, reason: str, session_ref: Optional[str] = None) -> None:
        super().__init__(ErrorCode.RECONCILIATION_ORPHAN, reason)
        self.reason = reason
        self.session_ref = session_ref


class TicketInvalid(DomainError):
    """Deliberately low detail: verifiers never learn why."""

    def __init__(self) -> None:
        super().__init__(ErrorCode.TICKET_INVALID, "Ticket is not valid")


class VerifierNotAuthorized(DomainError):
    status_code = 403

    def __init__(self) -> None:
        super().__init__(
            ErrorCode.VERIFIER_NOT_AUTHORIZED,
            "You are not allowed to check in guests for this event",
        )


class RefundNotAllowed(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.REFUND_NOT_ALLOWED, message)


class AdminRequired(DomainError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__(ErrorCode.ADMIN_REQUIRED, "Admin token required")
