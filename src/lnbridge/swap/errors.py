"""Error taxonomy for swap operations.

Validation and authentication errors are raised synchronously, before any
swap record exists. Integration and expiry errors are raised by collaborator
adapters and caught by the lifecycle driver, which records them on the swap.
"""


class SwapError(Exception):
    """Base class for all swap errors."""

    code = "SWAP_ERROR"
    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationError(SwapError):
    """Invalid or missing swap input."""

    code = "VALIDATION_ERROR"
    status_code = 400


class AmountTooLow(ValidationError):
    """Amount is below minimum swap threshold."""

    code = "AMOUNT_TOO_LOW"


class AmountTooHigh(ValidationError):
    """Amount exceeds maximum swap threshold."""

    code = "AMOUNT_TOO_HIGH"


class MissingRecipient(ValidationError):
    """A Starknet recipient address is required for this direction."""

    code = "MISSING_RECIPIENT"


class MissingPayoutInvoice(ValidationError):
    """A Lightning payout invoice is required for this direction."""

    code = "MISSING_PAYOUT_INVOICE"


class UnsupportedToken(ValidationError):
    """Target token is not supported."""

    code = "UNSUPPORTED_TOKEN"


class NegativeOutput(ValidationError):
    """Fees exceed the swap amount."""

    code = "NEGATIVE_OUTPUT"


class PaymentMismatch(ValidationError):
    """Payment does not match the swap invoice."""

    code = "PAYMENT_MISMATCH"


class InvalidPayoutInvoice(ValidationError):
    """Payout invoice cannot settle this swap."""

    code = "INVALID_PAYOUT_INVOICE"


class DebitAlreadyUsed(ValidationError):
    """Settlement transaction already funds another swap."""

    code = "DEBIT_ALREADY_USED"
    status_code = 409


class NotFoundError(SwapError):
    """Swap not found."""

    code = "NOT_FOUND"
    status_code = 404


class AuthenticationError(SwapError):
    """Authentication required."""

    code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class InvalidTransitionError(SwapError):
    """Swap cannot accept this event in its current state."""

    code = "INVALID_TRANSITION"
    status_code = 409


class IntegrationError(SwapError):
    """A collaborator (Lightning node, Starknet) call failed."""

    code = "INTEGRATION_ERROR"
    status_code = 502


class TransientIntegrationError(IntegrationError):
    """Collaborator timeout or network failure; safe to retry."""

    code = "TRANSIENT_INTEGRATION_ERROR"
    status_code = 503


class PermanentIntegrationError(IntegrationError):
    """Collaborator rejected the operation."""

    code = "PERMANENT_INTEGRATION_ERROR"


class UnknownInvoiceError(PermanentIntegrationError):
    """Lightning node has no invoice with this payment hash."""

    code = "UNKNOWN_INVOICE"


class ExpiryError(SwapError):
    """Deadline elapsed."""

    code = "EXPIRED"
    status_code = 410
