"""
Escrow domain errors. Each carries a stable code the HTTP layer maps to a status.
"""
from common.error_handling import BusinessLogicError, ErrorCodes

class EscrowError(BusinessLogicError):
    code = ErrorCodes.VALIDATION_ERROR
    default_message = "The request could not be completed."

    def __init__(self, message: str = None, field: str = None, **context):
        super().__init__(self.code, message or self.default_message, field=field, context=context)

class ValidationFailed(EscrowError):
    code = ErrorCodes.VALIDATION_ERROR
    default_message = "Invalid request."

class InvalidAmount(EscrowError):
    code = ErrorCodes.INVALID_AMOUNT
    default_message = "Amount must be greater than zero."

class InsufficientFunds(EscrowError):
    code = ErrorCodes.INSUFFICIENT_FUNDS
    default_message = "Insufficient wallet balance."

class ProductNotFound(EscrowError):
    code = ErrorCodes.PRODUCT_NOT_FOUND
    default_message = "Product not found."

class OutOfStock(EscrowError):
    code = ErrorCodes.OUT_OF_STOCK
    default_message = "Product is out of stock."

class OrderNotFound(EscrowError):
    code = ErrorCodes.ORDER_NOT_FOUND
    default_message = "Order not found."

class EscrowNotFound(EscrowError):
    code = ErrorCodes.ESCROW_NOT_FOUND
    default_message = "Escrow not found."

class EscrowAlreadyFinalized(EscrowError):
    code = ErrorCodes.ESCROW_ALREADY_FINALIZED
    default_message = "This escrow has already been finalized."

class EscrowNotActive(EscrowError):
    code = ErrorCodes.ESCROW_NOT_ACTIVE
    default_message = "This escrow is not active."

class NotAuthorized(EscrowError):
    code = ErrorCodes.NOT_AUTHORIZED
    default_message = "You are not allowed to perform this action."

class InvalidSplit(EscrowError):
    code = ErrorCodes.INVALID_SPLIT
    default_message = "Percentages must each be between 0 and 100 and sum to 100."

class MaxExtensionsReached(EscrowError):
    code = ErrorCodes.MAX_EXTENSIONS_REACHED
    default_message = "Maximum number of extensions reached."

class DisputeNotFound(EscrowError):
    code = ErrorCodes.DISPUTE_NOT_FOUND
    default_message = "Dispute not found."

class DisputeAlreadyResolved(EscrowError):
    code = ErrorCodes.DISPUTE_ALREADY_RESOLVED
    default_message = "This dispute has already been resolved."
