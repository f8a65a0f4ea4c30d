"""Typed business errors raised by the services and mapped to HTTP responses by the API."""


class LendingError(Exception):
    """Base class for expected, recoverable outcomes surfaced to the caller."""

    status_code = 400
    code = "BAD_REQUEST"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# --- Availability ledger ---

class NoCopiesAvailable(LendingError):
    status_code = 409
    code = "NO_COPIES_AVAILABLE"
    default_message = "No copies available"


class OverReturn(LendingError):
    status_code = 409
    code = "OVER_RETURN"
    default_message = "All copies are already available"


class CopiesOnLoan(LendingError):
    status_code = 409
    code = "COPIES_ON_LOAN"
    default_message = "Copies of this book are currently on loan"


# --- Tokens ---

class InvalidToken(LendingError):
    status_code = 401
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class ExpiredToken(LendingError):
    status_code = 401
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class InvalidSignature(LendingError):
    status_code = 401
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class InvalidCredentials(LendingError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class PermissionDenied(LendingError):
    status_code = 403
    code = "ACCESS_DENIED"
    default_message = "Access denied"


# --- Lookups ---

class NotFound(LendingError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class BookNotFound(NotFound):
    code = "BOOK_NOT_FOUND"
    default_message = "Book not found"


class CategoryNotFound(NotFound):
    code = "CATEGORY_NOT_FOUND"
    default_message = "Category not found"


class LoanNotFound(NotFound):
    code = "LOAN_NOT_FOUND"
    default_message = "Loan not found"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


# --- Conflicts ---

class Conflict(LendingError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflicting request"


class DuplicateIsbn(Conflict):
    code = "DUPLICATE_ISBN"
    default_message = "A book with this ISBN already exists"


class EmailAlreadyRegistered(Conflict):
    code = "EMAIL_EXISTS"
    default_message = "User with this email already exists"


class DuplicateCategory(Conflict):
    code = "DUPLICATE_CATEGORY"
    default_message = "A category with this name already exists"


class DuplicateLoan(Conflict):
    code = "DUPLICATE_LOAN"
    default_message = "You already have an active loan for this book"


class LoanLimitReached(Conflict):
    code = "LOAN_LIMIT_REACHED"
    default_message = "Maximum loan limit reached"


class AlreadyReturned(Conflict):
    code = "ALREADY_RETURNED"
    default_message = "Book has already been returned"


class LoanNotRenewable(Conflict):
    code = "NOT_RENEWABLE"
    default_message = "Loan cannot be renewed (already returned or overdue)"


class ValidationFailed(LendingError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


# --- Request authentication ---

class MissingToken(LendingError):
    status_code = 401
    code = "MISSING_TOKEN"
    default_message = "Access token required"


class StaleSession(LendingError):
    """A valid access token whose user no longer exists."""

    status_code = 401
    code = "USER_NOT_FOUND"
    default_message = "User not found"


class InsufficientPermissions(PermissionDenied):
    code = "INSUFFICIENT_PERMISSIONS"
    default_message = "Insufficient permissions"


# --- Rate limiting ---

class RateLimitExceeded(LendingError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests, please try again later"


class AuthRateLimitExceeded(RateLimitExceeded):
    code = "AUTH_RATE_LIMIT_EXCEEDED"
    default_message = "Too many authentication attempts, please try again later"


class BrowseRateLimitExceeded(RateLimitExceeded):
    code = "BROWSE_RATE_LIMIT_EXCEEDED"
    default_message = "Too many browse requests, please try again later"
