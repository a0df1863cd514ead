"""
Ledger Error Taxonomy

Typed failures raised synchronously to the caller of a ledger operation.
Every error aborts the call with no observable state change.
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def fields(self) -> Dict[str, str]:
        """Error-specific fields exposed to callers; quantities are decimal strings"""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for transport"""
        result = {"error": self.code, "message": self.message}
        result.update(self.fields())
        return result


# Input validation

class InvalidAmount(LedgerError):
    """Raised when an amount is not an unsigned integer in range"""

    code = "invalid_amount"


class InvalidAccount(LedgerError):
    """Raised when an account identifier is not a non-empty string"""

    code = "invalid_account"


class InvalidLimit(LedgerError):
    """
    Raised at construction when a limit is not a positive integer, or when
    reopened storage holds limits different from the ones supplied.
    """

    code = "invalid_limit"


class ArithmeticBoundsError(LedgerError):
    """Raised when an addition or subtraction would leave the unsigned range"""

    code = "arithmetic_bounds"


# Deposit failures

class ZeroDeposit(LedgerError):
    """Deposit attempted with zero value"""

    code = "zero_deposit"

    def __init__(self):
        super().__init__("Deposit value must be greater than zero")


class BankCapExceeded(LedgerError):
    """Deposit would push the pool total above the bank cap"""

    code = "bank_cap_exceeded"

    def __init__(self, available: int):
        super().__init__(f"Deposit exceeds bank cap: available {available}")
        self.available = available

    def fields(self) -> Dict[str, str]:
        return {"available": str(self.available)}


# Withdrawal failures

class ZeroWithdrawal(LedgerError):
    """Withdrawal attempted with zero amount"""

    code = "zero_withdrawal"

    def __init__(self):
        super().__init__("Withdrawal amount must be greater than zero")


class InsufficientFunds(LedgerError):
    """Requested withdrawal exceeds the caller's balance"""

    code = "insufficient_funds"

    def __init__(self, balance: int):
        super().__init__(f"Insufficient funds: balance {balance}")
        self.balance = balance

    def fields(self) -> Dict[str, str]:
        return {"balance": str(self.balance)}


class WithdrawalThresholdExceeded(LedgerError):
    """Requested withdrawal exceeds the per-call ceiling"""

    code = "withdrawal_threshold_exceeded"

    def __init__(self, threshold: int):
        super().__init__(f"Withdrawal exceeds threshold {threshold}")
        self.threshold = threshold

    def fields(self) -> Dict[str, str]:
        return {"threshold": str(self.threshold)}


class TransferFailed(LedgerError):
    """The external transfer capability reported failure"""

    code = "transfer_failed"

    def __init__(self, reason: bytes = b""):
        self.reason = reason
        super().__init__(f"Transfer failed: {self.reason_text or 'no reason given'}")

    @property
    def reason_text(self) -> str:
        return self.reason.decode("utf-8", errors="replace")

    def fields(self) -> Dict[str, str]:
        return {"reason": self.reason_text}


class TransferOutcomeUnknown(LedgerError):
    """
    The gateway could not tell whether the payout was delivered. The debit
    stays in place, held as unconfirmed outflow, until ``resolve_transfer``
    settles the reference.
    """

    code = "transfer_outcome_unknown"

    def __init__(self, reference: str, reason: bytes = b""):
        self.reference = reference
        self.reason = reason
        super().__init__(
            f"Transfer {reference} outcome unknown: "
            f"{reason.decode('utf-8', errors='replace') or 'no reason given'}"
        )

    def fields(self) -> Dict[str, str]:
        return {"reference": self.reference, "reason": self.reason.decode("utf-8", errors="replace")}


class UnknownTransferReference(LedgerError):
    """No unconfirmed transfer is pending under this reference"""

    code = "unknown_transfer_reference"

    def __init__(self, reference: str):
        super().__init__(f"No unconfirmed transfer with reference {reference!r}")
        self.reference = reference

    def fields(self) -> Dict[str, str]:
        return {"reference": self.reference}
