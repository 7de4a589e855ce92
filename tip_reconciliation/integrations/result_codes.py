"""
M-Pesa result code catalogue.

Maps the ResultCode values Daraja returns in callbacks and status queries
to a stable name, a customer-facing message, and whether the customer can
simply try again.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class ResultCategory(str, Enum):
    NETWORK = "network"
    VALIDATION = "validation"
    BUSINESS = "business"
    SYSTEM = "system"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ResultCodeInfo:
    code: int
    name: str
    message: str
    user_message: str
    retryable: bool
    category: ResultCategory


SUCCESS = 0
CANCELLED_BY_USER = 1032
USER_UNREACHABLE = 1037

_CATALOGUE = [
    ResultCodeInfo(0, "SUCCESS", "The service request is processed successfully",
                   "Payment completed successfully", False, ResultCategory.BUSINESS),
    ResultCodeInfo(1, "INSUFFICIENT_FUNDS", "The balance is insufficient for the transaction",
                   "Insufficient M-Pesa balance. Please top up and try again.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(2, "LESS_THAN_MINIMUM",
                   "The amount being transacted is less than the minimum allowed",
                   "Amount is below minimum allowed. Please increase the amount.",
                   True, ResultCategory.VALIDATION),
    ResultCodeInfo(3, "MORE_THAN_MAXIMUM",
                   "The amount being transacted is more than the maximum allowed",
                   "Amount exceeds maximum allowed. Please reduce the amount.",
                   True, ResultCategory.VALIDATION),
    ResultCodeInfo(4, "WOULD_EXCEED_DAILY_LIMIT",
                   "The amount being transacted would exceed the daily transaction limit",
                   "Transaction would exceed daily limit. Please try a smaller amount.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(5, "WOULD_EXCEED_MINIMUM_BALANCE",
                   "The amount being transacted would leave the account below the minimum balance",
                   "Transaction would leave insufficient balance. Please try a smaller amount.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(6, "UNRESOLVED_PRIMARY_PARTY", "Unresolved primary party",
                   "Account verification failed. Please check your M-Pesa account.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(7, "UNRESOLVED_RECEIVER_PARTY", "Unresolved receiver party",
                   "Recipient account verification failed. Please contact support.",
                   False, ResultCategory.BUSINESS),
    ResultCodeInfo(8, "WOULD_EXCEED_MAXIMUM_BALANCE",
                   "The amount being transacted would exceed the maximum account balance",
                   "Transaction would exceed maximum balance limit.",
                   False, ResultCategory.BUSINESS),
    ResultCodeInfo(11, "DEBIT_ACCOUNT_INVALID", "Debit account is invalid",
                   "Invalid M-Pesa account. Please check your phone number.",
                   True, ResultCategory.VALIDATION),
    ResultCodeInfo(12, "CREDIT_ACCOUNT_INVALID", "Credit account is invalid",
                   "Invalid recipient account. Please contact support.",
                   False, ResultCategory.VALIDATION),
    ResultCodeInfo(13, "UNRESOLVED_DEBIT_ACCOUNT", "Unresolved debit account",
                   "Could not verify your M-Pesa account. Please try again.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(14, "UNRESOLVED_CREDIT_ACCOUNT", "Unresolved credit account",
                   "Could not verify recipient account. Please contact support.",
                   False, ResultCategory.BUSINESS),
    ResultCodeInfo(15, "DUPLICATE_DETECTED", "Duplicate detected",
                   "Duplicate transaction detected. Please wait before retrying.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(17, "INTERNAL_FAILURE", "Internal failure",
                   "System error occurred. Please try again later.",
                   True, ResultCategory.SYSTEM),
    ResultCodeInfo(20, "UNRESOLVED_INITIATOR", "Unresolved initiator",
                   "Transaction initiation failed. Please try again.",
                   True, ResultCategory.SYSTEM),
    ResultCodeInfo(26, "TRAFFIC_BLOCKING_CONDITION", "Traffic blocking condition in place",
                   "Service temporarily unavailable. Please try again later.",
                   True, ResultCategory.SYSTEM),
    ResultCodeInfo(1032, "CANCELLED_BY_USER", "Request cancelled by user",
                   "Payment was cancelled. You can try again anytime.",
                   True, ResultCategory.BUSINESS),
    ResultCodeInfo(1037, "TIMEOUT", "DS timeout user cannot be reached",
                   "Payment request timed out. Please ensure your phone is on and try again.",
                   True, ResultCategory.TIMEOUT),
    ResultCodeInfo(2001, "INVALID_INITIATOR", "The initiator information is invalid",
                   "System configuration error. Please contact support.",
                   False, ResultCategory.SYSTEM),
]

RESULT_CODES: Dict[int, ResultCodeInfo] = {info.code: info for info in _CATALOGUE}


def lookup(code: Optional[int]) -> Optional[ResultCodeInfo]:
    """Return catalogue info for a result code, or None if unknown."""
    if code is None:
        return None
    return RESULT_CODES.get(code)


def user_message(code: Optional[int], fallback: str = "Payment failed. Please try again.") -> str:
    info = lookup(code)
    return info.user_message if info else fallback
