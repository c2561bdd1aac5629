"""Exception taxonomy shared by services, webhooks and the scheduler."""

from typing import Iterable, Optional


class CommsError(Exception):
    """Base class for all domain errors"""


class NotFound(CommsError):
    pass


# ========== Ledger ==========

class LedgerError(CommsError):
    def __init__(self, company_id: int, message: str):
        super().__init__(message)
        self.company_id = company_id


class CompanyNotFound(LedgerError):
    def __init__(self, company_id: int):
        super().__init__(company_id, f"Company {company_id} not found")


class InsufficientCredit(LedgerError):
    def __init__(self, company_id: int, required: int, available: int):
        super().__init__(
            company_id,
            f"Insufficient credits for company {company_id}: need {required}, have {available}"
        )
        self.required = required
        self.available = available


class AccountSuspended(LedgerError):
    def __init__(self, company_id: int):
        super().__init__(company_id, f"Account suspended for company {company_id}")


# ========== Transport ==========

class TransportError(CommsError):
    """Provider rejected or failed to accept an outbound message"""

    retryable = False

    def __init__(self, message: str, provider: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.code = code


class TransportTransient(TransportError):
    """Timeouts, throttling and provider 5xx. Safe to retry later."""

    retryable = True


class TransportPermanent(TransportError):
    """Invalid address, opted-out recipient, rejected payload. Never retried."""


# ========== Rendering / state / suggestions ==========

class MissingVariable(CommsError):
    def __init__(self, names: Iterable[str]):
        self.names = sorted(set(names))
        super().__init__(f"Missing template variables: {', '.join(self.names)}")


class InvalidStateTransition(CommsError):
    def __init__(self, thread_id: Optional[int], current: str, event: str):
        super().__init__(f"Thread {thread_id}: event '{event}' is not allowed from '{current}'")
        self.thread_id = thread_id
        self.current = current
        self.event = event


class SuggestionUnavailable(CommsError):
    pass
