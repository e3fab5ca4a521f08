# errors.py
"""
Exception hierarchy shared by the engine, the ledger store and the API.

EngineError subclasses are caller-facing: raised before any state changes
and mapped to HTTP statuses by app.py. ConsistencyError is not; it means the
single-writer invariant was broken and must surface loudly.
"""


class EngineError(Exception):
    """Base engine error"""


class StateError(EngineError):
    """Action performed in invalid state"""


class BetError(EngineError):
    """Invalid bet parameters"""


class AuthorizationError(EngineError):
    """Caller is not allowed to perform this action"""


# =========================
# LEDGER
# =========================

class LedgerError(EngineError):
    """Base ledger store error"""


class AccountNotFoundError(LedgerError):
    pass


class AccountExistsError(LedgerError):
    pass


class InsufficientFundsError(LedgerError):
    pass


class AccountFrozenError(LedgerError, AuthorizationError):
    pass


class AccountBannedError(LedgerError, AuthorizationError):
    pass


class HouseFundsError(LedgerError):
    """House treasury cannot cover a withdrawal"""


class BackupError(LedgerError):
    """Backup payload is malformed"""


# =========================
# FATAL
# =========================

class ConsistencyError(RuntimeError):
    """Double settlement or a bet that does not belong to the current round."""
