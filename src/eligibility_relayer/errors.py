"""Error taxonomy shared by every relayer component.

Each error carries three things the HTTP layer needs:
- reason: the stable taxonomy name (InputValidation, NotEligible, ...)
- code: a more specific machine code (RootMismatch, EmptyEligibilitySet, ...)
- status: the HTTP status used when the error reaches a route handler
"""

from typing import Any, Dict, Optional


_DIAGNOSTIC_LIMIT = 200


def truncate(detail: Any, limit: int = _DIAGNOSTIC_LIMIT) -> str:
    text = str(detail)
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class RelayerError(Exception):
    reason = "RelayerError"
    status = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.code = code or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "reason": self.reason, "code": self.code}


## --- local failures -------------------------------------------------------


class InputValidation(RelayerError):
    reason = "InputValidation"
    status = 400


class InvalidIdentity(InputValidation):
    pass


class AuthenticationFailure(RelayerError):
    reason = "AuthenticationFailure"
    status = 401


class NotEligible(RelayerError):
    reason = "NotEligible"
    status = 403


class EmptyEligibilitySet(NotEligible):
    pass


class StateInconsistency(RelayerError):
    """Local and ledger state disagree; needs an administrative resync."""

    reason = "StateInconsistency"
    status = 409


class RootNotSet(StateInconsistency):
    pass


class RootMismatch(StateInconsistency):
    def __init__(self, message: str = "", *, local_root: str = "", ledger_root: str = ""):
        super().__init__(message)
        self.local_root = local_root
        self.ledger_root = ledger_root


class NoActiveElection(StateInconsistency):
    status = 400


class DuplicateVote(RelayerError):
    reason = "DuplicateVote"
    status = 409


## --- upstream / configuration failures --------------------------------------


class RegistryUnavailable(RelayerError):
    reason = "RegistryUnavailable"
    status = 502

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(truncate(message), code=code)


class UnsupportedLedgerContract(RelayerError):
    """Fatal configuration error: the deployed contract exposes no known call shape."""

    reason = "UnsupportedLedgerContract"
    status = 500


class ChainError(RelayerError):
    """Ledger read/write failed, timed out or reverted.

    When raised after broadcast, `tx_ref` is set and the transaction's fate is
    unknown to the caller; it must re-run duplicate detection before resubmitting.
    """

    reason = "ChainError"
    status = 502

    def __init__(self, message: str = "", *, code: Optional[str] = None, tx_ref: Optional[str] = None):
        super().__init__(truncate(message), code=code)
        self.tx_ref = tx_ref

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.tx_ref:
            out["txRef"] = self.tx_ref
        return out
