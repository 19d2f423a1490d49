"""zkpersona.errors — Error taxonomy shared by the wallet, session and proof layers.

Leaf components (commitments, nullifiers, selection, scoring) normalise
malformed input and never raise these; they surface from the components
that talk to the credential agent, the status backend or the ledger.
"""

from __future__ import annotations

from typing import Optional


class PassportError(Exception):
    """Base class for all zkpersona errors."""


class UserRejectedError(PassportError):
    """The holder declined the request in their wallet. Never retried."""


class AgentUnavailableError(PassportError):
    """No credential agent is connected, or it lacks a required capability."""

    def __init__(self, capability: str = "", message: str = ""):
        self.capability = capability
        if not message:
            message = (
                f"Credential agent does not support '{capability}'"
                if capability else "Credential agent is not connected"
            )
        super().__init__(message)


class TransientError(PassportError):
    """Timeout, network failure or a generic agent error. Retriable."""


class RetriesExhaustedError(TransientError):
    """A retriable operation kept failing until the attempt budget ran out."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(f"Wallet operation failed after {attempts} attempts: {detail}")


class SessionFailedError(PassportError):
    """The provider reported a terminal failure for a verification session."""

    def __init__(self, session_id: str, provider: str = "", reason: str = ""):
        self.session_id = session_id
        self.provider = provider
        self.reason = reason
        msg = f"Verification session '{session_id}' failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SessionTimeoutError(PassportError):
    """No terminal status was observed before the polling ceiling."""

    def __init__(self, session_id: str, timeout: float):
        self.session_id = session_id
        self.timeout = timeout
        super().__init__(
            f"Verification session '{session_id}' did not finish within {timeout:.1f}s"
        )


class ReplayRejectedError(PassportError):
    """A presented nullifier has already been consumed on the ledger."""

    def __init__(self, nullifier: str):
        self.nullifier = nullifier
        super().__init__(f"Nullifier already used: {nullifier}")


class ProofExtractionError(PassportError):
    """A proof transaction was accepted but its outputs could not be read back."""

    def __init__(self, transaction_id: str, message: str = ""):
        self.transaction_id = transaction_id
        super().__init__(message or f"Could not extract proof outputs from transaction {transaction_id}")


class UnknownProviderError(PassportError, ValueError):
    """Provider name is not in the registry."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")
