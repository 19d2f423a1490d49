"""zkpersona — Privacy-preserving humanity credentials."""

__version__ = "0.1.0"

from zkpersona.errors import (
    PassportError, UserRejectedError, AgentUnavailableError,
    TransientError, RetriesExhaustedError,
    SessionFailedError, SessionTimeoutError,
    ReplayRejectedError, ProofExtractionError, UnknownProviderError,
)
from zkpersona.config import Settings
from zkpersona.commitments import CommitmentEngine
from zkpersona.nullifier import NullifierDerivation
from zkpersona.resilience import with_timeout
from zkpersona.selection import (
    StampRecord, prepare_for_aggregation, prepare_for_proof,
    can_meet_score_requirement, calculate_stamp_score,
)
from zkpersona.scoring import Credential, CredentialStatus, ScoreAggregator
from zkpersona.events import EventBus, EventType
from zkpersona.storage import CredentialStore, MemoryBackend, SQLiteBackend, FileBackend
from zkpersona.sessions import (
    SessionStatus, VerificationResult, VerificationSession,
    SessionRegistry, StatusClient, VerificationSessionMachine,
)
from zkpersona.proofs import (
    ProofRequest, ProofResponse, VerificationInput,
    PassportProver, ProofVerifier, VerifierService,
)

__all__ = [
    "PassportError", "UserRejectedError", "AgentUnavailableError",
    "TransientError", "RetriesExhaustedError",
    "SessionFailedError", "SessionTimeoutError",
    "ReplayRejectedError", "ProofExtractionError", "UnknownProviderError",
    "Settings", "CommitmentEngine", "NullifierDerivation", "with_timeout",
    "StampRecord", "prepare_for_aggregation", "prepare_for_proof",
    "can_meet_score_requirement", "calculate_stamp_score",
    "Credential", "CredentialStatus", "ScoreAggregator",
    "EventBus", "EventType",
    "CredentialStore", "MemoryBackend", "SQLiteBackend", "FileBackend",
    "SessionStatus", "VerificationResult", "VerificationSession",
    "SessionRegistry", "StatusClient", "VerificationSessionMachine",
    "ProofRequest", "ProofResponse", "VerificationInput",
    "PassportProver", "ProofVerifier", "VerifierService",
]
