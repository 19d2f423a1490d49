"""zkpersona.proofs — prove_access requests, generation and verification.

An application asks the holder for a proof that their score reaches
``minScore``, bound to the application's ``appId``. The holder's agent
executes the ledger program's ``prove_access`` transition with its private
records; only the proof, the nullifier and the validity bit come back.

    app ──ProofRequest──► PassportProver ──► agent (private inputs stay there)
    app ◄─ProofResponse── {proof, nullifier, valid, transactionId?}
    app ──VerificationInput──► ProofVerifier ──► ledger (nullifier) + verifier service

Usage:
    prover = PassportProver(agent, explorer=TransactionExplorer(url))
    response = await prover.generate(ProofRequest(appId="my-app", minScore=20))

    async with ProofVerifier(ledger, service, expected_app_id="my-app",
                             expected_min_score=20) as verifier:
        ok = await verifier.verify(VerificationInput(**response.model_dump(by_alias=True),
                                                     appId="my-app", minScore=20))
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import DEFAULT_PROGRAM_ID
from .errors import (
    AgentUnavailableError,
    ProofExtractionError,
    ReplayRejectedError,
    TransientError,
)
from .events import EventBus, EventType, ProofIssued
from .field import field_to_int, is_numeric, string_to_field, to_field
from .resilience import with_timeout
from .selection import can_meet_score_requirement, prepare_for_proof
from .wallet import (
    TransactionRequest,
    fetch_stamp_records,
    has_capability,
    request_execution,
    request_transaction,
)

logger = logging.getLogger(__name__)

PROVE_FUNCTION = "prove_access"
DEFAULT_FEE = 50_000


# ─── Wire models ───────────────────────────────────────────────────

class ProofRequest(BaseModel):
    """What an application may ask for. Nothing here identifies the holder."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    program: str = DEFAULT_PROGRAM_ID
    function: Literal["prove_access"] = PROVE_FUNCTION
    app_id: str = Field(..., alias="appId", min_length=1, max_length=255)
    min_score: int = Field(..., alias="minScore", ge=0, le=100)
    on_chain: bool = Field(True, alias="onChain")

    @field_validator("app_id")
    @classmethod
    def no_null_bytes(cls, v: str) -> str:
        if "\x00" in v:
            raise ValueError("Null bytes not allowed")
        return v.strip()


class ProofResponse(BaseModel):
    """Public outputs only. Extra fields are rejected so identity, score or
    stamp composition cannot leak through this type."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    proof: str
    nullifier: str
    valid: bool
    transaction_id: Optional[str] = Field(None, alias="transactionId")


class VerificationInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    proof: str
    nullifier: str
    app_id: str = Field(..., alias="appId", min_length=1, max_length=255)
    min_score: int = Field(..., alias="minScore", ge=0, le=100)
    transaction_id: Optional[str] = Field(None, alias="transactionId")


def normalize_app_id(app_id: str) -> str:
    """Canonical text of an application id: trimmed, numeric ids without the tag."""
    text = app_id.strip()
    if is_numeric(text):
        return str(field_to_int(text))
    return text


def app_id_to_field(app_id: str) -> str:
    """Public field encoding of an application id.

    Numeric ids (``"42"`` / ``"42field"``) are used as-is; anything else
    is hashed whole with SHA-256, so distinct ids never share an encoding.
    """
    text = normalize_app_id(app_id)
    if is_numeric(text):
        return to_field(field_to_int(text))
    return to_field(string_to_field(text))


def min_score_input(min_score: int) -> str:
    return f"{int(min_score)}u64"


def _output_value(output: Any) -> str:
    if isinstance(output, dict):
        output = output.get("value", "")
    text = str(output).strip()
    for visibility in (".public", ".private"):
        if text.endswith(visibility):
            text = text[: -len(visibility)]
    return text


def _is_true(value: Any) -> bool:
    return value is True or _output_value(value) == "true"


# ─── Ledger access ────────────────────────────────────────────────

@dataclass
class ExecutionOutputs:
    proof: str
    outputs: list[str] = field(default_factory=list)


class TransactionExplorer:
    """Reads confirmed transactions from the ledger's REST explorer."""

    def __init__(self, base_url: str, network: str = "testnetbeta", *,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._base = f"{base_url.rstrip('/')}/{network}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, *, client: Optional[httpx.AsyncClient] = None) -> "TransactionExplorer":
        return cls(settings.explorer_url, settings.network, client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_execution(self, transaction_id: str, function: str = PROVE_FUNCTION) -> ExecutionOutputs:
        """Proof and public outputs of ``function`` in a confirmed transaction.

        Raises TransientError while the transaction is unknown or malformed,
        so callers can retry until it is confirmed.
        """
        try:
            resp = await self._client.get(f"{self._base}/transaction/{transaction_id}")
        except httpx.HTTPError as exc:
            raise TransientError(f"Explorer request failed: {exc}") from exc
        if resp.status_code != 200:
            raise TransientError(f"Transaction {transaction_id} not available (HTTP {resp.status_code})")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientError("Explorer returned non-JSON body") from exc

        execution = (data or {}).get("execution") or {}
        for transition in execution.get("transitions") or []:
            if transition.get("function") == function:
                outputs = [_output_value(o) for o in transition.get("outputs") or []]
                return ExecutionOutputs(proof=str(execution.get("proof") or transaction_id), outputs=outputs)
        raise TransientError(f"Transaction {transaction_id} has no {function} transition")


class NullifierLedger:
    """Checks the program's ``nullifiers`` mapping. Fails closed on transport errors."""

    def __init__(self, base_url: str, network: str = "testnetbeta", program_id: str = DEFAULT_PROGRAM_ID, *,
                 mapping: str = "nullifiers", client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._url = f"{base_url.rstrip('/')}/{network}/program/{program_id}/mapping/{mapping}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, *, client: Optional[httpx.AsyncClient] = None) -> "NullifierLedger":
        return cls(settings.explorer_url, settings.network, settings.program_id, client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def is_used(self, nullifier: str) -> bool:
        try:
            resp = await self._client.get(f"{self._url}/{nullifier}")
        except httpx.HTTPError as exc:
            raise TransientError(f"Nullifier lookup failed: {exc}") from exc
        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            raise TransientError(f"Nullifier lookup returned HTTP {resp.status_code}")
        try:
            value = resp.json()
        except ValueError:
            value = resp.text
        return value is not None and _is_true(value)


# ─── Proof verification service ───────────────────────────────────

class VerifierService(ABC):
    """Cryptographic proof checker with an explicit lifecycle.

    ``init()`` must complete before ``verify_proof``; ``dispose()`` releases
    whatever ``init()`` acquired. Instances are injected, never global.
    """

    def __init__(self):
        self.initialized = False

    async def init(self) -> None:
        self.initialized = True

    async def dispose(self) -> None:
        self.initialized = False

    @abstractmethod
    async def verify_proof(self, proof: str, *, program: str, function: str,
                           public_inputs: list[str]) -> bool: ...

    async def __aenter__(self) -> "VerifierService":
        await self.init()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.dispose()


class RemoteVerifierService(VerifierService):
    """Delegates to an HTTP verifier: ``POST {url}/verify`` → ``{"valid": bool}``."""

    def __init__(self, url: str, *, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "RemoteVerifierService":
        if not settings.verifier_url:
            raise ValueError("VERIFIER_URL is not configured")
        return cls(settings.verifier_url, transport=transport)

    async def init(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        await super().init()

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await super().dispose()

    async def verify_proof(self, proof: str, *, program: str, function: str,
                           public_inputs: list[str]) -> bool:
        if self._client is None:
            raise RuntimeError("RemoteVerifierService used before init()")
        try:
            resp = await self._client.post(f"{self._url}/verify", json={
                "proof": proof,
                "program": program,
                "function": function,
                "publicInputs": public_inputs,
            })
            resp.raise_for_status()
            return bool(resp.json().get("valid"))
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise TransientError(f"Proof verifier unavailable: {exc}") from exc


class ProofVerifier:
    """Application-side acceptance check for a ProofResponse."""

    def __init__(
        self,
        ledger: NullifierLedger,
        service: VerifierService,
        *,
        expected_app_id: str,
        expected_min_score: int,
        program_id: str = DEFAULT_PROGRAM_ID,
        bus: Optional[EventBus] = None,
    ):
        self.ledger = ledger
        self.service = service
        self.expected_app_id = expected_app_id
        self.expected_min_score = expected_min_score
        self.program_id = program_id
        self.bus = bus

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        expected_app_id: str,
        expected_min_score: int,
        service: Optional[VerifierService] = None,
        ledger: Optional[NullifierLedger] = None,
        bus: Optional[EventBus] = None,
    ) -> "ProofVerifier":
        """Verifier on the configured explorer; the service defaults to ``VERIFIER_URL``."""
        return cls(
            ledger or NullifierLedger.from_settings(settings),
            service or RemoteVerifierService.from_settings(settings),
            expected_app_id=expected_app_id,
            expected_min_score=expected_min_score,
            program_id=settings.program_id,
            bus=bus,
        )

    async def __aenter__(self) -> "ProofVerifier":
        await self.service.init()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.service.dispose()

    def _reject(self, data: VerificationInput, reason: str) -> bool:
        logger.warning("Proof rejected for app %s: %s", data.app_id, reason)
        if self.bus is not None:
            self.bus.emit(
                EventType.PROOF_REJECTED,
                ProofIssued(data.app_id, data.nullifier, False, data.transaction_id),
                source="verifier",
            )
        return False

    async def verify(self, data: VerificationInput) -> bool:
        """True only if the proof is valid, fresh and for the expected request.

        Raises:
            ReplayRejectedError: the nullifier was already consumed.
            TransientError: ledger or verifier service unreachable.
        """
        if not self.service.initialized:
            raise RuntimeError("Verifier service is not initialised; call init() or use 'async with'")
        if not data.proof or not data.nullifier:
            return self._reject(data, "missing proof or nullifier")
        if (normalize_app_id(data.app_id) != normalize_app_id(self.expected_app_id)
                or app_id_to_field(data.app_id) != app_id_to_field(self.expected_app_id)):
            return self._reject(data, "appId mismatch")
        if data.min_score != self.expected_min_score:
            return self._reject(data, "minScore mismatch")

        if await self.ledger.is_used(data.nullifier):
            self._reject(data, "nullifier already used")
            raise ReplayRejectedError(data.nullifier)

        valid = await self.service.verify_proof(
            data.proof,
            program=self.program_id,
            function=PROVE_FUNCTION,
            public_inputs=[app_id_to_field(data.app_id), min_score_input(data.min_score), data.nullifier],
        )
        if not valid:
            return self._reject(data, "proof did not verify")
        logger.info("Proof accepted for app %s", data.app_id)
        return True


# ─── Proof generation ─────────────────────────────────────────────

class PassportProver:
    """Drives the holder's agent through prove_access."""

    def __init__(
        self,
        agent: Any,
        *,
        explorer: Optional[TransactionExplorer] = None,
        bus: Optional[EventBus] = None,
        network: str = "testnetbeta",
        fee: int = DEFAULT_FEE,
        call_options: Optional[dict] = None,
        confirm_options: Optional[dict] = None,
    ):
        self.agent = agent
        self.explorer = explorer
        self.bus = bus
        self.network = network
        self.fee = fee
        self.call_options = call_options or {}
        self.confirm_options = confirm_options or {"timeout": 15.0, "max_retries": 10, "retry_delay": 3.0}

    @classmethod
    def from_settings(
        cls,
        settings,
        agent: Any,
        *,
        explorer: Optional[TransactionExplorer] = None,
        bus: Optional[EventBus] = None,
    ) -> "PassportProver":
        """Prover using the wallet timeouts and the configured explorer."""
        return cls(
            agent,
            explorer=explorer or TransactionExplorer.from_settings(settings),
            bus=bus,
            network=settings.network,
            call_options=settings.wallet_call_options(),
        )

    def _transaction(self, request: ProofRequest, stamp_slots: list[dict]) -> TransactionRequest:
        tx = TransactionRequest(
            address=str(getattr(self.agent, "address", "") or ""),
            program=request.program,
            function=PROVE_FUNCTION,
            inputs=[app_id_to_field(request.app_id), min_score_input(request.min_score)],
            network=self.network,
            fee=self.fee,
        )
        if stamp_slots:
            tx.private_inputs = stamp_slots
        return tx

    async def _stamp_slots(self, request: ProofRequest) -> Optional[list[dict]]:
        """Slot descriptors for the agent, [] when records are unreadable, None if the requirement cannot be met."""
        if not (has_capability(self.agent, "request_record_plaintexts")
                or has_capability(self.agent, "request_records")):
            logger.debug("Agent cannot expose records; it selects stamps itself")
            return []
        try:
            stamps = await fetch_stamp_records(self.agent, request.program, **self.call_options)
        except AgentUnavailableError:
            return []
        except TransientError as exc:
            logger.warning("Could not read stamp records, skipping local pre-check: %s", exc)
            return []
        if not stamps:
            return []
        if not can_meet_score_requirement(stamps, request.min_score):
            return None
        return [s.to_dict() for s in prepare_for_proof(stamps)]

    async def generate(self, request: ProofRequest) -> ProofResponse:
        if self.agent is None:
            raise AgentUnavailableError()
        if not request.on_chain and not has_capability(self.agent, "request_execution"):
            raise AgentUnavailableError("request_execution")
        if request.on_chain and not has_capability(self.agent, "request_transaction"):
            raise AgentUnavailableError("request_transaction")

        slots = await self._stamp_slots(request)
        if slots is None:
            logger.info("Stamps cannot reach minScore %d for app %s", request.min_score, request.app_id)
            return self._issue(request, ProofResponse(proof="", nullifier="", valid=False))

        tx = self._transaction(request, slots)
        if request.on_chain:
            response = await self._prove_on_chain(tx)
        else:
            response = await self._prove_off_chain(tx)
        return self._issue(request, response)

    async def _prove_off_chain(self, tx: TransactionRequest) -> ProofResponse:
        result = await request_execution(self.agent, tx, **self.call_options)
        outputs = result.get("publicOutputs") or []
        proof = str(result.get("proof") or "")
        if not proof or not outputs:
            raise TransientError("Agent execution result has no proof or public outputs")
        return ProofResponse(
            proof=proof,
            nullifier=_output_value(outputs[0]),
            valid=len(outputs) > 1 and _is_true(outputs[1]),
            transaction_id=result.get("transactionId"),
        )

    async def _prove_on_chain(self, tx: TransactionRequest) -> ProofResponse:
        tx_id = await request_transaction(self.agent, tx, **self.call_options)
        if self.explorer is None:
            raise ProofExtractionError(tx_id, "No explorer configured to read proof outputs")
        try:
            execution = await with_timeout(lambda: self.explorer.fetch_execution(tx_id), **self.confirm_options)
        except TransientError as exc:
            raise ProofExtractionError(tx_id) from exc
        if not execution.outputs:
            raise ProofExtractionError(tx_id, f"Transaction {tx_id} has no public outputs")
        return ProofResponse(
            proof=execution.proof,
            nullifier=execution.outputs[0],
            valid=len(execution.outputs) > 1 and _is_true(execution.outputs[1]),
            transaction_id=tx_id,
        )

    def _issue(self, request: ProofRequest, response: ProofResponse) -> ProofResponse:
        if self.bus is not None:
            self.bus.emit(
                EventType.PROOF_GENERATED,
                ProofIssued(request.app_id, response.nullifier, response.valid, response.transaction_id),
                source="prover",
            )
        return response
