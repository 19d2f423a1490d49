"""zkpersona.wallet — Capability-typed calls into the holder's credential agent.

The agent (a browser wallet adapter, a local key holder, a test double)
exposes some subset of these async methods:

    request_transaction(tx: dict) -> str              transaction id
    request_execution(tx: dict) -> dict               {"proof", "publicOutputs"}
    request_record_plaintexts(program_id) -> list     decrypted records
    request_records(program_id) -> list               encrypted records
    decrypt(ciphertext: str) -> str                   one record plaintext

A missing method is a missing capability. Callers get an
AgentUnavailableError up front instead of an AttributeError mid-flow, and
record reads fall back from plaintexts to encrypted records + decrypt.
Every call goes through :func:`zkpersona.resilience.with_timeout`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import AgentUnavailableError, TransientError, UserRejectedError
from .resilience import with_timeout
from .selection import StampRecord

logger = logging.getLogger(__name__)

CIPHERTEXT_PREFIX = "record1"


@dataclass
class TransactionRequest:
    """A ledger transition the agent is asked to execute."""
    address: str
    program: str
    function: str
    inputs: list[Any] = field(default_factory=list)
    network: str = "testnetbeta"
    fee: int = 50_000
    fee_private: bool = False
    # slot descriptors for the agent; never leave the agent call
    private_inputs: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        d = {
            "address": self.address,
            "chainId": self.network,
            "transitions": [{
                "program": self.program,
                "functionName": self.function,
                "inputs": list(self.inputs),
            }],
            "fee": self.fee,
            "feePrivate": self.fee_private,
        }
        if self.private_inputs:
            d["privateInputs"] = list(self.private_inputs)
        return d


def has_capability(agent: Any, name: str) -> bool:
    return agent is not None and callable(getattr(agent, name, None))


def require_capability(agent: Any, name: str) -> Callable:
    if agent is None:
        raise AgentUnavailableError()
    method = getattr(agent, name, None)
    if not callable(method):
        raise AgentUnavailableError(name)
    return method


# ─── Single calls ──────────────────────────────────────────────────

async def request_transaction(agent: Any, tx: TransactionRequest, **options) -> str:
    """Submit a transition; returns the transaction id."""
    method = require_capability(agent, "request_transaction")

    async def call() -> str:
        tx_id = await method(tx.to_dict())
        if not tx_id:
            raise TransientError("Transaction was rejected or failed")
        return str(tx_id)

    tx_id = await with_timeout(call, **options)
    logger.info("Submitted %s/%s as %s", tx.program, tx.function, tx_id)
    return tx_id


async def request_execution(agent: Any, tx: TransactionRequest, **options) -> dict:
    """Execute a transition off-ledger; returns the agent's proof payload."""
    method = require_capability(agent, "request_execution")
    result = await with_timeout(lambda: method(tx.to_dict()), **options)
    if not isinstance(result, dict):
        raise TransientError("Agent returned no execution result")
    return result


async def request_record_plaintexts(agent: Any, program_id: str, **options) -> list:
    method = require_capability(agent, "request_record_plaintexts")
    return list(await with_timeout(lambda: method(program_id), **options) or [])


async def request_records(agent: Any, program_id: str, **options) -> list:
    method = require_capability(agent, "request_records")
    return list(await with_timeout(lambda: method(program_id), **options) or [])


async def decrypt(agent: Any, ciphertext: str, **options) -> str:
    method = require_capability(agent, "decrypt")
    plaintext = await with_timeout(lambda: method(ciphertext), **options)
    return plaintext if isinstance(plaintext, str) else json.dumps(plaintext)


# ─── Record fetch with fallback ───────────────────────────────────

def _plaintext_of(record: Any) -> Optional[str]:
    if isinstance(record, str):
        return record
    if isinstance(record, dict):
        text = record.get("plaintext")
        return text if isinstance(text, str) else None
    return None


def _ciphertext_of(record: Any) -> Optional[str]:
    if isinstance(record, str):
        candidate = record
    elif isinstance(record, dict):
        candidate = record.get("ciphertext") or record.get("record") or ""
    else:
        return None
    if isinstance(candidate, str) and candidate.startswith(CIPHERTEXT_PREFIX):
        return candidate
    return None


async def fetch_record_plaintexts(agent: Any, program_id: str, **options) -> list[str]:
    """All readable records of ``program_id`` owned by the agent's holder.

    Tries plaintext records first. When that capability is missing, fails
    or returns nothing, reads encrypted records and decrypts those that
    look like ciphertexts. Records that fail to decrypt are skipped with a
    warning. Only an agent with neither capability is an error.
    """
    can_plain = has_capability(agent, "request_record_plaintexts")
    can_encrypted = has_capability(agent, "request_records") and has_capability(agent, "decrypt")
    if not can_plain and not can_encrypted:
        raise AgentUnavailableError(
            "request_record_plaintexts",
            "Credential agent can neither read record plaintexts nor decrypt records",
        )

    if can_plain:
        try:
            records = await request_record_plaintexts(agent, program_id, **options)
        except UserRejectedError:
            raise
        except TransientError as exc:
            if not can_encrypted:
                raise
            logger.warning("Plaintext record read failed, falling back to decrypt: %s", exc)
            records = []
        plaintexts = [p for p in (_plaintext_of(r) for r in records) if p]
        if plaintexts or not can_encrypted:
            return plaintexts

    encrypted = await request_records(agent, program_id, **options)
    plaintexts = []
    for record in encrypted:
        ciphertext = _ciphertext_of(record)
        if ciphertext is None:
            continue
        try:
            plaintexts.append(await decrypt(agent, ciphertext, **options))
        except UserRejectedError:
            raise
        except TransientError as exc:
            logger.warning("Skipping record that failed to decrypt: %s", exc)
    logger.debug("Decrypted %d of %d records for %s", len(plaintexts), len(encrypted), program_id)
    return plaintexts


async def fetch_stamp_records(agent: Any, program_id: str, **options) -> list[StampRecord]:
    """Stamp records parsed from the agent's record plaintexts."""
    plaintexts = await fetch_record_plaintexts(agent, program_id, **options)
    stamps = [StampRecord.from_plaintext(p) for p in plaintexts if "stamp_id" in p]
    return [s for s in stamps if s.stamp_id]
