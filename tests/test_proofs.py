"""Tests for zkpersona.proofs — request validation, generation and verification."""

import httpx
import pytest
import respx
from pydantic import ValidationError

from zkpersona.config import Settings
from zkpersona.errors import (
    AgentUnavailableError,
    ProofExtractionError,
    ReplayRejectedError,
    TransientError,
    UserRejectedError,
)
from zkpersona.events import EventBus, EventType
from zkpersona.field import string_to_field, to_field
from zkpersona.proofs import (
    NullifierLedger,
    PassportProver,
    ProofRequest,
    ProofResponse,
    ProofVerifier,
    RemoteVerifierService,
    TransactionExplorer,
    VerificationInput,
    VerifierService,
    app_id_to_field,
    min_score_input,
    normalize_app_id,
)

EXPLORER = "https://explorer.test/v1"
PROGRAM = "passportapp.aleo"
TX_ID = "at1qyqsqp8zy5mx"
NULLIFIER = "123456field"
FAST = {"timeout": 0.5, "max_retries": 2, "retry_delay": 0.01}

TRANSACTION = {
    "id": TX_ID,
    "execution": {
        "proof": "proof1qyqsq",
        "transitions": [
            {"function": "fee_public", "outputs": []},
            {"function": "prove_access", "outputs": [
                {"type": "public", "value": NULLIFIER},
                {"type": "public", "value": "true"},
            ]},
        ],
    },
}


def stamp_plaintext(stamp_id, points):
    return (f"{{ owner: aleo1owner.private, stamp_id: {stamp_id}u32.private, "
            f"points: {points}u64.private, issuer: aleo1issuer.private, issued_at: 1u64.private }}")


class FakeAgent:
    address = "aleo1owner"

    def __init__(self, stamps=None, execution=None, tx_id=TX_ID):
        self.stamps = stamps if stamps is not None else [stamp_plaintext(i, 400) for i in range(1, 7)]
        self.execution = execution or {"proof": "proof1off", "publicOutputs": [f"{NULLIFIER}.public", "true.public"]}
        self.tx_id = tx_id
        self.requests = []

    async def request_record_plaintexts(self, program_id):
        return list(self.stamps)

    async def request_execution(self, tx):
        self.requests.append(tx)
        return self.execution

    async def request_transaction(self, tx):
        self.requests.append(tx)
        return self.tx_id


class FakeVerifierService(VerifierService):
    def __init__(self, valid=True):
        super().__init__()
        self.valid = valid
        self.calls = []

    async def verify_proof(self, proof, *, program, function, public_inputs):
        self.calls.append({"proof": proof, "program": program, "function": function,
                           "public_inputs": public_inputs})
        return self.valid


@pytest.fixture
def explorer_api():
    with respx.mock(base_url=f"{EXPLORER}/testnetbeta", assert_all_called=False) as router:
        yield router


# ─── Wire models ───────────────────────────────────────────────────

class TestModels:
    def test_defaults(self):
        req = ProofRequest(appId="my-app", minScore=20)
        assert req.program == PROGRAM
        assert req.function == "prove_access"
        assert req.on_chain is True

    @pytest.mark.parametrize("data", [
        {"appId": "my-app", "minScore": 101},
        {"appId": "my-app", "minScore": -1},
        {"appId": "", "minScore": 10},
        {"appId": "a\x00b", "minScore": 10},
        {"appId": "x" * 256, "minScore": 10},
        {"appId": "my-app", "minScore": 10, "function": "mint_passport"},
        {"appId": "my-app", "minScore": 10, "walletAddress": "aleo1owner"},
    ])
    def test_invalid_requests(self, data):
        with pytest.raises(ValidationError):
            ProofRequest(**data)

    def test_response_rejects_extra_fields(self):
        with pytest.raises(ValidationError):
            ProofResponse(proof="p", nullifier="n", valid=True, score=42)

    def test_response_alias(self):
        resp = ProofResponse(proof="p", nullifier="n", valid=True, transactionId="at1")
        assert resp.model_dump(by_alias=True)["transactionId"] == "at1"

    def test_app_id_encoding(self):
        assert app_id_to_field("42") == "42field"
        assert app_id_to_field("42field") == "42field"
        assert app_id_to_field("my-app") == to_field(string_to_field("my-app"))
        assert app_id_to_field(" my-app ") == app_id_to_field("my-app")

    def test_app_id_encoding_keeps_whole_id(self):
        prefix = "com.example.marketplace.prod.v1"
        assert app_id_to_field(prefix + ".alpha") != app_id_to_field(prefix + ".beta")
        assert app_id_to_field("\x01") != app_id_to_field("1")

    def test_normalize_app_id(self):
        assert normalize_app_id(" my-app ") == "my-app"
        assert normalize_app_id("42field") == "42"
        assert normalize_app_id("007") == "7"

    def test_min_score_input(self):
        assert min_score_input(20) == "20u64"


# ─── Ledger access ────────────────────────────────────────────────

class TestTransactionExplorer:
    @pytest.mark.asyncio
    async def test_fetch_execution(self, explorer_api):
        explorer_api.get(f"/transaction/{TX_ID}").mock(return_value=httpx.Response(200, json=TRANSACTION))
        explorer = TransactionExplorer(EXPLORER)
        execution = await explorer.fetch_execution(TX_ID)
        await explorer.aclose()
        assert execution.proof == "proof1qyqsq"
        assert execution.outputs == [NULLIFIER, "true"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(404),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"execution": {"transitions": []}}),
    ])
    async def test_unavailable_is_transient(self, explorer_api, response):
        explorer_api.get(f"/transaction/{TX_ID}").mock(return_value=response)
        explorer = TransactionExplorer(EXPLORER)
        with pytest.raises(TransientError):
            await explorer.fetch_execution(TX_ID)
        await explorer.aclose()


class TestNullifierLedger:
    PATH = f"/program/{PROGRAM}/mapping/nullifiers/{NULLIFIER}"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response,expected", [
        (httpx.Response(404), False),
        (httpx.Response(200, json=None), False),
        (httpx.Response(200, json="true"), True),
        (httpx.Response(200, json=True), True),
        (httpx.Response(200, json="false"), False),
    ])
    async def test_is_used(self, explorer_api, response, expected):
        explorer_api.get(self.PATH).mock(return_value=response)
        ledger = NullifierLedger(EXPLORER)
        assert await ledger.is_used(NULLIFIER) is expected
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_fails_closed(self, explorer_api):
        explorer_api.get(self.PATH).mock(return_value=httpx.Response(500))
        ledger = NullifierLedger(EXPLORER)
        with pytest.raises(TransientError):
            await ledger.is_used(NULLIFIER)
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_network_error_fails_closed(self, explorer_api):
        explorer_api.get(self.PATH).mock(side_effect=httpx.ConnectError("down"))
        ledger = NullifierLedger(EXPLORER)
        with pytest.raises(TransientError):
            await ledger.is_used(NULLIFIER)
        await ledger.aclose()


# ─── Verification ─────────────────────────────────────────────────

def verification_input(**kw):
    data = {"proof": "proof1qyqsq", "nullifier": NULLIFIER, "appId": "my-app", "minScore": 20}
    data.update(kw)
    return VerificationInput(**data)


class TestProofVerifier:
    def verifier(self, service, bus=None):
        return ProofVerifier(NullifierLedger(EXPLORER), service, expected_app_id="my-app",
                             expected_min_score=20, bus=bus)

    @pytest.mark.asyncio
    async def test_accepts_valid_fresh_proof(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        service = FakeVerifierService(valid=True)
        async with self.verifier(service) as verifier:
            assert await verifier.verify(verification_input())
        call = service.calls[0]
        assert call["program"] == PROGRAM
        assert call["function"] == "prove_access"
        assert call["public_inputs"] == [app_id_to_field("my-app"), "20u64", NULLIFIER]
        assert not service.initialized

    @pytest.mark.asyncio
    async def test_replay_rejected(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(200, json="true"))
        service = FakeVerifierService()
        bus = EventBus()
        seen = []
        bus.subscribe("proof.rejected", seen.append)
        async with self.verifier(service, bus) as verifier:
            with pytest.raises(ReplayRejectedError) as exc_info:
                await verifier.verify(verification_input())
        assert exc_info.value.nullifier == NULLIFIER
        assert service.calls == []
        assert len(seen) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [{"appId": "other-app"}, {"minScore": 10}, {"proof": ""}, {"nullifier": ""}])
    async def test_mismatch_rejected_without_ledger(self, explorer_api, overrides):
        route = explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        service = FakeVerifierService()
        async with self.verifier(service) as verifier:
            assert not await verifier.verify(verification_input(**overrides))
        assert not route.called
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_app_sharing_a_long_prefix_rejected(self, explorer_api):
        prefix = "com.example.marketplace.prod.v1"
        route = explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        service = FakeVerifierService()
        verifier = ProofVerifier(NullifierLedger(EXPLORER), service, expected_app_id=prefix + ".alpha",
                                 expected_min_score=20)
        async with verifier:
            assert not await verifier.verify(verification_input(appId=prefix + ".beta"))
            assert await verifier.verify(verification_input(appId=prefix + ".alpha"))
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_numeric_app_id_forms_match(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        verifier = ProofVerifier(NullifierLedger(EXPLORER), FakeVerifierService(), expected_app_id="42",
                                 expected_min_score=20)
        async with verifier:
            assert await verifier.verify(verification_input(appId="42field"))
            assert not await verifier.verify(verification_input(appId="\x2a"))

    @pytest.mark.asyncio
    async def test_invalid_proof(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        async with self.verifier(FakeVerifierService(valid=False)) as verifier:
            assert not await verifier.verify(verification_input())

    @pytest.mark.asyncio
    async def test_requires_init(self):
        verifier = self.verifier(FakeVerifierService())
        with pytest.raises(RuntimeError):
            await verifier.verify(verification_input())

    @pytest.mark.asyncio
    async def test_ledger_outage_is_not_acceptance(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(503))
        async with self.verifier(FakeVerifierService()) as verifier:
            with pytest.raises(TransientError):
                await verifier.verify(verification_input())


class TestRemoteVerifierService:
    @pytest.mark.asyncio
    async def test_verify(self):
        with respx.mock:
            route = respx.post("https://verifier.test/verify").mock(
                return_value=httpx.Response(200, json={"valid": True})
            )
            async with RemoteVerifierService("https://verifier.test/") as service:
                assert await service.verify_proof("p", program=PROGRAM, function="prove_access",
                                                  public_inputs=["1field", "20u64", "2field"])
        assert route.called
        assert not service.initialized

    @pytest.mark.asyncio
    async def test_unreachable(self):
        with respx.mock:
            respx.post("https://verifier.test/verify").mock(return_value=httpx.Response(502))
            async with RemoteVerifierService("https://verifier.test") as service:
                with pytest.raises(TransientError):
                    await service.verify_proof("p", program=PROGRAM, function="prove_access", public_inputs=[])

    @pytest.mark.asyncio
    async def test_requires_init(self):
        with pytest.raises(RuntimeError):
            await RemoteVerifierService("https://verifier.test").verify_proof(
                "p", program=PROGRAM, function="prove_access", public_inputs=[])


# ─── Generation ───────────────────────────────────────────────────

class TestPassportProver:
    def prover(self, agent, bus=None):
        return PassportProver(agent, explorer=TransactionExplorer(EXPLORER), bus=bus,
                              call_options=FAST, confirm_options=FAST)

    @pytest.mark.asyncio
    async def test_off_chain(self):
        agent = FakeAgent()
        response = await self.prover(agent).generate(ProofRequest(appId="my-app", minScore=20, onChain=False))
        assert response == ProofResponse(proof="proof1off", nullifier=NULLIFIER, valid=True)
        tx = agent.requests[0]
        assert tx["transitions"][0]["inputs"] == [app_id_to_field("my-app"), "20u64"]
        assert [s["points"] for s in tx["privateInputs"]] == [400] * 5

    @pytest.mark.asyncio
    async def test_on_chain(self, explorer_api):
        explorer_api.get(f"/transaction/{TX_ID}").mock(side_effect=[
            httpx.Response(404),
            httpx.Response(200, json=TRANSACTION),
        ])
        bus = EventBus()
        seen = []
        bus.subscribe(EventType.PROOF_GENERATED, seen.append)
        response = await self.prover(FakeAgent(), bus).generate(ProofRequest(appId="my-app", minScore=20))
        assert response.proof == "proof1qyqsq"
        assert response.nullifier == NULLIFIER
        assert response.valid
        assert response.transaction_id == TX_ID
        assert seen[0].payload.nullifier == NULLIFIER

    @pytest.mark.asyncio
    async def test_response_reveals_nothing_else(self):
        response = await self.prover(FakeAgent()).generate(ProofRequest(appId="my-app", minScore=20, onChain=False))
        assert set(response.model_dump(by_alias=True)) == {"proof", "nullifier", "valid", "transactionId"}

    @pytest.mark.asyncio
    async def test_extraction_failure(self, explorer_api):
        explorer_api.get(f"/transaction/{TX_ID}").mock(return_value=httpx.Response(404))
        with pytest.raises(ProofExtractionError) as exc_info:
            await self.prover(FakeAgent()).generate(ProofRequest(appId="my-app", minScore=20))
        assert exc_info.value.transaction_id == TX_ID

    @pytest.mark.asyncio
    async def test_insufficient_stamps_short_circuits(self):
        agent = FakeAgent(stamps=[stamp_plaintext(1, 10)])
        response = await self.prover(agent).generate(ProofRequest(appId="my-app", minScore=90, onChain=False))
        assert response.valid is False
        assert response.proof == ""
        assert agent.requests == []

    @pytest.mark.asyncio
    async def test_missing_capability_checked_first(self):
        class ReadOnlyAgent:
            async def request_record_plaintexts(self, program_id):
                raise AssertionError("should not be called")

        with pytest.raises(AgentUnavailableError) as exc_info:
            await self.prover(ReadOnlyAgent()).generate(ProofRequest(appId="my-app", minScore=20))
        assert exc_info.value.capability == "request_transaction"

    @pytest.mark.asyncio
    async def test_no_agent(self):
        with pytest.raises(AgentUnavailableError):
            await self.prover(None).generate(ProofRequest(appId="my-app", minScore=20))

    @pytest.mark.asyncio
    async def test_agent_without_records_still_proves(self):
        class ExecOnly:
            async def request_execution(self, tx):
                assert "privateInputs" not in tx
                return {"proof": "p", "publicOutputs": ["9field", "false"]}

        response = await self.prover(ExecOnly()).generate(ProofRequest(appId="7", minScore=50, onChain=False))
        assert response.nullifier == "9field"
        assert response.valid is False

    @pytest.mark.asyncio
    async def test_rejection_propagates(self):
        class Rejecting(FakeAgent):
            async def request_execution(self, tx):
                raise Exception("User rejected the request")

        with pytest.raises(UserRejectedError):
            await self.prover(Rejecting()).generate(ProofRequest(appId="my-app", minScore=20, onChain=False))


class TestFromSettings:
    SETTINGS = Settings(explorer_url=EXPLORER, network="testnetbeta", wallet_timeout=5.0,
                        wallet_max_retries=2, wallet_retry_delay=0.5)

    @pytest.mark.asyncio
    async def test_explorer_and_ledger_use_explorer_url(self, explorer_api):
        explorer_api.get(f"/transaction/{TX_ID}").mock(return_value=httpx.Response(200, json=TRANSACTION))
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        explorer = TransactionExplorer.from_settings(self.SETTINGS)
        ledger = NullifierLedger.from_settings(self.SETTINGS)
        assert (await explorer.fetch_execution(TX_ID)).outputs == [NULLIFIER, "true"]
        assert await ledger.is_used(NULLIFIER) is False
        await explorer.aclose()
        await ledger.aclose()

    @pytest.mark.asyncio
    async def test_prover_uses_wallet_options(self):
        prover = PassportProver.from_settings(self.SETTINGS, FakeAgent())
        assert prover.call_options == {"timeout": 5.0, "max_retries": 2, "retry_delay": 0.5}
        assert prover.network == "testnetbeta"
        assert prover.explorer is not None
        await prover.explorer.aclose()

    def test_remote_verifier_needs_url(self):
        with pytest.raises(ValueError):
            RemoteVerifierService.from_settings(self.SETTINGS)

    @pytest.mark.asyncio
    async def test_verifier_from_settings(self, explorer_api):
        explorer_api.get(TestNullifierLedger.PATH).mock(return_value=httpx.Response(404))
        service = FakeVerifierService()
        verifier = ProofVerifier.from_settings(self.SETTINGS, expected_app_id="my-app",
                                               expected_min_score=20, service=service)
        async with verifier:
            assert await verifier.verify(verification_input())
        assert service.calls[0]["program"] == self.SETTINGS.program_id

    @pytest.mark.asyncio
    async def test_verifier_defaults_to_remote_service(self):
        settings = Settings(explorer_url=EXPLORER, verifier_url="https://verifier.test")
        verifier = ProofVerifier.from_settings(settings, expected_app_id="my-app", expected_min_score=20)
        assert isinstance(verifier.service, RemoteVerifierService)
        await verifier.ledger.aclose()
