import asyncio

import pytest
from eth_account import Account

from conftest import (
    CHAIN_ID,
    PAY_TO_ADDRESS,
    PRICE,
    SERVER,
    TOKEN,
    TOKEN_ADDRESS,
    FakeSettler,
    FakeVerifier,
    make_params,
    make_proof,
    payment_header,
    proof_header,
)

from zk402.lib.errors import BindingMismatch, MalformedPayment, VerifierRejected, VerifierUnreachable
from zk402.lib.pipeline import (
    PipelineState,
    VerificationPipeline,
    decode_header,
    encode_header,
)
from zk402.lib.signing import sign_transfer_authorization
from zk402.models.common import PaymentEnvelope, PaymentParameters

ATTACKER = "0x000000000000000000000000000000000000dEaD"


def run(pipeline: VerificationPipeline, payment, proof, **kwargs):
    """Run the pipeline once; returns (outcome, events published during the run)."""
    async def go():
        sub = pipeline.events.subscribe()
        try:
            outcome = await pipeline.run(payment, proof, resource="/weather", **kwargs)
            return outcome, sub.drain()
        finally:
            sub.close()

    return asyncio.run(go())


def steps(events):
    return [e.step for e in events]


class TestHeaders:
    def test_round_trip(self):
        assert decode_header(encode_header({"a": 1})) == {"a": 1}

    @pytest.mark.parametrize("value", ["%%%", "bm90IGpzb24=", encode_header([1, 2])[:-1], "WzEsMl0="])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            decode_header(value)


class TestFirstContact:
    def test_no_payment_is_402(self, pipeline):
        outcome, events = run(pipeline, None, None)
        assert outcome.status_code == 402
        assert outcome.state == PipelineState.PAYMENT_REQUIRED
        accepts = outcome.body["x402"]["accepts"][0]
        assert accepts == {
            "scheme": "exact",
            "network": "eip155:9745",
            "maxAmountRequired": str(PRICE),
            "resource": "/weather",
            "payTo": SERVER,
            "asset": TOKEN,
            "extra": {"zkmlRequired": True},
        }
        assert steps(events) == ["payment_required"]

    def test_no_payment_never_contacts_verifier(self, pipeline, verifier):
        run(pipeline, None, proof_header())
        assert verifier.calls == []


class TestStructuralGates:
    def test_missing_proof(self, pipeline, verifier):
        outcome, events = run(pipeline, payment_header(), None)
        assert outcome.status_code == 400
        assert outcome.rejected_at == PipelineState.AWAITING_PROOF
        assert outcome.body["error"] == "ZK-402 requires X-ZK-Proof header"
        assert "zkML proof" in outcome.reason
        assert verifier.calls == []
        assert steps(events) == ["verify_completed"]

    def test_payment_not_base64(self, pipeline):
        outcome, _ = run(pipeline, "not-base64!", proof_header())
        assert outcome.status_code == 400
        assert outcome.reason == "Invalid X-Payment header: not valid base64 JSON"
        assert outcome.rejected_at == PipelineState.CHECKING_STRUCTURE

    def test_proof_not_base64(self, pipeline):
        outcome, _ = run(pipeline, payment_header(), "not-base64!")
        assert outcome.status_code == 400
        assert outcome.reason == "Invalid X-ZK-Proof header: not valid base64 JSON"

    def test_payment_missing_signature(self, pipeline, verifier):
        header = encode_header({"amount": PRICE, "payTo": SERVER})
        outcome, _ = run(pipeline, header, proof_header())
        assert outcome.status_code == 400
        assert outcome.reason == "Invalid payment: missing signature, amount, or payTo"
        assert verifier.calls == []

    def test_proof_missing_decision(self, pipeline):
        outcome, _ = run(pipeline, payment_header(), encode_header({"proof": "p"}))
        assert outcome.status_code == 400
        assert outcome.body["error"] == "Invalid ZK proof"


class TestScenarioFixtures:
    def test_matching_params_accepted(self, pipeline, verifier):
        outcome, events = run(pipeline, payment_header(), proof_header())
        assert outcome.accepted
        assert outcome.status_code == 200
        assert outcome.payment_params == make_params()
        assert len(verifier.calls) == 1
        assert steps(events) == [
            "verify_started",
            "zkml_proof_received",
            "zkml_binding_check",
            "zkml_proof_verified",
            "verify_completed",
        ]

    def test_tampered_amount_rejected(self, pipeline, verifier):
        outcome, events = run(pipeline, payment_header(amount=10_000_000), proof_header())
        assert outcome.status_code == 403
        assert "Amount mismatch: proof bound to 100, payment requests 10000000" in outcome.reason
        assert outcome.rejected_at == PipelineState.CHECKING_BINDING
        assert isinstance(outcome.error, BindingMismatch)
        assert outcome.error.field == "amount"
        assert outcome.body == {"error": "ZK proof binding verification failed", "reason": outcome.reason}
        assert verifier.calls == []
        assert steps(events)[-2:] == ["zkml_proof_rejected", "verify_completed"]
        assert events[-1].description.startswith("Attack blocked: Amount mismatch")

    def test_tampered_recipient_rejected(self, pipeline, verifier):
        outcome, _ = run(pipeline, payment_header(pay_to=ATTACKER), proof_header())
        assert outcome.status_code == 403
        assert "Recipient mismatch" in outcome.reason
        assert outcome.error.payment_value == ATTACKER
        assert verifier.calls == []

    def test_binding_checked_against_payment_not_proof(self, pipeline, verifier):
        # proof bound to the attacker's params is still checked against what is paid
        forged = make_proof(make_params(amount=10_000_000))
        outcome, _ = run(pipeline, payment_header(), proof_header(forged))
        assert outcome.status_code == 403
        assert outcome.reason == "Amount mismatch: proof bound to 10000000, payment requests 100"

    def test_missing_chain_and_token_fall_back_to_price(self, pipeline):
        header = encode_header({"signature": "0xsig", "amount": PRICE, "payTo": SERVER})
        outcome, _ = run(pipeline, header, proof_header())
        assert outcome.accepted
        assert outcome.payment_params.chain_id == CHAIN_ID
        assert outcome.payment_params.token == TOKEN

    def test_proof_without_binding_rejected(self, pipeline):
        unbound = make_proof().model_copy(update={"payment_binding": None})
        outcome, _ = run(pipeline, payment_header(), proof_header(unbound))
        assert outcome.status_code == 403
        assert outcome.reason == "Proof carries no payment binding"

    def test_each_request_decided_independently(self, pipeline):
        first, _ = run(pipeline, payment_header(amount=10_000_000), proof_header())
        second, _ = run(pipeline, payment_header(), proof_header())
        assert first.status_code == 403
        assert second.accepted


class TestVerifierGate:
    def test_rejection_is_403_with_reason(self, params, bus):
        pipeline = VerificationPipeline(params, "eip155:9745", FakeVerifier(approved=False, reason="Invalid proof"), bus)
        outcome, events = run(pipeline, payment_header(), proof_header())
        assert outcome.status_code == 403
        assert outcome.reason == "Invalid proof"
        assert isinstance(outcome.error, VerifierRejected)
        assert outcome.rejected_at == PipelineState.CHECKING_VERIFIER
        assert "zkml_proof_rejected" in steps(events)

    def test_unreachable_fails_closed(self, params, bus):
        verifier = FakeVerifier(error=VerifierUnreachable("Verifier request failed: connection refused"))
        pipeline = VerificationPipeline(params, "eip155:9745", verifier, bus)
        outcome, events = run(pipeline, payment_header(), proof_header())
        assert not outcome.accepted
        assert outcome.status_code == 503
        assert outcome.body["error"] == "Cosigner unavailable"
        assert events[-1].step == "verify_completed"
        assert events[-1].status.value == "failure"

    def test_unexpected_verifier_error_fails_closed(self, params, bus):
        pipeline = VerificationPipeline(params, "eip155:9745", FakeVerifier(error=KeyError("approved")), bus)
        outcome, _ = run(pipeline, payment_header(), proof_header())
        assert outcome.status_code == 503
        assert isinstance(outcome.error, VerifierUnreachable)

    def test_replayed_nonce_rejected(self, params, bus):
        pipeline = VerificationPipeline(params, "eip155:9745", FakeVerifier(fixed_nonce=9), bus)
        first, _ = run(pipeline, payment_header(), proof_header())
        second, _ = run(pipeline, payment_header(), proof_header())
        assert first.accepted
        assert second.status_code == 403
        assert second.reason == "Cosigner approval nonce 9 was already used"

    def test_verifier_sees_payment_tx(self, pipeline, verifier):
        run(pipeline, payment_header(), proof_header())
        assert verifier.calls[0]["tx"] == {"to": SERVER, "amount": str(PRICE), "token": TOKEN}


class TestDeferredCompletion:
    def test_accept_without_terminal_event(self, pipeline):
        outcome, events = run(pipeline, payment_header(), proof_header(), defer_completion=True, request_id="run-1")
        assert outcome.accepted
        assert "verify_completed" not in steps(events)
        assert {e.request_id for e in events} == {"run-1"}

    def test_reject_without_terminal_event(self, pipeline):
        outcome, events = run(pipeline, payment_header(amount=1), proof_header(), defer_completion=True)
        assert outcome.status_code == 403
        assert "verify_completed" not in steps(events)
        assert steps(events)[-1] == "zkml_proof_rejected"

    def test_deferred_run_does_not_settle(self, params, bus, verifier):
        settler = FakeSettler()
        pipeline = VerificationPipeline(params, "eip155:9745", verifier, bus, settler=settler)
        outcome, _ = run(pipeline, payment_header(), proof_header(), defer_completion=True)
        assert outcome.accepted
        assert outcome.settlement is None
        assert settler.submitted == []


SIGNED_PRICING = PaymentParameters(amount=PRICE, pay_to=PAY_TO_ADDRESS, chain_id=CHAIN_ID, token=TOKEN_ADDRESS)


def signed_pipeline(verifier, bus, settler=None):
    return VerificationPipeline(SIGNED_PRICING, "eip155:9745", verifier, bus, settler=settler)


def signed_payment(account, domain, to=PAY_TO_ADDRESS, value=PRICE, amount=PRICE) -> PaymentEnvelope:
    authorization, signature = sign_transfer_authorization(account, to, value, domain)
    return PaymentEnvelope(
        signature=signature,
        authorization=authorization,
        amount=amount,
        pay_to=PAY_TO_ADDRESS,
        chain_id=CHAIN_ID,
        token=TOKEN_ADDRESS,
        from_=account.address,
    )


def signed_proof_header():
    return proof_header(make_proof(SIGNED_PRICING))


class SlowVerifier(FakeVerifier):
    async def verify(self, envelope, tx, model_hash=None):
        await asyncio.sleep(0.01)
        return await super().verify(envelope, tx, model_hash)


class BrokenSettler(FakeSettler):
    async def submit(self, payment):
        self.submitted.append(payment)
        raise ConnectionResetError("rpc connection reset")


class TestSettlement:
    def test_accepted_payment_is_settled(self, bus, verifier, account, domain):
        settler = FakeSettler()
        pipeline = signed_pipeline(verifier, bus, settler=settler)
        header = encode_header(signed_payment(account, domain).wire())
        outcome, events = run(pipeline, header, signed_proof_header())
        assert outcome.accepted
        assert outcome.settlement.tx_hash == "0x" + "ab" * 32
        assert len(settler.submitted) == 1
        assert steps(events)[-3:] == ["settlement_pending", "settlement_completed", "verify_completed"]
        assert events[-1].details == {"txHash": "0x" + "ab" * 32}

    def test_settlement_failure_keeps_acceptance(self, bus, verifier, account, domain):
        pipeline = signed_pipeline(verifier, bus, settler=FakeSettler(fail_with="insufficient funds for gas"))
        header = encode_header(signed_payment(account, domain).wire())
        outcome, events = run(pipeline, header, signed_proof_header())
        assert outcome.accepted
        assert outcome.status_code == 200
        assert outcome.settlement.status.value == "failed"
        assert outcome.settlement.error == "insufficient funds for gas"
        completed = [e for e in events if e.step == "settlement_completed"][0]
        assert completed.status.value == "failure"

    def test_unexpected_settler_error_keeps_acceptance(self, bus, verifier, account, domain):
        pipeline = signed_pipeline(verifier, bus, settler=BrokenSettler())
        header = encode_header(signed_payment(account, domain).wire())
        outcome, events = run(pipeline, header, signed_proof_header())
        assert outcome.accepted
        assert outcome.settlement.status.value == "failed"
        assert outcome.settlement.error == "Settlement error: rpc connection reset"
        assert steps(events)[-1] == "verify_completed"

    def test_rejected_payment_never_settled(self, params, bus, verifier):
        settler = FakeSettler()
        pipeline = VerificationPipeline(params, "eip155:9745", verifier, bus, settler=settler)
        run(pipeline, payment_header(amount=10_000_000), proof_header())
        assert settler.submitted == []

    def test_payment_without_authorization_reports_failure(self, params, bus, verifier):
        pipeline = VerificationPipeline(params, "eip155:9745", verifier, bus, settler=FakeSettler())
        outcome, _ = run(pipeline, payment_header(), proof_header())
        assert outcome.accepted
        assert outcome.settlement.error == "Payment carries no transfer authorization"


class TestAuthorizationGate:
    def test_redirected_authorization_rejected(self, bus, verifier, account, domain):
        # payment claims the price to the server, the signed transfer pays the attacker much more
        settler = FakeSettler()
        pipeline = signed_pipeline(verifier, bus, settler=settler)
        payment = signed_payment(account, domain, to=ATTACKER, value=10_000_000)
        outcome, _ = run(pipeline, encode_header(payment.wire()), signed_proof_header())
        assert outcome.status_code == 403
        assert outcome.rejected_at == PipelineState.CHECKING_STRUCTURE
        assert outcome.reason == f"Authorization mismatch: payment names {PAY_TO_ADDRESS}, authorization transfers to {ATTACKER}"
        assert outcome.error.field == "authorization.to"
        assert verifier.calls == []
        assert settler.submitted == []

    def test_authorization_value_must_match_amount(self, bus, verifier, account, domain):
        settler = FakeSettler()
        pipeline = signed_pipeline(verifier, bus, settler=settler)
        payment = signed_payment(account, domain, value=10_000_000)
        outcome, _ = run(pipeline, encode_header(payment.wire()), signed_proof_header())
        assert outcome.status_code == 403
        assert outcome.reason == "Authorization mismatch: payment claims 100, authorization transfers 10000000"
        assert isinstance(outcome.error, BindingMismatch)
        assert verifier.calls == []
        assert settler.submitted == []

    def test_unverifiable_signature_rejected(self, bus, verifier, account, domain):
        pipeline = signed_pipeline(verifier, bus)
        payment = signed_payment(account, domain).model_copy(update={"signature": "0x" + "5a" * 65})
        outcome, _ = run(pipeline, encode_header(payment.wire()), signed_proof_header())
        assert outcome.status_code == 400
        assert outcome.reason == "Invalid payment: authorization signature could not be verified"
        assert isinstance(outcome.error, MalformedPayment)
        assert verifier.calls == []

    def test_signer_must_be_authorization_sender(self, bus, verifier, account, domain):
        pipeline = signed_pipeline(verifier, bus)
        payment = signed_payment(Account.from_key("0x" + "44" * 32), domain)
        forged = payment.model_copy(update={
            "authorization": payment.authorization.model_copy(update={"from_": account.address}),
            "from_": account.address,
        })
        outcome, _ = run(pipeline, encode_header(forged.wire()), signed_proof_header())
        assert outcome.status_code == 400
        assert outcome.reason.startswith(f"Invalid payment: authorization from {account.address} is signed by 0x")
        assert verifier.calls == []

    def test_non_numeric_value_rejected(self, bus, verifier, account, domain):
        pipeline = signed_pipeline(verifier, bus)
        payment = signed_payment(account, domain)
        broken = payment.model_copy(update={"authorization": payment.authorization.model_copy(update={"value": "lots"})})
        with pytest.raises(MalformedPayment, match="is not an integer"):
            pipeline.check_authorization(broken)


class TestConcurrentRequests:
    def test_interleaved_requests_decided_independently(self, params, bus):
        verifier = SlowVerifier()
        pipeline = VerificationPipeline(params, "eip155:9745", verifier, bus)
        requests = {
            "legit-1": payment_header(),
            "tampered": payment_header(amount=10_000_000),
            "legit-2": payment_header(),
            "legit-3": payment_header(),
        }

        async def go():
            sub = bus.subscribe()
            try:
                outcomes = await asyncio.gather(*(
                    pipeline.run(header, proof_header(), resource="/weather", request_id=request_id)
                    for request_id, header in requests.items()
                ))
                return dict(zip(requests, outcomes)), sub.drain()
            finally:
                sub.close()

        outcomes, events = asyncio.run(go())
        assert outcomes["tampered"].status_code == 403
        assert outcomes["tampered"].payment.amount == 10_000_000
        for request_id in ("legit-1", "legit-2", "legit-3"):
            assert outcomes[request_id].accepted
            assert outcomes[request_id].payment.amount == PRICE
        assert len(verifier.calls) == 3

        by_request = {}
        for e in events:
            by_request.setdefault(e.request_id, []).append(e.step)
        assert by_request["tampered"] == [
            "verify_started",
            "zkml_proof_received",
            "zkml_binding_check",
            "zkml_proof_rejected",
            "verify_completed",
        ]
        for request_id in ("legit-1", "legit-2", "legit-3"):
            assert by_request[request_id] == [
                "verify_started",
                "zkml_proof_received",
                "zkml_binding_check",
                "zkml_proof_verified",
                "verify_completed",
            ]
