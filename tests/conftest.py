"""
Shared fixtures: in-process fakes for the prover, cosigner and settler, a
proof cache in tmp_path, and a throwaway signing account.
"""
import json
from typing import Optional

import pytest
from eth_account import Account

from zk402.lib.binding import create_payment_binding, proof_hash
from zk402.lib.errors import SettlementFailure
from zk402.lib.events import EventBus
from zk402.lib.pipeline import VerificationPipeline, encode_header
from zk402.lib.proof_cache import ProofCache
from zk402.lib.prover import ProverBridge
from zk402.lib.verifier import VerifierBridge
from zk402.models.common import (
    Decision,
    PaymentParameters,
    SettlementReceipt,
    VerifierResult,
    ZkProofEnvelope,
)
from zk402.services.settlement import Settler

# Plain identifiers, used where nothing gets signed
SERVER = "0xServer"
TOKEN = "0xUSDT0"
CHAIN_ID = 9745
PRICE = 100

# Real addresses, used where EIP-712 signing is involved
PAY_TO_ADDRESS = "0x2222222222222222222222222222222222222222"
TOKEN_ADDRESS = "0x3333333333333333333333333333333333333333"
CLIENT_KEY = "0x" + "11" * 32

PROOF = "proof-bytes-0001"
PROGRAM_IO = '{"inputs":[15,7,8,0,2,1,1],"outputs":[1]}'
MODEL_HASH = "9f2c" * 16

PROVER_STDOUT = "\n".join([
    "Loading model from models/authorization.onnx",
    "Proving... done",
    json.dumps({
        "proof": PROOF,
        "program_io": PROGRAM_IO,
        "decision": "AUTHORIZED",
        "model_hash": MODEL_HASH,
    }),
])


class FakeVerifier(VerifierBridge):
    """Cosigner stand-in; records every call."""

    def __init__(self, approved=True, reason=None, error=None, fixed_nonce=None):
        self.approved = approved
        self.reason = reason
        self.error = error
        self.fixed_nonce = fixed_nonce
        self.calls = []
        self._nonce = 0

    async def verify(self, envelope, tx, model_hash=None):
        self.calls.append({"proof": envelope.proof, "tx": tx, "model_hash": model_hash})
        if self.error is not None:
            raise self.error
        self._nonce += 1
        return VerifierResult(
            approved=self.approved,
            signature="0xc0516" if self.approved else None,
            nonce=self.fixed_nonce if self.fixed_nonce is not None else self._nonce,
            timestamp=1700000000,
            reason=self.reason,
        )

    async def health(self):
        return "healthy"


class FakeProver(ProverBridge):
    def __init__(self, stdout: str = PROVER_STDOUT, cache: Optional[ProofCache] = None):
        super().__init__(cache)
        self.stdout = stdout
        self.runs = 0

    async def execute(self, features):
        self.runs += 1
        return self.stdout

    def execute_sync(self, features):
        self.runs += 1
        return self.stdout


class FakeSettler(Settler):
    def __init__(self, fail_with: Optional[str] = None):
        super().__init__()
        self.fail_with = fail_with
        self.submitted = []

    async def submit(self, payment):
        self.submitted.append(payment)
        if self.fail_with:
            raise SettlementFailure(self.fail_with)
        return SettlementReceipt(
            tx_hash="0x" + "ab" * 32,
            block_number=42,
            from_=payment.from_ or "0xPayer",
            to=payment.pay_to,
            value=str(payment.amount),
            facilitator="0xFacilitator",
        )


def make_params(amount=PRICE, pay_to=SERVER, chain_id=CHAIN_ID, token=TOKEN) -> PaymentParameters:
    return PaymentParameters(amount=amount, pay_to=pay_to, chain_id=chain_id, token=token)


def make_proof(params: Optional[PaymentParameters] = None, proof: str = PROOF) -> ZkProofEnvelope:
    params = params or make_params()
    return ZkProofEnvelope(
        proof=proof,
        program_io=PROGRAM_IO,
        decision=Decision.AUTHORIZED,
        model_hash=MODEL_HASH,
        payment_binding=create_payment_binding(params, proof_hash(proof)),
    )


def payment_header(amount=PRICE, pay_to=SERVER, chain_id=CHAIN_ID, token=TOKEN, signature="0x" + "5a" * 65) -> str:
    return encode_header({
        "signature": signature,
        "amount": amount,
        "payTo": pay_to,
        "chainId": chain_id,
        "token": token,
    })


def proof_header(envelope: Optional[ZkProofEnvelope] = None) -> str:
    return encode_header((envelope or make_proof()).wire())


@pytest.fixture
def params():
    return make_params()


@pytest.fixture
def proof_cache(tmp_path):
    return ProofCache(tmp_path / "proofs")


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def pipeline(params, verifier, bus):
    return VerificationPipeline(pricing=params, network="eip155:9745", verifier=verifier, events=bus)


@pytest.fixture
def account():
    return Account.from_key(CLIENT_KEY)


@pytest.fixture
def domain():
    from zk402.lib.signing import eip712_domain

    return eip712_domain(CHAIN_ID, TOKEN_ADDRESS)
