"""
Named payment scenarios for exercising the binding gate.

Every scenario shares one authorized feature vector and one proof bound to
the legitimate price. Attack scenarios reuse that proof but pay with a
single diverging field.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from ..models.common import PaymentEnvelope, PaymentParameters, ZkProofEnvelope
from .binding import create_payment_binding, proof_hash
from .signing import sign_transfer_authorization

# budget, trust, amount, category, velocity, day, time -> AUTHORIZED
SHARED_FEATURES = {
    "budget": 15,
    "trust": 7,
    "amount": 8,
    "category": 0,
    "velocity": 2,
    "day": 1,
    "time": 1,
}

ATTACKER_ADDRESS = "0x000000000000000000000000000000000000dEaD"
TAMPERED_AMOUNT = 10_000_000  # 10 USDT0


@dataclass(frozen=True)
class Scenario:
    name: str
    title: str
    description: str
    expected_outcome: str
    features: Dict[str, int]
    proof_params: PaymentParameters
    payment_params: PaymentParameters

    @property
    def tampered(self) -> bool:
        return self.proof_params != self.payment_params

    def summary(self) -> dict:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "expectedOutcome": self.expected_outcome,
        }


@dataclass
class ScenarioCatalog:
    scenarios: Dict[str, Scenario] = field(default_factory=dict)

    def add(self, scenario: Scenario) -> None:
        self.scenarios[scenario.name] = scenario

    def get(self, name: str) -> Optional[Scenario]:
        return self.scenarios.get(name)

    def names(self) -> List[str]:
        return list(self.scenarios)

    def __iter__(self) -> Iterator[Scenario]:
        return iter(self.scenarios.values())

    def __contains__(self, name: str) -> bool:
        return name in self.scenarios


def default_catalog(pay_to: str, chain_id: int, token: str, price: int = 100) -> ScenarioCatalog:
    legit = PaymentParameters(amount=price, pay_to=pay_to, chain_id=chain_id, token=token)

    catalog = ScenarioCatalog()
    catalog.add(Scenario(
        name="normal",
        title="Normal Flow",
        description="Legitimate payment - proof and payment params match.",
        expected_outcome="200 OK + weather data",
        features=SHARED_FEATURES,
        proof_params=legit,
        payment_params=legit,
    ))
    catalog.add(Scenario(
        name="tampered_amount",
        title="Tampered Amount",
        description="Attacker inflates amount to 10 USDT0 but reuses proof bound to 0.0001 USDT0.",
        expected_outcome="403 Forbidden - Amount mismatch",
        features=SHARED_FEATURES,
        proof_params=legit,
        payment_params=legit.model_copy(update={"amount": TAMPERED_AMOUNT}),
    ))
    catalog.add(Scenario(
        name="tampered_recipient",
        title="Tampered Recipient",
        description="Attacker redirects payment to a different address but reuses proof bound to legitimate payTo.",
        expected_outcome="403 Forbidden - Recipient mismatch",
        features=SHARED_FEATURES,
        proof_params=legit,
        payment_params=legit.model_copy(update={"pay_to": ATTACKER_ADDRESS}),
    ))
    return catalog


def build_scenario_request(
    envelope: ZkProofEnvelope,
    scenario: Scenario,
    account,
    domain: dict,
) -> Tuple[PaymentEnvelope, ZkProofEnvelope]:
    """
    Payment + proof for a scenario run.

    The proof is (re)bound to the scenario's proof parameters; the payment
    is signed over the scenario's payment parameters, which may diverge.
    """
    binding = create_payment_binding(scenario.proof_params, proof_hash(envelope.proof))
    zk_proof = envelope.model_copy(update={"payment_binding": binding})

    actual = scenario.payment_params
    authorization, signature = sign_transfer_authorization(account, actual.pay_to, actual.amount, domain)
    payment = PaymentEnvelope(
        signature=signature,
        authorization=authorization,
        amount=actual.amount,
        pay_to=actual.pay_to,
        chain_id=actual.chain_id,
        token=actual.token,
        from_=account.address,
    )
    return payment, zk_proof
