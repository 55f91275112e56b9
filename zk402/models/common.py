from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from enum import Enum


class Decision(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    DENIED = "DENIED"


class PaymentParameters(BaseModel):
    """What is being paid: amount in the token's smallest unit, recipient, chain, asset."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    amount: int
    pay_to: str = Field(alias="payTo")
    chain_id: int = Field(alias="chainId")
    token: str

    def wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ProofBinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    amount: int
    pay_to: str = Field(alias="payTo")
    chain_id: int = Field(alias="chainId")
    token: str
    binding_hash: str


class ZkProofEnvelope(BaseModel):
    """Prover output plus the binding computed for it. Read-only once built."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    proof: str = ""
    program_io: str = ""
    decision: Decision
    model_hash: str = ""
    payment_binding: Optional[ProofBinding] = None
    # provenance only, never serialized
    from_cache: bool = Field(False, exclude=True)
    elapsed_ms: Optional[int] = Field(None, exclude=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TransferAuthorization(BaseModel):
    """EIP-3009 TransferWithAuthorization message"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str = Field(alias="validAfter")
    valid_before: str = Field(alias="validBefore")
    nonce: str


class PaymentEnvelope(BaseModel):
    """The caller's claim of what it is paying, independent of the proof."""
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    signature: str
    authorization: Optional[TransferAuthorization] = None
    amount: int
    pay_to: str = Field(alias="payTo")
    chain_id: Optional[int] = Field(None, alias="chainId")
    token: Optional[str] = None
    from_: Optional[str] = Field(None, alias="from")

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class VerifierResult(BaseModel):
    approved: bool
    signature: Optional[str] = None
    nonce: Optional[int] = None
    timestamp: Optional[int] = None
    reason: Optional[str] = None


class EventStatus(str, Enum):
    INFO = "info"
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class LifecycleEvent(BaseModel):
    step: str
    title: str
    description: str
    actor: str
    status: EventStatus
    details: Optional[Dict[str, Any]] = None
    timestamp: int
    request_id: Optional[str] = None

    def wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class PaymentRequirements(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scheme: str = "exact"
    network: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    resource: str
    pay_to: str = Field(alias="payTo")
    asset: str
    extra: Dict[str, Any] = Field(default_factory=lambda: {"zkmlRequired": True})


class SettlementReceipt(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(alias="txHash")
    block_number: Optional[int] = Field(None, alias="blockNumber")
    from_: str = Field(alias="from")
    to: str
    value: str
    facilitator: Optional[str] = None
    method: str = "transferWithAuthorization (EIP-3009)"

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class StartFlowRequest(BaseModel):
    scenario: str = "normal"


class FacilitatorVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment: Optional[Dict[str, Any]] = None
    zk_proof: Optional[Dict[str, Any]] = Field(None, alias="zkProof")


class FacilitatorSettleRequest(BaseModel):
    payment: Optional[Dict[str, Any]] = None


class TaskSendRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[Any] = None
    method: str
    params: Optional[Dict[str, Any]] = None


class SupportedResponse(BaseModel):
    schemes: List[str]
    networks: List[str]
    assets: List[str]
    zkml: bool = True
