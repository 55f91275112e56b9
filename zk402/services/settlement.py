"""
On-chain settlement of x402 payments.

The facilitator wallet submits the payer's signed EIP-3009
transferWithAuthorization and pays the gas. Settlement runs after the
verification decision and never revokes it: failures are reported, not
raised.

Idempotent per authorization nonce, so a payment cannot be settled twice.
"""
import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..lib.errors import SettlementFailure
from ..lib.signing import split_signature
from ..models.common import PaymentEnvelope, SettlementReceipt

logger = logging.getLogger("settlement")

# transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)
EIP3009_ABI = [
    {
        "name": "transferWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
]


class SettlementStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class SettlementResult:
    status: SettlementStatus
    receipt: Optional[SettlementReceipt] = None
    error: Optional[str] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.receipt.tx_hash if self.receipt else None

    def to_dict(self) -> dict:
        d = {"status": self.status.value}
        if self.receipt is not None:
            d.update(self.receipt.wire())
        if self.error:
            d["error"] = self.error
        return d


class Settler(ABC):
    def __init__(self):
        self._results: dict[str, SettlementResult] = {}
        self._lock = threading.Lock()

    @abstractmethod
    async def submit(self, payment: PaymentEnvelope) -> SettlementReceipt:
        """Submit the authorized transfer; raise SettlementFailure on failure."""

    async def settle(self, payment: PaymentEnvelope) -> SettlementResult:
        if payment.authorization is None:
            return SettlementResult(
                status=SettlementStatus.FAILED,
                error="Payment carries no transfer authorization",
            )

        key = payment.authorization.nonce.lower()
        with self._lock:
            previous = self._results.get(key)
            if previous is not None:
                logger.info(f"Settlement already processed for authorization {key[:18]}")
                return previous
            # mark pending so a concurrent request cannot submit the same authorization
            self._results[key] = SettlementResult(status=SettlementStatus.PENDING)

        try:
            receipt = await self.submit(payment)
            result = SettlementResult(status=SettlementStatus.SUCCESS, receipt=receipt)
            logger.info(f"TX confirmed: {receipt.tx_hash} (EIP-3009 transferWithAuthorization)")
        except SettlementFailure as e:
            logger.error(f"Settlement failed: {e.reason}")
            result = SettlementResult(status=SettlementStatus.FAILED, error=e.reason)
        except asyncio.CancelledError:
            # nothing recorded: the authorization may be settled again
            with self._lock:
                self._results.pop(key, None)
            raise
        except Exception as e:
            logger.exception(f"Settlement error for authorization {key[:18]}")
            result = SettlementResult(status=SettlementStatus.FAILED, error=f"Settlement error: {e}")

        with self._lock:
            self._results[key] = result
        return result


class Web3Settler(Settler):
    """Settles through a JSON-RPC node with the facilitator account."""

    def __init__(self, rpc_url: str, token: str, account, timeout: float = 120.0):
        super().__init__()
        from web3 import Web3

        self.rpc_url = rpc_url
        self.token = token
        self.account = account
        self.timeout = timeout
        self._web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    @property
    def facilitator_address(self) -> Optional[str]:
        return self.account.address if self.account is not None else None

    async def submit(self, payment: PaymentEnvelope) -> SettlementReceipt:
        if self.account is None:
            raise SettlementFailure("No MNEMONIC configured - cannot settle on-chain")
        return await asyncio.to_thread(self._submit_blocking, payment)

    def _submit_blocking(self, payment: PaymentEnvelope) -> SettlementReceipt:
        from web3 import Web3

        auth = payment.authorization
        try:
            v, r, s = split_signature(payment.signature)
        except ValueError as e:
            raise SettlementFailure(str(e)) from e

        w3 = self._web3
        try:
            contract = w3.eth.contract(address=Web3.to_checksum_address(self.token), abi=EIP3009_ABI)
            call = contract.functions.transferWithAuthorization(
                Web3.to_checksum_address(auth.from_),
                Web3.to_checksum_address(auth.to),
                int(auth.value),
                int(auth.valid_after),
                int(auth.valid_before),
                bytes.fromhex(auth.nonce.removeprefix("0x")),
                v,
                r,
                s,
            )
            tx = call.build_transaction({
                "from": self.account.address,
                "nonce": w3.eth.get_transaction_count(self.account.address),
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except Exception as e:
            raise SettlementFailure(f"x402 settlement failed: {e}") from e

        if receipt.get("status") != 1:
            raise SettlementFailure(f"Transaction {tx_hash.hex()} reverted")

        return SettlementReceipt(
            tx_hash="0x" + bytes(tx_hash).hex(),
            block_number=receipt.get("blockNumber"),
            from_=auth.from_,
            to=auth.to,
            value=auth.value,
            facilitator=self.account.address,
        )
