"""
Bridge to the external proof verifier (cosigner).

POST {base_url}/verify with {proof, program_io, tx, model_hash}; the
verifier answers {approved, signature?, nonce?, reason?}. SNARK verification
takes a while, so the timeout is minutes. No retries: the pipeline decides
what a failure means.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import ValidationError

from ..models.common import VerifierResult, ZkProofEnvelope
from .errors import VerifierUnreachable

logger = logging.getLogger("verifier")


class VerifierBridge(ABC):
    @abstractmethod
    async def verify(self, envelope: ZkProofEnvelope, tx: dict, model_hash: Optional[str] = None) -> VerifierResult:
        """
        Submit a proof with the transaction it authorizes.

        Returns the verifier's answer, approved or not. Raises
        VerifierUnreachable when no answer could be obtained.
        """

    async def health(self) -> str:
        return "unknown"


class HttpVerifierBridge(VerifierBridge):
    def __init__(self, base_url: str, timeout: float = 300.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def verify(self, envelope: ZkProofEnvelope, tx: dict, model_hash: Optional[str] = None) -> VerifierResult:
        body = {
            "proof": envelope.proof,
            "program_io": envelope.program_io,
            "tx": tx,
            "model_hash": model_hash or envelope.model_hash,
        }
        logger.info(f"Submitting proof for verification ({len(envelope.proof)} proof chars)")

        try:
            async with self._client(self.timeout) as client:
                response = await client.post(f"{self.base_url}/verify", json=body)
        except httpx.TimeoutException as e:
            logger.error(f"Verifier timeout after {self.timeout}s")
            raise VerifierUnreachable(f"Verifier timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error(f"Verifier request failed: {e}")
            raise VerifierUnreachable(f"Verifier request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise VerifierUnreachable(
                f"Verifier returned {response.status_code} with a non-JSON body"
            ) from e

        if not isinstance(data, dict) or "approved" not in data:
            raise VerifierUnreachable(f"Verifier returned {response.status_code} without a decision")

        try:
            result = VerifierResult.model_validate(data)
        except ValidationError as e:
            raise VerifierUnreachable(f"Verifier returned an unexpected body: {e}") from e

        reason = f", reason={result.reason}" if result.reason else ""
        logger.info(f"Response: approved={result.approved}{reason}")
        return result

    async def health(self) -> str:
        try:
            async with self._client(5.0) as client:
                response = await client.get(f"{self.base_url}/health")
            return "healthy" if response.is_success else "unhealthy"
        except httpx.HTTPError:
            return "unreachable"


class NonceLedger:
    """
    Monotonic guard over verifier approval nonces.

    The verifier issues strictly increasing nonces per session; any nonce at
    or below the highest one already acted on is a replayed approval.
    """

    def __init__(self):
        self._highest: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def highest(self) -> Optional[int]:
        return self._highest

    def claim(self, nonce: int) -> bool:
        with self._lock:
            if self._highest is not None and nonce <= self._highest:
                return False
            self._highest = nonce
            return True
