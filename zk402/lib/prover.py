"""
Bridge to the external zkML prover.

The prover is an executable that takes the feature vector as a JSON
argument, may print diagnostics, and prints its result as JSON on the last
line of stdout:

    {"proof": ..., "program_io": ..., "decision": "AUTHORIZED", "model_hash": ...}

The payment binding is always computed here from the proof bytes; a binding
reported by the process itself is discarded.
"""
import asyncio
import json
import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..models.common import PaymentParameters, ZkProofEnvelope
from .binding import create_payment_binding, proof_hash
from .errors import ProverFailure
from .proof_cache import ProofCache

logger = logging.getLogger("prover")

REQUIRED_KEYS = ("proof", "program_io", "decision", "model_hash")


def parse_prover_output(stdout: str) -> dict:
    """Parse the JSON result from the last non-empty line of prover stdout."""
    lines = [line for line in (stdout or "").strip().splitlines() if line.strip()]
    if not lines:
        raise ProverFailure("Prover produced no output")
    try:
        result = json.loads(lines[-1])
    except json.JSONDecodeError as e:
        raise ProverFailure(f"Failed to parse prover output: {e}") from e
    if not isinstance(result, dict):
        raise ProverFailure("Prover output is not a JSON object")
    missing = [key for key in REQUIRED_KEYS if key not in result]
    if missing:
        raise ProverFailure(f"Prover output missing fields: {', '.join(missing)}")
    return result


class ProverBridge(ABC):
    """
    Produces bound proof envelopes. Subclasses supply the external call;
    caching and binding live here so every implementation gets them.
    """

    def __init__(self, cache: Optional[ProofCache] = None):
        self.cache = cache

    @abstractmethod
    async def execute(self, features: dict) -> str:
        """Run the prover without blocking the event loop; return its stdout."""

    @abstractmethod
    def execute_sync(self, features: dict) -> str:
        """Run the prover, blocking; return its stdout."""

    def cached(self, features: dict, params: PaymentParameters) -> Optional[ZkProofEnvelope]:
        if self.cache is None:
            return None
        return self.cache.get(params, features)

    def run_sync(self, features: dict, params: PaymentParameters, use_cache: bool = True) -> ZkProofEnvelope:
        if use_cache:
            cached = self.cached(features, params)
            if cached is not None:
                logger.info("Using cached proof")
                return cached

        logger.info(f"Running zkML inference for features: {json.dumps(features)}")
        started = time.monotonic()
        stdout = self.execute_sync(features)
        return self._finish(stdout, features, params, started, use_cache)

    async def run_async(self, features: dict, params: PaymentParameters, use_cache: bool = True) -> ZkProofEnvelope:
        if use_cache:
            cached = self.cached(features, params)
            if cached is not None:
                logger.info("Using cached proof")
                return cached

        logger.info(f"Running zkML inference (async) for features: {json.dumps(features)}")
        started = time.monotonic()
        stdout = await self.execute(features)
        return self._finish(stdout, features, params, started, use_cache)

    def _finish(
        self,
        stdout: str,
        features: dict,
        params: PaymentParameters,
        started: float,
        use_cache: bool,
    ) -> ZkProofEnvelope:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Completed in {elapsed_ms}ms")

        result = parse_prover_output(stdout)
        binding = create_payment_binding(params, proof_hash(result["proof"]))
        try:
            envelope = ZkProofEnvelope(
                proof=result["proof"],
                program_io=result["program_io"],
                decision=result["decision"],
                model_hash=result["model_hash"],
                payment_binding=binding,
            )
        except ValidationError as e:
            raise ProverFailure(f"Unexpected prover output: {e}") from e

        logger.info(f"Decision: {envelope.decision.value}")

        if use_cache and self.cache is not None:
            self.cache.put(params, features, envelope)

        return envelope.model_copy(update={"from_cache": False, "elapsed_ms": elapsed_ms})


class SubprocessProverBridge(ProverBridge):
    """Runs the prover binary as a child process."""

    def __init__(
        self,
        binary: str,
        models_dir: Optional[str] = None,
        timeout: float = 900.0,
        cache: Optional[ProofCache] = None,
    ):
        super().__init__(cache)
        self.binary = str(binary)
        self.models_dir = models_dir
        self.timeout = timeout

    def is_available(self) -> bool:
        path = Path(self.binary)
        return path.exists() and os.access(path, os.X_OK)

    def _env(self) -> dict:
        env = dict(os.environ)
        if self.models_dir:
            env["MODELS_DIR"] = str(self.models_dir)
        return env

    def execute_sync(self, features: dict) -> str:
        try:
            result = subprocess.run(
                [self.binary, json.dumps(features)],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as e:
            raise ProverFailure(f"Prover timed out after {self.timeout}s") from e
        except OSError as e:
            raise ProverFailure(f"Prover could not be started: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error(f"Prover exited with {result.returncode}: {stderr}")
            raise ProverFailure(f"Prover exited with code {result.returncode}: {stderr or 'no stderr'}")
        return result.stdout

    async def execute(self, features: dict) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                json.dumps(features),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise ProverFailure(f"Prover could not be started: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProverFailure(f"Prover timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            logger.error(f"Async prover failed with {proc.returncode}: {err}")
            raise ProverFailure(f"Prover exited with code {proc.returncode}: {err or 'no stderr'}")
        return stdout.decode("utf-8", errors="replace")
