"""
Content-addressed proof cache.

Entries are JSON files named by SHA-256 of the canonical
{"params", "features"} document, so identical inputs always hit the same
file. Named scenario proofs live beside them as <name>.json.
No eviction: proofs are small and the input space is scenario-driven.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from ..models.common import PaymentParameters, ZkProofEnvelope
from .binding import sha256_hex
from .errors import ScenarioProofMissing

logger = logging.getLogger("proof_cache")


def canonical_json(data) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def cache_key(params: PaymentParameters, features: dict) -> str:
    return sha256_hex(canonical_json({"params": params.wire(), "features": features}))


class ProofCache:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, params: PaymentParameters, features: dict) -> Path:
        return self.directory / f"{cache_key(params, features)}.json"

    def get(self, params: PaymentParameters, features: dict) -> Optional[ZkProofEnvelope]:
        """Return the cached envelope for these inputs, or None."""
        return self._read(self.path_for(params, features))

    def put(self, params: PaymentParameters, features: dict, envelope: ZkProofEnvelope) -> Path:
        """Store an envelope. Overwrites are idempotent: same key, same inputs."""
        path = self.path_for(params, features)
        self._write(path, envelope)
        return path

    def get_scenario(self, name: str) -> ZkProofEnvelope:
        envelope = self._read(self._scenario_path(name))
        if envelope is None:
            raise ScenarioProofMissing(name)
        return envelope

    def put_scenario(self, name: str, envelope: ZkProofEnvelope) -> Path:
        path = self._scenario_path(name)
        self._write(path, envelope)
        return path

    def has_scenario(self, name: str) -> bool:
        return self._scenario_path(name).exists()

    def _scenario_path(self, name: str) -> Path:
        # scenario names are plain identifiers, never paths
        if not name or Path(name).name != name or name.startswith("."):
            raise ValueError(f"Invalid scenario name: {name!r}")
        return self.directory / f"{name}.json"

    def _read(self, path: Path) -> Optional[ZkProofEnvelope]:
        if not path.exists():
            return None
        try:
            envelope = ZkProofEnvelope.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable cache entry {path.name}: {e}")
            return None
        return envelope.model_copy(update={"from_cache": True, "elapsed_ms": 0})

    def _write(self, path: Path, envelope: ZkProofEnvelope) -> None:
        payload = json.dumps(envelope.wire(), indent=2)
        with self._lock:
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        logger.info(f"Cached proof {path.name}")
