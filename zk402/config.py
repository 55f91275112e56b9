"""
Environment configuration.

Plasma is the default network; set USE_SEPOLIA=true for the Sepolia preset.
"""
import os
from pathlib import Path

from .models.common import PaymentParameters

PROJECT_ROOT = Path(__file__).resolve().parents[1]

PLASMA_DEFAULTS = {
    "USDT0_ADDRESS": "0xB8CE59FC3717ada4C02eaDF9682A9e934F625ebb",
    "RPC_URL": "https://rpc.plasma.to",
    "CHAIN_ID": 9745,
    "NETWORK": "eip155:9745",
    "NETWORK_NAME": "Plasma",
    "EXPLORER_URL": "https://plasmascan.to",
}

SEPOLIA_DEFAULTS = {
    "USDT0_ADDRESS": os.getenv("SEPOLIA_USDT_ADDRESS", "0x959413cfD31eBe4Bc81A57b284cD638b4Be88500"),
    "RPC_URL": os.getenv("SEPOLIA_RPC_URL", "https://sepolia.infura.io/v3/YOUR_KEY"),
    "CHAIN_ID": 11155111,
    "NETWORK": "eip155:11155111",
    "NETWORK_NAME": "Sepolia",
    "EXPLORER_URL": "https://sepolia.etherscan.io",
}

USE_SEPOLIA = os.getenv("USE_SEPOLIA", "").lower() == "true"
_net = SEPOLIA_DEFAULTS if USE_SEPOLIA else PLASMA_DEFAULTS

USDT0_ADDRESS = _net["USDT0_ADDRESS"]
RPC_URL = _net["RPC_URL"] if USE_SEPOLIA else os.getenv("PLASMA_RPC_URL", _net["RPC_URL"])
CHAIN_ID = _net["CHAIN_ID"]
NETWORK = _net["NETWORK"]
NETWORK_NAME = _net["NETWORK_NAME"]
EXPLORER_URL = _net["EXPLORER_URL"]

# EIP-712 domain of the USDT0 token contract
TOKEN_DOMAIN_NAME = os.getenv("TOKEN_DOMAIN_NAME", "USDT0")
TOKEN_DOMAIN_VERSION = os.getenv("TOKEN_DOMAIN_VERSION", "1")

PRICE_USDT0 = int(os.getenv("PRICE_USDT0", "100"))  # 0.0001 USDT0 (6 decimals)

COSIGNER_URL = os.getenv("COSIGNER_URL", "http://localhost:3001")
PROVER_BINARY = os.getenv("PROVER_BINARY", str(PROJECT_ROOT.parent / "prover" / "target" / "release" / "zkml-prover"))
MODELS_DIR = os.getenv("MODELS_DIR", str(PROJECT_ROOT.parent / "models"))
PROOF_CACHE_DIR = os.getenv("PROOF_CACHE_DIR", str(PROJECT_ROOT / "cache" / "proofs"))

PROVER_TIMEOUT_SECS = float(os.getenv("PROVER_TIMEOUT_SECS", "900"))  # 15 minutes
VERIFIER_TIMEOUT_SECS = float(os.getenv("VERIFIER_TIMEOUT_SECS", "300"))

SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "4020"))

PAY_TO_ADDRESS = os.getenv("PAY_TO_ADDRESS", "")
MNEMONIC = os.getenv("MNEMONIC", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def pricing() -> PaymentParameters:
    """Request-time price of the protected resource."""
    return PaymentParameters(
        amount=PRICE_USDT0,
        pay_to=PAY_TO_ADDRESS,
        chain_id=CHAIN_ID,
        token=USDT0_ADDRESS,
    )


def load_account(mnemonic: str = MNEMONIC):
    """Wallet derived from MNEMONIC, or None when not configured."""
    if not mnemonic:
        return None
    from eth_account import Account

    Account.enable_unaudited_hdwallet_features()
    return Account.from_mnemonic(mnemonic)
