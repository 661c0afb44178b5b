# config.py
#
# Runtime settings for the oracle server and the dapp client.
#
# Every value can be overridden from the environment. The contract addresses
# and node url live in config.json, keyed by network name, the same file the
# truffle deployment writes.

import json
import logging
import os

CONFIG_FILE = os.getenv("FLIGHT_SURETY_CONFIG", "config.json")
NETWORK = os.getenv("FLIGHT_SURETY_NETWORK", "localhost")
BUILD_DIR = os.getenv("FLIGHT_SURETY_BUILD_DIR", os.path.join("build", "contracts"))


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError):
        logging.warning("Invalid %s value %r; using %r instead.", name, raw, default)
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


LEDGER_CALL_TIMEOUT = _env_number("LEDGER_CALL_TIMEOUT", 10.0, float)
LEDGER_RECEIPT_TIMEOUT = _env_number("LEDGER_RECEIPT_TIMEOUT", 120.0, float)
LEDGER_MAX_RETRIES = _env_number("LEDGER_MAX_RETRIES", 3, int)
LEDGER_BACKOFF_INITIAL = _env_number("LEDGER_BACKOFF_INITIAL", 0.5, float)
LEDGER_BACKOFF_MULTIPLIER = _env_number("LEDGER_BACKOFF_MULTIPLIER", 2.0, float)

ORACLE_GAS = _env_number("ORACLE_GAS", 4712388, int)
ORACLE_GAS_PRICE = _env_number("ORACLE_GAS_PRICE", 100000000000, int)
FUND_VALUE = _env_number("FUND_VALUE", 10, int)

ORACLE_RESPONSE_WORKERS = _env_number("ORACLE_RESPONSE_WORKERS", 8, int)
ORACLE_POLL_INTERVAL = _env_number("ORACLE_POLL_INTERVAL", 1.0, float)
ORACLE_REGISTRATION_STRICT = _env_flag("ORACLE_REGISTRATION_STRICT")
STATUS_CODE_POLICY = os.getenv("STATUS_CODE_POLICY", "deterministic").strip().lower()
RESPONSE_LOG_SIZE = _env_number("RESPONSE_LOG_SIZE", 200, int)

ORACLE_SERVER_PORT = _env_number("ORACLE_SERVER_PORT", 3000, int)
ORACLE_SERVER_URL = os.getenv("ORACLE_SERVER_URL", "http://127.0.0.1:3000")
DAPP_CLIENT_PORT = _env_number("DAPP_CLIENT_PORT", 8000, int)


def load_network_config(path=None, network=None):
    """
    Load the ``url``, ``appAddress`` and ``dataAddress`` entries for one network.

    ``LEDGER_URL`` in the environment replaces the configured url.
    """
    path = path or CONFIG_FILE
    network = network or NETWORK
    with open(path, "r", encoding="utf-8") as handle:
        config = json.load(handle)

    try:
        section = dict(config[network])
    except KeyError:
        raise ValueError(f"Network {network!r} not found in {path}") from None

    missing = [key for key in ("url", "appAddress", "dataAddress") if not section.get(key)]
    if missing:
        raise ValueError(f"Network {network!r} in {path} is missing: {', '.join(missing)}")

    override = os.getenv("LEDGER_URL")
    if override:
        section["url"] = override
    return section


def load_contract_abi(name, build_dir=None):
    """Return the ABI from a truffle build artifact such as FlightSuretyApp.json."""
    artifact_path = os.path.join(build_dir or BUILD_DIR, f"{name}.json")
    with open(artifact_path, "r", encoding="utf-8") as handle:
        artifact = json.load(handle)
    abi = artifact.get("abi") if isinstance(artifact, dict) else None
    if not isinstance(abi, list):
        raise ValueError(f"Artifact {artifact_path} has no abi list")
    return abi
