# server.py
#
# Flask application and entry point of the off-chain oracle server.
#
# Key highlights:
#  - Startup order: accounts -> authorizeCaller -> fund -> REST ready ->
#    oracle registration -> OracleRequest subscription.
#  - /activeAirlines only serves once the account initializer has completed.
#  - The OracleRequest listener runs in a daemon thread for the life of the
#    process, next to the Flask server.

import logging
import sys
import threading

from flask import Flask, jsonify, request
from flask_cors import CORS

from oracle_server import config
from oracle_server.coordinator import (
    AuthorizationError,
    OracleRegistry,
    RegistrationError,
    RequestResponder,
    initialize_accounts,
)
from oracle_server.ledger import LedgerClient, LedgerError
from oracle_server.status_codes import POLICIES, POLICY_DETERMINISTIC, status_code_table

logging.basicConfig(level=logging.DEBUG)
app = Flask(__name__)
CORS(app)

app.config['JSONIFY_PRETTYPRINT_REGULAR'] = True

# Set by bootstrap(); the routes read them at request time.
ledger = None
registry = None
responder = None

_NOT_READY_MESSAGE = "Ledger connection is not initialized yet"


def init_rest(ledger_client):
    """Make the REST endpoints serve data from ``ledger_client``."""
    global ledger
    ledger = ledger_client
    logging.info("REST endpoints ready.")


@app.route('/ping', methods=['GET'])
def ping():
    return jsonify({"status": "OK"}), 200


@app.route('/api', methods=['GET'])
def api_index():
    return jsonify({"message": "An API for use with your Dapp!"}), 200


@app.route('/activeAirlines', methods=['GET'])
def active_airlines():
    """
    Proxies getActiveAirlines() from the app contract.
    """
    if ledger is None:
        return jsonify({"error": _NOT_READY_MESSAGE}), 503
    try:
        airlines = ledger.active_airlines()
    except Exception as exc:
        logging.error(f"getActiveAirlines failed: {exc}")
        return jsonify({"error": str(exc)}), 500
    logging.info(f"Active airlines: {airlines}")
    return jsonify(airlines), 200


@app.route('/oracles', methods=['GET'])
def get_oracles():
    if registry is None:
        return jsonify({"oracles": [], "failures": [], "fee": None}), 200
    return jsonify({
        "oracles": [
            {"address": oracle.address, "indexes": list(oracle.indexes)}
            for oracle in registry.oracles
        ],
        "failures": registry.failures,
        "fee": registry.fee,
    }), 200


@app.route('/responses', methods=['GET'])
def get_responses():
    limit = request.args.get('limit', type=int)
    if responder is None:
        return jsonify({"responses": []}), 200
    return jsonify({"responses": responder.recent_responses(limit=limit)}), 200


@app.route('/status-codes', methods=['GET'])
def get_status_codes():
    return jsonify({"status_codes": status_code_table()}), 200


def _resolve_status_policy() -> str:
    policy = config.STATUS_CODE_POLICY
    if policy not in POLICIES:
        logging.warning(f"Unknown STATUS_CODE_POLICY {policy!r}; using {POLICY_DETERMINISTIC}.")
        return POLICY_DETERMINISTIC
    return policy


def bootstrap(ledger_client, strict_registration=None, status_policy=None):
    """
    Run the startup sequence against ``ledger_client`` and return the
    responder, ready to listen. Fatal steps raise; funding failure does not.
    """
    global registry, responder

    accounts, funded = initialize_accounts(ledger_client, on_ready=lambda: init_rest(ledger_client))
    if not funded:
        logging.warning("Continuing without a funded first account.")

    strict = config.ORACLE_REGISTRATION_STRICT if strict_registration is None else strict_registration
    oracle_registry = OracleRegistry(ledger_client)
    report = oracle_registry.register_all(accounts, strict=strict)
    logging.info(
        f"{len(report['oracles'])} oracles registered, {len(report['failures'])} registrations failed"
    )
    registry = oracle_registry

    responder = RequestResponder(
        ledger_client,
        oracle_registry,
        status_policy=status_policy or _resolve_status_policy(),
    )
    return responder


def main():
    try:
        ledger_client = LedgerClient.from_config()
        oracle_responder = bootstrap(ledger_client)
    except AuthorizationError as exc:
        logging.error(f"Startup aborted, authorization failed: {exc}")
        return 1
    except RegistrationError as exc:
        logging.error(f"Startup aborted, oracle registration failed: {exc.report['failures']}")
        return 1
    except (LedgerError, OSError, ValueError) as exc:
        logging.error(f"Startup aborted: {exc}")
        return 1

    listener = threading.Thread(target=oracle_responder.listen, name="oracle-request-listener", daemon=True)
    listener.start()
    app.run(host="0.0.0.0", port=config.ORACLE_SERVER_PORT)
    return 0


if __name__ == "__main__":
    sys.exit(main())
