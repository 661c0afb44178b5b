# ------------------------------------------------------------------------
# dapp_client.py
#
# Python Flask client application for the Flight Surety dapp.
#
# Key notes:
#  - Each button of the dapp page ("submit-oracle", "register-flight",
#    "buy-insurance", "withdraw-credits") posts to one route here, which makes
#    exactly one ledger call through the Contract wrapper.
#  - Every route answers with a display payload: a title, a description and
#    the rows of (label, error or value) the page shows in its results panel.
#    Ledger errors are rendered into that payload, not turned into HTTP errors.
#  - Active airlines come from the oracle server REST API (ORACLE_SERVER_URL).
# ------------------------------------------------------------------------

import logging
import threading
import time

import requests
from flask import Flask, jsonify, render_template, request

from dapp_client.contract import Contract
from oracle_server import config
from oracle_server.ledger import LedgerError
from oracle_server.status_codes import status_code_table

app = Flask(__name__)
logging.basicConfig(level=logging.DEBUG)

# Change the oracle server IP/port:
ORACLE_SERVER_URL = config.ORACLE_SERVER_URL.rstrip('/')

contract = None
_contract_lock = threading.Lock()


def get_contract():
    """Return the shared Contract, connecting on first use."""
    global contract
    with _contract_lock:
        if contract is None:
            contract = Contract.from_config()
        return contract


def display(title, description, results):
    """
    Build the payload the results panel renders. Each result is a dict with
    ``label``, ``error`` and ``value``; a row shows the error when there is one.
    """
    rows = []
    for result in results:
        error = result.get('error')
        rows.append({
            "label": result['label'],
            "error": error is not None,
            "value": str(error) if error is not None else str(result.get('value')),
        })
    return {"title": title, "description": description, "results": rows}


def _request_data():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form


def _require(data, field: str):
    value = data.get(field)
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def _missing(field: str):
    return jsonify({"error": f"Missing {field}"}), 400


def _contract_or_error():
    try:
        return get_contract(), None
    except (LedgerError, OSError, ValueError) as e:
        app.logger.error(f"Cannot reach the ledger: {e}")
        return None, (jsonify({"error": f"Ledger unavailable: {e}"}), 503)


@app.route('/')
def dapp_index():
    """
    Displays the dapp page with its forms and results panel.
    """
    return render_template('dapp_index.html', status_codes=status_code_table())


@app.route('/status-codes', methods=['GET'])
def status_codes():
    return jsonify({"status_codes": status_code_table()}), 200


@app.route('/operational', methods=['GET'])
def operational_status():
    current, failure = _contract_or_error()
    if failure:
        return failure

    error, result = None, None
    try:
        result = current.is_operational()
    except LedgerError as e:
        error = e
    app.logger.info(f"isOperational: error={error} result={result}")
    return jsonify(display(
        'Operational Status',
        'Check if contract is operational',
        [{"label": 'Operational Status', "error": error, "value": result}],
    )), 200


@app.route('/oracles/submit', methods=['POST'])
def submit_oracle():
    """
    "submit-oracle" button: asks the contract for a flight status, which makes
    the contract emit an OracleRequest for the oracle server to answer.
    """
    flight = _require(_request_data(), 'flight')
    if not flight:
        return _missing('flight')
    current, failure = _contract_or_error()
    if failure:
        return failure

    error, value = None, None
    try:
        result = current.fetch_flight_status(flight)
        value = f"{result['flight']} {result['timestamp']}"
    except LedgerError as e:
        error = e
    return jsonify(display(
        'Oracles',
        'Trigger oracles',
        [{"label": 'Fetch Flight Status', "error": error, "value": value}],
    )), 200


@app.route('/flights/register', methods=['POST'])
def register_flight():
    data = _request_data()
    flight = _require(data, 'flight')
    if not flight:
        return _missing('flight')
    raw_timestamp = _require(data, 'timestamp')
    try:
        timestamp = int(raw_timestamp) if raw_timestamp else int(time.time())
    except ValueError:
        return jsonify({"error": "timestamp must be an integer"}), 400
    current, failure = _contract_or_error()
    if failure:
        return failure

    error, value = None, None
    try:
        result = current.register_flight(flight, timestamp)
        value = f"{result['flight']} {result['timestamp']}"
    except LedgerError as e:
        error = e
    return jsonify(display(
        'Flights',
        'Register a flight',
        [{"label": 'Register Flight', "error": error, "value": value}],
    )), 200


@app.route('/insurance/buy', methods=['POST'])
def buy_insurance():
    data = _request_data()
    flight = _require(data, 'flight')
    if not flight:
        return _missing('flight')
    raw_amount = _require(data, 'amount')
    if not raw_amount:
        return _missing('amount')
    try:
        amount = int(raw_amount)
    except ValueError:
        return jsonify({"error": "amount must be an integer (wei)"}), 400
    if amount <= 0:
        return jsonify({"error": "amount must be positive"}), 400
    current, failure = _contract_or_error()
    if failure:
        return failure

    error, value = None, None
    try:
        result = current.buy_insurance(flight, amount)
        value = f"{result['flight']} insured for {result['amount']} wei"
    except LedgerError as e:
        error = e
    return jsonify(display(
        'Insurance',
        'Buy flight insurance',
        [{"label": 'Buy Insurance', "error": error, "value": value}],
    )), 200


@app.route('/credits/withdraw', methods=['POST'])
def withdraw_credits():
    current, failure = _contract_or_error()
    if failure:
        return failure

    error, value = None, None
    try:
        result = current.withdraw_credits()
        value = f"Credits withdrawn to {result['passenger']}"
    except LedgerError as e:
        error = e
    return jsonify(display(
        'Credits',
        'Withdraw insurance credits',
        [{"label": 'Withdraw Credits', "error": error, "value": value}],
    )), 200


@app.route('/airlines/active', methods=['GET'])
def active_airlines():
    """
    Asks the oracle server for the active airlines and relays its answer.
    """
    try:
        r = requests.get(f"{ORACLE_SERVER_URL}/activeAirlines", timeout=15)
    except requests.exceptions.RequestException as e:
        app.logger.error(f"Connection error to oracle server: {e}")
        return jsonify({"error": f"Connection error: {str(e)}"}), 502

    if r.status_code == 200:
        return jsonify(display(
            'Airlines',
            'Active airlines',
            [{"label": 'Active Airlines', "error": None, "value": ', '.join(r.json())}],
        )), 200

    return jsonify({
        "error": f"Oracle server error {r.status_code}",
        "detail": r.text
    }), r.status_code


# Start the client on port 8000 (change as needed)
if __name__ == '__main__':
    app.run(host="0.0.0.0", port=config.DAPP_CLIENT_PORT)
