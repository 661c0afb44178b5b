# ledger.py
#
# web3 client wrapper around the FlightSuretyApp / FlightSuretyData contracts.
#
# Key highlights:
#  - Every contract call used by the oracle server and the dapp goes through
#    LedgerClient, which turns web3 errors into the LedgerError family.
#  - Transport failures (node down, HTTP timeouts) are retried with exponential
#    backoff. Reverts are never retried.
#  - A transaction is sent at most once. Sending is retried only when the
#    connection to the node was never made; a send that timed out waiting
#    for the node is reported, not repeated. After a hash is obtained only
#    the receipt wait is retried.
#  - OracleRequest events are read from a log filter by a polling loop that
#    survives delivery errors for the lifetime of the process.

import logging
import threading
import time

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError

from oracle_server import config


class LedgerError(Exception):
    """Base class for failed ledger interactions."""


class LedgerConnectionError(LedgerError, ConnectionError):
    """The node could not be reached, even after retrying."""


class LedgerTimeoutError(LedgerConnectionError):
    """A transaction may have been sent but its outcome is unknown."""


class TransactionReverted(LedgerError):
    """The ledger rejected the call or transaction."""


_TRANSPORT_ERRORS = (requests.exceptions.RequestException, ConnectionError, OSError)

# The request never reached the node. ConnectTimeout is a ConnectionError.
_UNSENT_ERRORS = (requests.exceptions.ConnectionError, ConnectionRefusedError)


def _is_revert(exc: Exception) -> bool:
    return "revert" in str(exc).lower()


class LedgerClient:
    def __init__(self, web3, app_contract, data_contract,
                 call_timeout=None, receipt_timeout=None,
                 max_retries=None, backoff_initial=None, backoff_multiplier=None):
        self.web3 = web3
        self.app_contract = app_contract
        self.data_contract = data_contract
        self.app_address = app_contract.address
        self.default_account = None
        self.call_timeout = config.LEDGER_CALL_TIMEOUT if call_timeout is None else call_timeout
        self.receipt_timeout = config.LEDGER_RECEIPT_TIMEOUT if receipt_timeout is None else receipt_timeout
        self.max_retries = max(1, config.LEDGER_MAX_RETRIES if max_retries is None else max_retries)
        self.backoff_initial = max(0.0, config.LEDGER_BACKOFF_INITIAL if backoff_initial is None else backoff_initial)
        self.backoff_multiplier = max(
            1.0, config.LEDGER_BACKOFF_MULTIPLIER if backoff_multiplier is None else backoff_multiplier
        )

    @classmethod
    def from_config(cls, network_config=None, build_dir=None, **kwargs):
        """Connect to the node named in config.json and bind both contracts."""
        network_config = network_config or config.load_network_config()
        call_timeout = kwargs.get("call_timeout") or config.LEDGER_CALL_TIMEOUT
        web3 = Web3(Web3.HTTPProvider(network_config["url"], request_kwargs={"timeout": call_timeout}))
        app_contract = web3.eth.contract(
            address=Web3.to_checksum_address(network_config["appAddress"]),
            abi=config.load_contract_abi("FlightSuretyApp", build_dir),
        )
        data_contract = web3.eth.contract(
            address=Web3.to_checksum_address(network_config["dataAddress"]),
            abi=config.load_contract_abi("FlightSuretyData", build_dir),
        )
        logging.info(f"Ledger client bound to {network_config['url']} (app {app_contract.address})")
        return cls(web3, app_contract, data_contract, **kwargs)

    ###################################
    # Low-level plumbing
    ###################################
    def _with_retry(self, operation, description, retry_on=_TRANSPORT_ERRORS):
        delay = self.backoff_initial
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except ContractLogicError as exc:
                raise TransactionReverted(f"{description} reverted: {exc}") from exc
            except TimeExhausted as exc:
                raise LedgerTimeoutError(f"{description} timed out: {exc}") from exc
            except retry_on as exc:
                last_error = exc
                logging.warning(f"Ledger {description} transport failure attempt {attempt}: {exc}")
            except _TRANSPORT_ERRORS as exc:
                raise LedgerTimeoutError(f"{description} outcome unknown, not retried: {exc}") from exc
            except Web3RPCError as exc:
                if _is_revert(exc):
                    raise TransactionReverted(f"{description} reverted: {exc}") from exc
                raise LedgerError(f"{description} failed: {exc}") from exc
            except Web3Exception as exc:
                raise LedgerError(f"{description} failed: {exc}") from exc
            if attempt < self.max_retries and delay > 0:
                time.sleep(delay)
                if self.backoff_multiplier > 1:
                    delay *= self.backoff_multiplier
        raise LedgerConnectionError(
            f"{description} failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    def _call(self, contract, name, *args, sender=None):
        function = getattr(contract.functions, name)(*args)
        params = {"from": sender} if sender else {}
        return self._with_retry(lambda: function.call(params), f"call {name}")

    def _send(self, contract, name, *args, sender, value=0, gas=None, gas_price=None):
        function = getattr(contract.functions, name)(*args)
        tx = {"from": sender}
        if value:
            tx["value"] = value
        if gas is not None:
            tx["gas"] = gas
        if gas_price is not None:
            tx["gasPrice"] = gas_price

        tx_hash = self._with_retry(lambda: function.transact(tx), f"send {name}", retry_on=_UNSENT_ERRORS)
        receipt = self._with_retry(
            lambda: self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout),
            f"receipt {name}",
        )
        if receipt.get("status", 1) == 0:
            raise TransactionReverted(f"send {name} from {sender} reverted in block {receipt.get('blockNumber')}")
        return receipt

    ###################################
    # Node
    ###################################
    def accounts(self):
        return list(self._with_retry(lambda: self.web3.eth.accounts, "get accounts"))

    ###################################
    # Data contract
    ###################################
    def authorize_caller(self, sender):
        return self._send(self.data_contract, "authorizeCaller", self.app_address, sender=sender)

    def is_operational(self):
        return bool(self._call(self.data_contract, "isOperational"))

    ###################################
    # App contract
    ###################################
    def fund(self, account, value=None, gas=None, gas_price=None):
        return self._send(
            self.app_contract, "fund", account,
            sender=account,
            value=config.FUND_VALUE if value is None else value,
            gas=config.ORACLE_GAS if gas is None else gas,
            gas_price=config.ORACLE_GAS_PRICE if gas_price is None else gas_price,
        )

    def registration_fee(self):
        return int(self._call(self.app_contract, "REGISTRATION_FEE"))

    def register_oracle(self, account, fee, gas=None, gas_price=None):
        return self._send(
            self.app_contract, "registerOracle",
            sender=account,
            value=fee,
            gas=config.ORACLE_GAS if gas is None else gas,
            gas_price=config.ORACLE_GAS_PRICE if gas_price is None else gas_price,
        )

    def get_my_indexes(self, account):
        indexes = self._call(self.app_contract, "getMyIndexes", sender=account)
        return tuple(int(index) for index in indexes)

    def active_airlines(self):
        return list(self._call(self.app_contract, "getActiveAirlines"))

    def register_flight(self, airline, flight, timestamp):
        return self._send(self.app_contract, "registerFlight", flight, int(timestamp), sender=airline)

    def fetch_flight_status(self, sender, airline, flight, timestamp):
        return self._send(self.app_contract, "fetchFlightStatus", airline, flight, int(timestamp), sender=sender)

    def buy_insurance(self, passenger, flight, amount):
        return self._send(self.app_contract, "buyInsurance", flight, sender=passenger, value=int(amount))

    def withdraw_credits(self, passenger):
        return self._send(self.app_contract, "withdrawCredits", sender=passenger)

    def credit_insurees(self, sender, insuree, flight):
        return self._send(self.app_contract, "creditInsurees", insuree, flight, sender=sender)

    def submit_oracle_response(self, sender, index, airline, flight, timestamp, code):
        return self._send(
            self.app_contract, "submitOracleResponse",
            int(index), airline, flight, int(timestamp), int(code),
            sender=sender,
        )

    ###################################
    # Events
    ###################################
    def _create_request_filter(self):
        return self._with_retry(
            lambda: self.app_contract.events.OracleRequest.create_filter(from_block="latest"),
            "create OracleRequest filter",
        )

    def watch_oracle_requests(self, callback, stop_event=None, poll_interval=None):
        """
        Deliver every OracleRequest event to ``callback(airline, flight, timestamp)``
        until ``stop_event`` is set.

        Errors while reading the filter are logged and the filter is recreated
        on the next round. Errors raised by the callback are logged too; one
        bad event never ends the subscription.
        """
        stop_event = stop_event or threading.Event()
        poll_interval = config.ORACLE_POLL_INTERVAL if poll_interval is None else poll_interval
        event_filter = None

        while not stop_event.is_set():
            try:
                if event_filter is None:
                    event_filter = self._create_request_filter()
                    logging.info("Subscribed to OracleRequest events.")
                entries = event_filter.get_new_entries()
            except Exception as exc:
                logging.error(f"OracleRequest subscription error: {exc}")
                event_filter = None
                entries = []

            for entry in entries:
                args = entry["args"]
                try:
                    callback(args["airline"], args["flight"], int(args["timestamp"]))
                except Exception:
                    logging.exception(f"OracleRequest handler failed for event {dict(args)}")

            stop_event.wait(poll_interval)
