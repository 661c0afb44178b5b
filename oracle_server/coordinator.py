# coordinator.py
#
# Off-chain oracle coordinator.
#
# Three steps, run strictly in order by the server:
#  1. initialize_accounts(): node accounts, authorizeCaller, fund account[0].
#  2. OracleRegistry.register_all(): registerOracle + getMyIndexes per account.
#  3. RequestResponder: answers OracleRequest events from every registered
#     (oracle, index) pair until one response is accepted.
#
# The contract decides which index it wants for a request. Most submissions are
# therefore rejected, and that is the normal case, not an error.

import datetime
import logging
import threading
import time
from collections import deque, namedtuple
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, as_completed, wait

from oracle_server import config
from oracle_server.ledger import LedgerError, TransactionReverted
from oracle_server.status_codes import POLICY_DETERMINISTIC, StatusCode, select_status_code

Oracle = namedtuple("Oracle", ["address", "indexes"])


class AuthorizationError(LedgerError):
    """The app contract could not be authorized on the data contract."""


class RegistrationError(LedgerError):
    """At least one oracle failed to register. ``report`` holds the details."""

    def __init__(self, message, report):
        super().__init__(message)
        self.report = report


###################################
# Account/Funding Initializer
###################################
def initialize_accounts(ledger, on_ready=None, fund_value=None):
    """
    Prepare the operating account and return ``(accounts, funded)``.

    Authorization failure aborts startup with AuthorizationError. A funding
    failure only degrades the process: it is logged and ``funded`` is False.
    ``on_ready`` runs once either way, before returning.
    """
    accounts = ledger.accounts()
    if not accounts:
        raise LedgerError("Node returned no accounts")

    owner = accounts[0]
    ledger.default_account = owner

    # Authorized means the transaction did not raise.
    try:
        ledger.authorize_caller(owner)
    except LedgerError as exc:
        logging.error(f"Caller: {owner} is not authorized: {exc}")
        raise AuthorizationError(f"authorizeCaller from {owner} failed: {exc}") from exc
    logging.info(f"Caller: {owner} is authorized")

    funded = False
    try:
        ledger.fund(owner, value=fund_value)
        funded = True
        logging.info("Funds added")
    except LedgerError as exc:
        logging.warning(f"Error funding the first account: {exc}")

    if on_ready is not None:
        on_ready()
    return accounts, funded


###################################
# Oracle Registry
###################################
class OracleRegistry:
    def __init__(self, ledger, max_workers=None):
        self.ledger = ledger
        self.max_workers = max_workers or config.ORACLE_RESPONSE_WORKERS
        self._lock = threading.Lock()
        self._oracles = []
        self._failures = []
        self.fee = None

    @property
    def oracles(self):
        with self._lock:
            return list(self._oracles)

    @property
    def failures(self):
        with self._lock:
            return [dict(item) for item in self._failures]

    def __len__(self):
        with self._lock:
            return len(self._oracles)

    def _register_one(self, account, fee):
        stage = "registerOracle"
        try:
            self.ledger.register_oracle(account, fee)
            stage = "getMyIndexes"
            indexes = tuple(self.ledger.get_my_indexes(account))
        except LedgerError as exc:
            return None, {"address": account, "stage": stage, "error": str(exc)}

        if len(indexes) != 3:
            return None, {
                "address": account,
                "stage": "getMyIndexes",
                "error": f"expected 3 indexes, got {len(indexes)}",
            }
        return Oracle(account, indexes), None

    def register_all(self, accounts, strict=True):
        """
        Register every account as an oracle, concurrently.

        Each account is isolated from the others: one failure does not stop
        the rest. Returns ``{"oracles": [...], "failures": [...]}`` with
        oracles in completion order. In strict mode any failure raises
        RegistrationError instead, carrying that same report.
        """
        self.fee = self.ledger.registration_fee()
        logging.info(f"Oracle registration fee: {self.fee}")

        registered = []
        failures = []
        if accounts:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(accounts))) as pool:
                futures = [pool.submit(self._register_one, account, self.fee) for account in accounts]
                for future in as_completed(futures):
                    oracle, failure = future.result()
                    if failure is not None:
                        logging.warning(
                            f"Oracle registration failed for {failure['address']} "
                            f"during {failure['stage']}: {failure['error']}"
                        )
                        failures.append(failure)
                        continue
                    logging.info(
                        f"Oracle Registered: {oracle.indexes[0]}, {oracle.indexes[1]}, "
                        f"{oracle.indexes[2]} at {oracle.address}"
                    )
                    registered.append(oracle)

        report = {"oracles": registered, "failures": failures}
        if failures and strict:
            raise RegistrationError(
                f"{len(failures)} of {len(accounts)} oracle registrations failed", report
            )

        with self._lock:
            self._oracles.extend(registered)
            self._failures.extend(failures)
        return report


###################################
# Request Listener / Responder
###################################
def _scheduled(timestamp: int):
    # uint256 timestamps may be far outside what datetime can hold.
    try:
        return datetime.datetime.fromtimestamp(int(timestamp))
    except (ValueError, OverflowError, OSError):
        return int(timestamp)


class ResponseAttempt:
    """Shared state for one OracleRequest while its submissions are in flight."""

    def __init__(self, airline, flight, timestamp, code):
        self.airline = airline
        self.flight = flight
        self.timestamp = int(timestamp)
        self.code = StatusCode(code)
        self.found = threading.Event()
        self.accepted_by = None
        self._lock = threading.Lock()
        self.attempted = 0
        self.rejected = 0
        self.skipped = 0
        self.credits_submitted = 0
        self.credits_failed = 0

    def increment(self, counter):
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def accept(self, oracle, index):
        with self._lock:
            if self.accepted_by is None:
                self.accepted_by = {"address": oracle.address, "index": index}
        self.found.set()

    def summary(self):
        with self._lock:
            return {
                "airline": self.airline,
                "flight": self.flight,
                "timestamp": self.timestamp,
                "code": self.code.code,
                "label": self.code.label,
                "accepted_by": dict(self.accepted_by) if self.accepted_by else None,
                "attempted": self.attempted,
                "rejected": self.rejected,
                "skipped": self.skipped,
                "credits_submitted": self.credits_submitted,
                "credits_failed": self.credits_failed,
            }


class RequestResponder:
    def __init__(self, ledger, registry, max_workers=None, status_policy=POLICY_DETERMINISTIC,
                 history_size=None):
        self.ledger = ledger
        self.registry = registry
        self.status_policy = status_policy
        self.max_workers = max(1, max_workers or config.ORACLE_RESPONSE_WORKERS)
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="oracle-response")
        self.history = deque(maxlen=max(1, history_size or config.RESPONSE_LOG_SIZE))
        self._history_lock = threading.Lock()

    def shutdown(self):
        self._executor.shutdown(wait=True, cancel_futures=True)

    def _respond(self, attempt, oracle, index):
        if attempt.found.is_set():
            attempt.increment("skipped")
            return

        attempt.increment("attempted")
        if attempt.code == StatusCode.LATE_AIRLINE:
            logging.info(f"Crediting insurees of flight {attempt.flight} via oracle {oracle.address}")
            try:
                self.ledger.credit_insurees(oracle.address, oracle.address, attempt.flight)
                attempt.increment("credits_submitted")
                logging.info(f"Flight {attempt.flight} got covered and insured the users")
            except LedgerError as exc:
                attempt.increment("credits_failed")
                logging.debug(f"creditInsurees for {attempt.flight} from {oracle.address} rejected: {exc}")

        try:
            self.ledger.submit_oracle_response(
                oracle.address, index, attempt.airline, attempt.flight, attempt.timestamp, attempt.code.code
            )
        except TransactionReverted as exc:
            attempt.increment("rejected")
            logging.debug(f"Oracle {oracle.address} index {index} not accepted for {attempt.flight}: {exc}")
            return
        except LedgerError as exc:
            attempt.increment("rejected")
            logging.debug(f"Oracle {oracle.address} index {index} could not submit for {attempt.flight}: {exc}")
            return

        attempt.accept(oracle, index)
        logging.info(
            f"Oracle: {index} at {oracle.address} responded for flight {attempt.flight} "
            f"with status {attempt.code.code} - {attempt.code.label}"
        )

    def handle_request(self, airline, flight, timestamp, now=None):
        """
        Answer one OracleRequest and return its summary.

        Every (oracle, index) pair gets a task. A task that starts after some
        response was accepted does nothing, and tasks still queued at that
        point are cancelled. Tasks already running may still reach the
        ledger, which rejects them.
        """
        now = time.time() if now is None else now
        code = select_status_code(timestamp, now=now, policy=self.status_policy)
        logging.info(f"Flight {flight} of {airline} scheduled to: {_scheduled(timestamp)}; answering {code.label}")

        attempt = ResponseAttempt(airline, flight, timestamp, code)
        futures = [
            self._executor.submit(self._respond, attempt, oracle, index)
            for oracle in self.registry.oracles
            for index in oracle.indexes
        ]

        pending = set(futures)
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                if not future.cancelled() and future.exception() is not None:
                    logging.error(f"Response task for {flight} failed: {future.exception()}")
            if attempt.found.is_set():
                for future in pending:
                    if future.cancel():
                        attempt.increment("skipped")

        summary = attempt.summary()
        if summary["accepted_by"] is None:
            logging.info(f"No oracle response accepted for flight {flight}")
        with self._history_lock:
            self.history.append(summary)
        return summary

    def recent_responses(self, limit=None):
        with self._history_lock:
            records = list(self.history)
        if limit is not None and limit > 0:
            records = records[-limit:]
        return [dict(item) for item in records]

    def listen(self, stop_event=None, poll_interval=None):
        """Block and answer OracleRequest events until ``stop_event`` is set."""
        self.ledger.watch_oracle_requests(self.handle_request, stop_event=stop_event, poll_interval=poll_interval)
