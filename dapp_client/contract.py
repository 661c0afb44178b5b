# contract.py
#
# Contract wrapper used by the dapp client. It assigns the node accounts to the
# demo roles and turns each front-end action into a single ledger call.
#
# Roles: owner = accounts[0], airlines = accounts[1..5],
# passengers = accounts[6..10].

import logging
import time

from oracle_server.ledger import LedgerClient, LedgerError

AIRLINE_COUNT = 5
PASSENGER_COUNT = 5


class Contract:
    def __init__(self, ledger):
        self.ledger = ledger
        self.owner = None
        self.airlines = []
        self.passengers = []

    @classmethod
    def from_config(cls, network_config=None, build_dir=None):
        contract = cls(LedgerClient.from_config(network_config, build_dir))
        contract.initialize()
        return contract

    def initialize(self):
        accounts = self.ledger.accounts()
        if not accounts:
            raise LedgerError("Node returned no accounts")
        self.owner = accounts[0]
        self.ledger.default_account = self.owner
        self.airlines = accounts[1:1 + AIRLINE_COUNT]
        self.passengers = accounts[1 + AIRLINE_COUNT:1 + AIRLINE_COUNT + PASSENGER_COUNT]
        logging.info(
            f"Dapp accounts: owner {self.owner}, {len(self.airlines)} airlines, "
            f"{len(self.passengers)} passengers"
        )
        return self

    def _first(self, accounts, role: str):
        if not accounts:
            raise LedgerError(f"No {role} account available")
        return accounts[0]

    def is_operational(self):
        return self.ledger.is_operational()

    def fetch_flight_status(self, flight, timestamp=None):
        airline = self._first(self.airlines, "airline")
        payload = {
            "airline": airline,
            "flight": flight,
            "timestamp": int(time.time()) if timestamp is None else int(timestamp),
        }
        self.ledger.fetch_flight_status(self.owner, airline, flight, payload["timestamp"])
        return payload

    def register_flight(self, flight, timestamp):
        airline = self._first(self.airlines, "airline")
        self.ledger.register_flight(airline, flight, timestamp)
        return {"airline": airline, "flight": flight, "timestamp": int(timestamp)}

    def buy_insurance(self, flight, amount):
        passenger = self._first(self.passengers, "passenger")
        self.ledger.buy_insurance(passenger, flight, amount)
        return {"passenger": passenger, "flight": flight, "amount": int(amount)}

    def withdraw_credits(self):
        passenger = self._first(self.passengers, "passenger")
        receipt = self.ledger.withdraw_credits(passenger)
        return {"passenger": passenger, "transaction": _tx_hash(receipt)}


def _tx_hash(receipt):
    tx_hash = receipt.get("transactionHash") if hasattr(receipt, "get") else None
    if tx_hash is None:
        return None
    return tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
