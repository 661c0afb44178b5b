# status_codes.py
#
# Flight status codes shared with the FlightSuretyApp contract.
#
# Key highlights:
#  - The numeric codes are wire values: the contract compares against them.
#  - select_status_code() is the policy the oracle server answers requests with.
#  - The "random" policy picks among the LATE_* codes for flights already in the
#    past. It is opt-in; the deterministic policy is the default.

import time
from enum import IntEnum

from Crypto.Random import random as crypto_random

POLICY_DETERMINISTIC = "deterministic"
POLICY_RANDOM = "random"
POLICIES = (POLICY_DETERMINISTIC, POLICY_RANDOM)


class StatusCode(IntEnum):
    UNKNOWN = 0
    ON_TIME = 10
    LATE_AIRLINE = 20
    LATE_WEATHER = 30
    LATE_TECHNICAL = 40
    LATE_OTHER = 50

    @property
    def label(self):
        return f"STATUS_CODE_{self.name}"

    @property
    def code(self):
        return int(self)

    @classmethod
    def from_label(cls, label):
        prefix = "STATUS_CODE_"
        if not isinstance(label, str) or not label.startswith(prefix):
            raise ValueError(f"Unknown status label: {label!r}")
        try:
            return cls[label[len(prefix):]]
        except KeyError:
            raise ValueError(f"Unknown status label: {label!r}") from None

    @classmethod
    def from_code(cls, code):
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown status code: {code!r}") from None


LATE_CODES = (
    StatusCode.LATE_AIRLINE,
    StatusCode.LATE_WEATHER,
    StatusCode.LATE_TECHNICAL,
    StatusCode.LATE_OTHER,
)


def status_code_table() -> list:
    """Return the label/code table in the order the dapp displays it."""
    return [{"label": status.label, "code": status.code} for status in StatusCode]


def select_status_code(scheduled_timestamp, now=None, policy=POLICY_DETERMINISTIC):
    """
    Pick the status an oracle reports for a flight scheduled at
    ``scheduled_timestamp`` (seconds since the epoch).

    A flight whose scheduled time is strictly before ``now`` is late: the
    deterministic policy reports LATE_AIRLINE, the random policy one of the
    LATE_* codes. Anything else is ON_TIME.
    """
    if policy not in POLICIES:
        raise ValueError(f"Unknown status code policy: {policy!r}")
    if now is None:
        now = time.time()

    if int(scheduled_timestamp) < now:
        if policy == POLICY_RANDOM:
            return crypto_random.choice(LATE_CODES)
        return StatusCode.LATE_AIRLINE
    return StatusCode.ON_TIME
