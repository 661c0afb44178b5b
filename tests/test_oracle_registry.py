import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fake_ledger import FakeLedger
from oracle_server.coordinator import Oracle, OracleRegistry, RegistrationError
from oracle_server.ledger import LedgerConnectionError

ACCOUNTS = [f"0xOracle{i}" for i in range(6)]
INDEXES = {account: (i, i + 1, i + 2) for i, account in enumerate(ACCOUNTS)}


def test_registers_every_account_with_three_indexes():
    ledger = FakeLedger(accounts=ACCOUNTS, fee=1000, indexes=INDEXES)
    registry = OracleRegistry(ledger, max_workers=4)

    report = registry.register_all(ACCOUNTS)

    assert report["failures"] == []
    assert len(report["oracles"]) == len(ACCOUNTS) == len(registry)
    assert {oracle.address for oracle in registry.oracles} == set(ACCOUNTS)
    for oracle in registry.oracles:
        assert isinstance(oracle, Oracle)
        assert len(oracle.indexes) == 3
        assert oracle.indexes == INDEXES[oracle.address]

    assert registry.fee == 1000
    assert len(ledger.calls_named("REGISTRATION_FEE")) == 1
    assert sorted(call[1] for call in ledger.calls_named("registerOracle")) == sorted(ACCOUNTS)
    assert all(call[2] == 1000 for call in ledger.calls_named("registerOracle"))


def test_strict_registration_rejects_without_a_partial_list():
    ledger = FakeLedger(accounts=ACCOUNTS, indexes=INDEXES, fail_register={"0xOracle2"})
    registry = OracleRegistry(ledger, max_workers=4)

    with pytest.raises(RegistrationError) as excinfo:
        registry.register_all(ACCOUNTS, strict=True)

    assert len(registry) == 0
    report = excinfo.value.report
    assert [failure["address"] for failure in report["failures"]] == ["0xOracle2"]
    assert report["failures"][0]["stage"] == "registerOracle"
    # The other accounts were still attempted.
    assert len(ledger.calls_named("registerOracle")) == len(ACCOUNTS)


def test_lenient_registration_keeps_successful_oracles():
    ledger = FakeLedger(
        accounts=ACCOUNTS,
        indexes=INDEXES,
        fail_register={"0xOracle1"},
        fail_indexes={"0xOracle4"},
    )
    registry = OracleRegistry(ledger, max_workers=4)

    report = registry.register_all(ACCOUNTS, strict=False)

    assert len(report["oracles"]) == 4
    assert len(registry) == 4
    failures = {failure["address"]: failure["stage"] for failure in registry.failures}
    assert failures == {"0xOracle1": "registerOracle", "0xOracle4": "getMyIndexes"}
    assert "0xOracle1" not in {oracle.address for oracle in registry.oracles}


def test_wrong_index_count_is_a_failure():
    ledger = FakeLedger(accounts=ACCOUNTS[:2], indexes={"0xOracle0": (1, 2), "0xOracle1": (3, 4, 5)})
    registry = OracleRegistry(ledger)

    report = registry.register_all(ACCOUNTS[:2], strict=False)

    assert [oracle.address for oracle in report["oracles"]] == ["0xOracle1"]
    assert report["failures"][0]["address"] == "0xOracle0"


def test_fee_read_failure_propagates():
    ledger = FakeLedger(accounts=ACCOUNTS)

    def broken_fee():
        raise LedgerConnectionError("node went away")

    ledger.registration_fee = broken_fee
    registry = OracleRegistry(ledger)

    with pytest.raises(LedgerConnectionError):
        registry.register_all(ACCOUNTS, strict=False)
    assert ledger.calls_named("registerOracle") == []


def test_no_accounts_registers_nothing():
    registry = OracleRegistry(FakeLedger())
    assert registry.register_all([]) == {"oracles": [], "failures": []}
