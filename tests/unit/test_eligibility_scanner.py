"""
Tests for crank eligibility.
"""

import pytest

from capsule_service.services.crank.eligibility_scanner import EligibilityScanner, is_eligible
from capsule_service.services.ledger.rpc_client import TransientRpcError

DELEGATION_PROGRAM_ID = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"
NOW = 1_700_000_000


def _scanner(ledger):
    return EligibilityScanner(ledger, ledger.program_id, DELEGATION_PROGRAM_ID, max_concurrency=2)


def test_deadline_boundary_is_strict(make_capsule):
    capsule = make_capsule(inactivity_period=86400, last_activity=NOW - 86400)

    assert is_eligible(capsule, NOW) is False
    assert is_eligible(capsule, NOW + 1) is True


@pytest.mark.parametrize("last_activity", [0, NOW - 10**6, NOW - 86401, NOW + 5])
def test_inactive_capsule_never_eligible(make_capsule, last_activity):
    capsule = make_capsule(last_activity=last_activity, is_active=False)

    assert is_eligible(capsule, NOW) is False


def test_executed_capsule_not_eligible(make_capsule):
    capsule = make_capsule(last_activity=0, executed_at=100)

    assert is_eligible(capsule, NOW) is False


def test_non_positive_period_not_eligible(make_capsule):
    assert is_eligible(make_capsule(inactivity_period=0, last_activity=0), NOW) is False
    assert is_eligible(make_capsule(inactivity_period=-5, last_activity=0), NOW) is False


@pytest.mark.asyncio
async def test_find_eligible_filters_and_derives_addresses(fake_ledger, make_capsule):
    due = make_capsule(last_activity=NOW - 90000)
    fresh = make_capsule(last_activity=NOW - 100)
    inactive = make_capsule(last_activity=NOW - 90000, is_active=False)
    due_address = fake_ledger.add_capsule(due)
    fake_ledger.add_capsule(fresh)
    fake_ledger.add_capsule(inactive)

    eligible = await _scanner(fake_ledger).find_eligible(now=NOW)

    assert [str(e.capsule_address) for e in eligible] == [due_address]
    assert eligible[0].intent is not None
    assert eligible[0].intent_error is None
    assert eligible[0].vault_address != eligible[0].capsule_address


@pytest.mark.asyncio
async def test_delegated_capsule_is_left_alone(fake_ledger, make_capsule):
    fake_ledger.add_capsule(make_capsule(last_activity=0), owner=DELEGATION_PROGRAM_ID)
    base = fake_ledger.add_capsule(make_capsule(last_activity=0))

    eligible = await _scanner(fake_ledger).find_eligible(now=NOW)

    assert [str(e.capsule_address) for e in eligible] == [base]


@pytest.mark.asyncio
async def test_failed_ownership_check_excludes_capsule(fake_ledger, make_capsule):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))

    async def broken_account_info(addr):
        raise TransientRpcError("getAccountInfo timed out", method="getAccountInfo")

    fake_ledger.get_account_info = broken_account_info

    eligible = await _scanner(fake_ledger).find_eligible(now=NOW)

    assert eligible == []
    assert address in fake_ledger.accounts


@pytest.mark.asyncio
async def test_unparsable_intent_is_kept_with_error(fake_ledger, make_capsule):
    fake_ledger.add_capsule(make_capsule(last_activity=0, intent_data=b"not json"))

    eligible = await _scanner(fake_ledger).find_eligible(now=NOW)

    assert len(eligible) == 1
    assert eligible[0].intent is None
    assert "not valid JSON" in eligible[0].intent_error


@pytest.mark.asyncio
async def test_ownership_checks_respect_concurrency_cap(fake_ledger, make_capsule):
    for _ in range(8):
        fake_ledger.add_capsule(make_capsule(last_activity=0))
    fake_ledger.latency = 0.01

    eligible = await _scanner(fake_ledger).find_eligible(now=NOW)

    assert len(eligible) == 8
    assert fake_ledger.peak_in_flight == 2
