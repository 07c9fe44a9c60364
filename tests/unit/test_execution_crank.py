"""
Tests for the execution crank.
"""

import json

import httpx
import pytest
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from capsule_service.services.crank.eligibility_scanner import EligibilityScanner
from capsule_service.services.crank.execution_crank import (
    EXECUTE_INTENT_DISCRIMINATOR,
    ExecutionCrank,
    SubmissionError,
    build_execute_instruction,
    run_crank,
)
from capsule_service.services.ledger.addresses import TOKEN_PROGRAM_ID, associated_token_address
from capsule_service.services.ledger.cancellation import CancellationToken
from capsule_service.services.ledger.rpc_client import LedgerRpcClient, TerminalRpcError

NOW = 1_700_000_000
DELEGATION_PROGRAM_ID = "DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh"


async def _eligible(ledger):
    scanner = EligibilityScanner(ledger, ledger.program_id, DELEGATION_PROGRAM_ID)
    return await scanner.find_eligible(now=NOW)


@pytest.mark.asyncio
async def test_instruction_layout_for_native_transfer(fake_ledger, make_capsule, beneficiary):
    fake_ledger.add_capsule(make_capsule(last_activity=0))
    [eligible] = await _eligible(fake_ledger)
    program = Pubkey.from_string(fake_ledger.program_id)

    instruction = build_execute_instruction(eligible, program)

    assert instruction.program_id == program
    assert bytes(instruction.data) == EXECUTE_INTENT_DISCRIMINATOR
    keys = [meta.pubkey for meta in instruction.accounts]
    assert keys == [
        eligible.capsule_address,
        eligible.vault_address,
        SYSTEM_PROGRAM_ID,
        TOKEN_PROGRAM_ID,
        eligible.fee_config_address,
        program,
        program,
        Pubkey.from_string(beneficiary),
    ]
    assert instruction.accounts[0].is_writable
    assert instruction.accounts[-1].is_writable
    assert not any(meta.is_signer for meta in instruction.accounts)


@pytest.mark.asyncio
async def test_instruction_uses_token_accounts_for_spl_mint(fake_ledger, make_capsule, beneficiary):
    mint = Pubkey.new_unique()
    fee_recipient = Pubkey.new_unique()
    fake_ledger.add_capsule(make_capsule(last_activity=0, mint=mint))
    [eligible] = await _eligible(fake_ledger)
    program = Pubkey.from_string(fake_ledger.program_id)

    instruction = build_execute_instruction(eligible, program, fee_recipient)

    keys = [meta.pubkey for meta in instruction.accounts]
    assert keys[5] == fee_recipient
    assert keys[6] == associated_token_address(eligible.vault_address, mint)
    assert keys[7] == associated_token_address(Pubkey.from_string(beneficiary), mint)


@pytest.mark.asyncio
async def test_zero_beneficiaries_recorded_without_submission(fake_ledger, make_capsule, crank_signer):
    empty = fake_ledger.add_capsule(make_capsule(last_activity=0, intent={"intent": "x", "beneficiaries": []}))
    good = fake_ledger.add_capsule(make_capsule(last_activity=0))
    crank = ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer)

    result = await crank.execute_all(await _eligible(fake_ledger))

    assert result.eligible_count == 2
    assert result.executed_count == 1
    assert len(result.errors) == 1
    assert empty in result.errors[0]
    assert "No beneficiaries" in result.errors[0]
    assert fake_ledger.sent == [good]
    assert result.signatures == {good: "sig-1"}
    assert result.ok is False


@pytest.mark.asyncio
async def test_rejected_submission_does_not_stop_batch(fake_ledger, make_capsule, crank_signer):
    rejected = fake_ledger.add_capsule(make_capsule(last_activity=0))
    accepted = fake_ledger.add_capsule(make_capsule(last_activity=0))
    fake_ledger.rejections[rejected] = "sendTransaction: custom program error: 0x1770"
    crank = ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer)

    result = await crank.execute_all(await _eligible(fake_ledger))

    assert result.executed_count == 1
    assert fake_ledger.sent == [accepted]
    assert result.errors == [f"{rejected}: sendTransaction: custom program error: 0x1770"]


@pytest.mark.asyncio
async def test_cancelled_pass_is_truncated(fake_ledger, make_capsule, crank_signer):
    fake_ledger.add_capsule(make_capsule(last_activity=0))
    eligible = await _eligible(fake_ledger)
    cancel = CancellationToken()
    cancel.cancel()

    result = await ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer).execute_all(
        eligible, cancel
    )

    assert result.truncated is True
    assert result.executed_count == 0
    assert fake_ledger.sent == []


@pytest.mark.asyncio
async def test_run_crank_with_nothing_due(fake_ledger, make_capsule, crank_signer, test_settings):
    fake_ledger.add_capsule(make_capsule(last_activity=NOW))

    result = await run_crank(fake_ledger, test_settings, crank_signer, now=NOW)

    assert result.to_dict() == {
        "ok": True,
        "eligibleCount": 0,
        "executedCount": 0,
        "errors": [],
        "signatures": {},
        "truncated": False,
    }


def _ledger_rpc(methods, status) -> LedgerRpcClient:
    def handler(request):
        body = json.loads(request.content)
        methods.append(body["method"])
        results = {
            "getLatestBlockhash": {
                "context": {"slot": 1},
                "value": {"blockhash": "11111111111111111111111111111111", "lastValidBlockHeight": 9},
            },
            "sendTransaction": "5sig",
            "getSignatureStatuses": {"context": {"slot": 2}, "value": [status]},
            "getBlockHeight": 1,
        }
        result = results[body["method"]]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return LedgerRpcClient(
        "https://rpc.test", confirm_poll_interval=0, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_transaction_failing_on_ledger_is_reported(fake_ledger, make_capsule, crank_signer):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))
    eligible = await _eligible(fake_ledger)
    methods = []
    failed = {"err": {"InstructionError": [0, {"Custom": 6000}]}, "confirmationStatus": "confirmed"}
    client = _ledger_rpc(methods, failed)

    try:
        result = await ExecutionCrank(client, fake_ledger.program_id, crank_signer).execute_all(eligible)
    finally:
        await client.close()

    assert "getSignatureStatuses" in methods
    assert result.executed_count == 0
    assert result.signatures == {}
    assert result.ok is False
    assert result.errors == [f"{address}: 5sig: transaction failed: custom program error: 0x1770"]


@pytest.mark.asyncio
async def test_confirmed_transaction_is_counted(fake_ledger, make_capsule, crank_signer):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))
    eligible = await _eligible(fake_ledger)
    client = _ledger_rpc([], {"err": None, "confirmationStatus": "finalized"})

    try:
        result = await ExecutionCrank(client, fake_ledger.program_id, crank_signer).execute_all(eligible)
    finally:
        await client.close()

    assert result.executed_count == 1
    assert result.signatures == {address: "5sig"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        TerminalRpcError(
            "sendTransaction: Transaction simulation failed: Error processing Instruction 0: "
            "custom program error: 0x1771",
            method="sendTransaction",
        ),
        TerminalRpcError(
            "sendTransaction: Transaction simulation failed",
            method="sendTransaction",
            response_data={"code": -32002, "data": {"err": {"InstructionError": [0, {"Custom": 6001}]}}},
        ),
        TerminalRpcError(
            "5sig: transaction failed: custom program error: 0x1771",
            method="confirmTransaction",
            response_data={"err": {"InstructionError": [0, {"Custom": 6001}]}},
        ),
    ],
)
async def test_inactive_capsule_rejection_marked_already_executed(
    fake_ledger, make_capsule, crank_signer, error
):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))
    [eligible] = await _eligible(fake_ledger)
    fake_ledger.rejections[address] = error

    with pytest.raises(SubmissionError) as exc:
        await ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer).execute_capsule(eligible)

    assert exc.value.already_executed is True
    assert exc.value.capsule_address == address


@pytest.mark.asyncio
async def test_other_program_error_is_not_already_executed(fake_ledger, make_capsule, crank_signer):
    address = fake_ledger.add_capsule(make_capsule(last_activity=0))
    [eligible] = await _eligible(fake_ledger)
    fake_ledger.rejections[address] = TerminalRpcError(
        "sendTransaction: custom program error: 0x1770",
        method="sendTransaction",
        response_data={"data": {"err": {"InstructionError": [0, {"Custom": 6000}]}}},
    )

    with pytest.raises(SubmissionError) as exc:
        await ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer).execute_capsule(eligible)

    assert exc.value.already_executed is False


@pytest.mark.asyncio
async def test_executions_respect_concurrency_cap(fake_ledger, make_capsule, crank_signer):
    addresses = [fake_ledger.add_capsule(make_capsule(last_activity=0)) for _ in range(10)]
    eligible = await _eligible(fake_ledger)
    fake_ledger.latency = 0.01
    fake_ledger.peak_in_flight = 0

    crank = ExecutionCrank(fake_ledger, fake_ledger.program_id, crank_signer, max_concurrency=3)
    result = await crank.execute_all(eligible)

    assert result.executed_count == 10
    assert sorted(fake_ledger.sent) == sorted(addresses)
    assert 1 < fake_ledger.peak_in_flight <= 3
