"""Ledger providers and their construction."""

import asyncio

import pytest
from web3 import Web3
from web3.exceptions import Web3Exception

from learnchain.ledger import LedgerError, LedgerSetupError, LedgerSubmissionError, LedgerUnavailableError, create_ledger
from learnchain.ledger.base import CompleteCourseRequest, EnrollRequest, TxStatus
from learnchain.ledger.evm import EVMLedger
from learnchain.ledger.local import LocalLedger
from tests.evm_stubs import CONTRACT, RELAYER_KEY, bad_gateway, stubbed_evm_ledger


WALLET = "0x" + "AB" * 20


@pytest.mark.asyncio
async def test_local_ledger_mirrors_contract_rules() -> None:
    ledger = LocalLedger()

    enroll_tx = await ledger.submit(EnrollRequest(course_id=1, wallet=WALLET))
    assert await ledger.is_enrolled(WALLET.lower(), 1) is True
    assert await ledger.transaction_status(enroll_tx.tx_hash) == TxStatus.CONFIRMED

    with pytest.raises(LedgerSubmissionError, match="AlreadyEnrolled"):
        await ledger.submit(EnrollRequest(course_id=1, wallet=WALLET))

    await ledger.submit(CompleteCourseRequest(course_id=1, wallet=WALLET, total_points=600))
    assert await ledger.has_completed(WALLET, 1) is True
    assert await ledger.points_of(WALLET) == 600

    with pytest.raises(LedgerSubmissionError, match="AlreadyCompleted"):
        await ledger.submit(CompleteCourseRequest(course_id=1, wallet=WALLET, total_points=600))


@pytest.mark.asyncio
async def test_local_ledger_rejects_completion_without_enrollment() -> None:
    ledger = LocalLedger()

    with pytest.raises(LedgerSubmissionError, match="NotEnrolled"):
        await ledger.submit(CompleteCourseRequest(course_id=7, wallet=WALLET, total_points=10))

    assert ledger.submitted == []
    assert await ledger.transaction_status("0xdeadbeef") == TxStatus.UNKNOWN


def test_factory_builds_local_ledger(settings) -> None:
    ledger = create_ledger(settings.model_copy(update={"LEDGER_PROVIDER": "local"}))

    assert isinstance(ledger, LocalLedger)


def test_factory_requires_evm_credentials(settings) -> None:
    with pytest.raises(LedgerSetupError, match="requires COURSE_CONTRACT_ADDRESS"):
        create_ledger(settings.model_copy(update={"LEDGER_PROVIDER": "evm", "RELAYER_PRIVATE_KEY": ""}))


def test_factory_rejects_unknown_provider(settings) -> None:
    with pytest.raises(LedgerSetupError, match="Unknown LEDGER_PROVIDER"):
        create_ledger(settings.model_copy(update={"LEDGER_PROVIDER": "solana"}))


def test_evm_ledger_rejects_bad_contract_address() -> None:
    with pytest.raises(LedgerSetupError, match="contract address"):
        EVMLedger("http://localhost:8545", "not-an-address", RELAYER_KEY, chain_id=97)


def test_evm_ledger_rejects_bad_key() -> None:
    with pytest.raises(LedgerSetupError, match="private key"):
        EVMLedger("http://localhost:8545", CONTRACT, "0x1234", chain_id=97)


@pytest.mark.asyncio
async def test_evm_call_retries_once_then_reports_unavailable() -> None:
    ledger = EVMLedger("http://localhost:8545", CONTRACT, RELAYER_KEY, chain_id=97, timeout=1.0)
    calls = 0

    async def unreachable() -> int:
        nonlocal calls
        calls += 1
        raise ConnectionRefusedError("connection refused")

    with pytest.raises(LedgerUnavailableError):
        await ledger._call("getUserPoints", unreachable)
    assert calls == 2


@pytest.mark.asyncio
async def test_evm_call_recovers_on_second_try() -> None:
    ledger = EVMLedger("http://localhost:8545", CONTRACT, RELAYER_KEY, chain_id=97, timeout=0.05)
    calls = 0

    async def slow_then_fast() -> int:
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.sleep(1)
        return 42

    assert await ledger._call("getUserPoints", slow_then_fast) == 42
    assert calls == 2


@pytest.mark.asyncio
async def test_evm_call_treats_rpc_http_errors_as_unavailable() -> None:
    ledger = stubbed_evm_ledger()
    calls = 0

    async def bad_gateway_response() -> int:
        nonlocal calls
        calls += 1
        raise bad_gateway()

    with pytest.raises(LedgerUnavailableError):
        await ledger._call("getUserPoints", bad_gateway_response)
    assert calls == 2


@pytest.mark.asyncio
async def test_evm_reads_raise_ledger_errors_only() -> None:
    ledger = stubbed_evm_ledger()
    ledger.contract.errors = [bad_gateway(), bad_gateway()]

    with pytest.raises(LedgerUnavailableError):
        await ledger.has_completed(WALLET, 1)

    ledger.contract.errors = [Web3Exception("execution reverted")]
    with pytest.raises(LedgerError) as exc_info:
        await ledger.is_enrolled(WALLET, 1)
    assert not isinstance(exc_info.value, LedgerUnavailableError)

    ledger.contract.views["getUserPoints"] = 600
    assert await ledger.points_of(WALLET) == 600


@pytest.mark.asyncio
async def test_evm_concurrent_submissions_take_consecutive_nonces() -> None:
    ledger = stubbed_evm_ledger()
    ledger.w3.eth.pending_nonce = 5

    submitted = await asyncio.gather(
        *(ledger.submit(EnrollRequest(course_id=course_id, wallet=WALLET)) for course_id in (1, 2, 3))
    )

    assert sorted(ledger._account.signed_nonces) == [5, 6, 7]
    assert len({tx.tx_hash for tx in submitted}) == 3
    assert len(ledger.w3.eth.broadcast) == 3


@pytest.mark.asyncio
async def test_evm_failed_broadcast_rereads_the_nonce() -> None:
    ledger = stubbed_evm_ledger()
    ledger.w3.eth.pending_nonce = 5
    await ledger.submit(EnrollRequest(course_id=1, wallet=WALLET))

    ledger.w3.eth.send_errors = [Web3Exception("nonce too low")]
    with pytest.raises(LedgerSubmissionError, match="nonce too low"):
        await ledger.submit(EnrollRequest(course_id=2, wallet=WALLET))

    ledger.w3.eth.pending_nonce = 9
    await ledger.submit(EnrollRequest(course_id=2, wallet=WALLET))

    assert ledger._account.signed_nonces == [5, 6, 9]


@pytest.mark.asyncio
async def test_evm_submit_reports_every_failure_as_ledger_error() -> None:
    ledger = stubbed_evm_ledger()

    ledger.w3.eth.send_errors = [bad_gateway(), bad_gateway()]
    with pytest.raises(LedgerUnavailableError):
        await ledger.submit(CompleteCourseRequest(course_id=1, wallet=WALLET, total_points=600))

    ledger.w3.eth.send_errors = [RuntimeError("unexpected provider failure")]
    with pytest.raises(LedgerSubmissionError, match="unexpected provider failure"):
        await ledger.submit(CompleteCourseRequest(course_id=1, wallet=WALLET, total_points=600))

    assert ledger.w3.eth.broadcast == []
    assert ledger._nonce is None


@pytest.mark.asyncio
async def test_evm_already_known_broadcast_returns_the_signed_hash() -> None:
    ledger = stubbed_evm_ledger()
    ledger.w3.eth.pending_nonce = 3
    ledger.w3.eth.send_errors = [Web3Exception("already known")]

    submitted = await ledger.submit(EnrollRequest(course_id=1, wallet=WALLET))

    assert submitted.tx_hash == Web3.to_hex((3).to_bytes(32, "big"))
    assert ledger.w3.eth.broadcast == []
    # The nonce was used, so the next submission takes the following one
    await ledger.submit(EnrollRequest(course_id=2, wallet=WALLET))
    assert ledger._account.signed_nonces == [3, 4]


@pytest.mark.asyncio
async def test_evm_transaction_status() -> None:
    ledger = stubbed_evm_ledger()
    eth = ledger.w3.eth
    eth.receipts = {"0xmined": {"status": 1}, "0xreverted": {"status": 0}}
    eth.mempool = {"0xwaiting"}

    assert await ledger.transaction_status("0xmined") == TxStatus.CONFIRMED
    assert await ledger.transaction_status("0xreverted") == TxStatus.REVERTED
    assert await ledger.transaction_status("0xwaiting") == TxStatus.PENDING
    assert await ledger.transaction_status("0xlost") == TxStatus.UNKNOWN

    eth.errors = [bad_gateway(), bad_gateway()]
    with pytest.raises(LedgerUnavailableError):
        await ledger.transaction_status("0xmined")


@pytest.mark.asyncio
async def test_evm_verify_setup_accepts_a_funded_relayer() -> None:
    ledger = stubbed_evm_ledger()

    await ledger.verify_setup()


@pytest.mark.asyncio
async def test_evm_verify_setup_requires_a_connection() -> None:
    ledger = stubbed_evm_ledger()
    ledger.w3.connected = False

    with pytest.raises(LedgerSetupError, match="Cannot connect"):
        await ledger.verify_setup()


@pytest.mark.asyncio
async def test_evm_verify_setup_requires_the_contract_relayer() -> None:
    ledger = stubbed_evm_ledger()
    ledger.contract.views["getRelayer"] = "0x" + "34" * 20

    with pytest.raises(LedgerSetupError, match="does not match"):
        await ledger.verify_setup()


@pytest.mark.asyncio
async def test_evm_verify_setup_requires_relayer_balance() -> None:
    ledger = stubbed_evm_ledger()
    ledger.w3.eth.balance_wei = 10**15

    with pytest.raises(LedgerSetupError, match="below the minimum"):
        await ledger.verify_setup()


@pytest.mark.asyncio
async def test_evm_verify_setup_reports_unreachable_node() -> None:
    ledger = stubbed_evm_ledger()
    ledger.contract.errors = [bad_gateway(), bad_gateway()]

    with pytest.raises(LedgerSetupError, match="unreachable"):
        await ledger.verify_setup()
