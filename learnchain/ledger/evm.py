"""EVM ledger implementation using web3.py and eth-account."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, ProviderConnectionError, TransactionNotFound, Web3Exception

from .base import (
    AbstractLedger,
    CompleteCourseRequest,
    EnrollRequest,
    LedgerTxRequest,
    SubmittedTx,
    TxStatus,
)
from .exceptions import LedgerError, LedgerSetupError, LedgerSubmissionError, LedgerUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transport-level failures: the node could not be reached or answered with an HTTP error
TRANSIENT_RPC_ERRORS = (TimeoutError, OSError, aiohttp.ClientError, ProviderConnectionError)

# Only the functions the platform calls; the contract is opaque beyond these.
COURSE_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getUserPoints",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "isUserEnrolled",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}, {"name": "courseId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "hasCompletedCourse",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}, {"name": "courseId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "getRelayer",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "enroll",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "courseId", "type": "uint256"}, {"name": "user", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "completeCourse",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "courseId", "type": "uint256"},
            {"name": "user", "type": "address"},
            {"name": "totalPoints", "type": "uint256"},
        ],
        "outputs": [],
    },
]


async def _unless_not_found(lookup: Awaitable[T]) -> T | None:
    try:
        return await lookup
    except TransactionNotFound:
        return None


class EVMLedger(AbstractLedger):
    """Course contract on an EVM chain, written through one server-held relayer key."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        relayer_private_key: str,
        chain_id: int,
        timeout: float = 10.0,
        min_relayer_balance_eth: float = 0.01,
    ) -> None:
        """Initialize the ledger client.

        Args:
            rpc_url: HTTP JSON-RPC endpoint
            contract_address: Deployed course contract address
            relayer_private_key: Hex private key of the relayer account
            chain_id: Chain id used when signing
            timeout: Per-call RPC timeout in seconds
            min_relayer_balance_eth: Balance below which ``verify_setup`` fails

        Raises
        ------
            LedgerSetupError: If the contract address or key is malformed.
        """
        if not contract_address or not Web3.is_address(contract_address):
            msg = f"Invalid course contract address: {contract_address!r}"
            raise LedgerSetupError(msg)
        try:
            self._account = Account.from_key(relayer_private_key)
        except (ValueError, TypeError) as e:
            msg = "Invalid relayer private key"
            raise LedgerSetupError(msg) from e

        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.timeout = timeout
        self.min_relayer_balance_eth = Decimal(str(min_relayer_balance_eth))
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=COURSE_CONTRACT_ABI)

        # Owned by the submit lock
        self._submit_lock = asyncio.Lock()
        self._nonce: int | None = None

    @property
    def relayer_address(self) -> str:
        return self._account.address

    async def _call(self, description: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run one RPC call under the timeout, retrying once on a transient failure.

        Raises
        ------
            LedgerUnavailableError: If both tries time out, cannot connect or get an HTTP error.
        """
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except TRANSIENT_RPC_ERRORS as e:
                last_error = e
                logger.warning(f"Ledger RPC {description} failed (try {attempt}/2): {type(e).__name__}: {e}")
        msg = f"Ledger RPC {description} unavailable"
        raise LedgerUnavailableError(msg) from last_error

    async def _read(self, description: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run a contract view call, reporting node-side errors as ``LedgerError``."""
        try:
            return await self._call(description, factory)
        except (Web3Exception, ValueError) as e:
            msg = f"Ledger read {description} failed: {e}"
            raise LedgerError(msg) from e

    async def is_enrolled(self, wallet: str, course_id: int) -> bool:
        fn = self.contract.functions.isUserEnrolled(Web3.to_checksum_address(wallet), course_id)
        return bool(await self._read("isUserEnrolled", fn.call))

    async def has_completed(self, wallet: str, course_id: int) -> bool:
        fn = self.contract.functions.hasCompletedCourse(Web3.to_checksum_address(wallet), course_id)
        return bool(await self._read("hasCompletedCourse", fn.call))

    async def points_of(self, wallet: str) -> int:
        fn = self.contract.functions.getUserPoints(Web3.to_checksum_address(wallet))
        return int(await self._read("getUserPoints", fn.call))

    def _contract_function(self, request: LedgerTxRequest) -> Any:
        user = Web3.to_checksum_address(request.wallet)
        if isinstance(request, EnrollRequest):
            return self.contract.functions.enroll(request.course_id, user)
        if isinstance(request, CompleteCourseRequest):
            return self.contract.functions.completeCourse(request.course_id, user, request.total_points)
        msg = f"Unsupported ledger request: {request!r}"
        raise LedgerSubmissionError(msg)

    async def submit(self, request: LedgerTxRequest) -> SubmittedTx:
        """Sign and broadcast ``request`` from the relayer account.

        Submissions are serialized so that each one takes the next local nonce.
        Any failure drops the cached nonce so the next submission re-reads it
        from the pending pool.
        """
        fn = self._contract_function(request)
        async with self._submit_lock:
            try:
                if self._nonce is None:
                    self._nonce = await self._call(
                        "get_transaction_count",
                        lambda: self.w3.eth.get_transaction_count(self._account.address, "pending"),
                    )
                tx = await self._call(
                    "build_transaction",
                    lambda: fn.build_transaction(
                        {"from": self._account.address, "nonce": self._nonce, "chainId": self.chain_id}
                    ),
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._broadcast(signed)
            except ContractLogicError as e:
                self._nonce = None
                msg = f"Contract rejected {type(request).__name__} for course {request.course_id}: {e}"
                raise LedgerSubmissionError(msg) from e
            except LedgerUnavailableError:
                self._nonce = None
                raise
            except Exception as e:
                # Callers only handle LedgerError; anything else from the provider stack is a failed submission
                self._nonce = None
                msg = f"Failed to submit {type(request).__name__} for course {request.course_id}: {e}"
                raise LedgerSubmissionError(msg) from e

            self._nonce += 1

        logger.info(f"Submitted {type(request).__name__} for course {request.course_id}: {tx_hash}")
        return SubmittedTx(tx_hash=tx_hash)

    async def _broadcast(self, signed: Any) -> str:
        """Send a signed transaction.

        A retried broadcast of the same signed bytes may be answered with
        "already known"; the hash is then taken from the signed transaction.
        """
        try:
            raw_hash = await self._call(
                "send_raw_transaction", lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
            )
        except Web3Exception as e:
            if "already known" not in str(e).lower():
                raise
            raw_hash = signed.hash
        return Web3.to_hex(raw_hash)

    async def transaction_status(self, tx_hash: str) -> TxStatus:
        receipt = await self._read(
            "get_transaction_receipt", lambda: _unless_not_found(self.w3.eth.get_transaction_receipt(tx_hash))
        )
        if receipt is None:
            pending = await self._read("get_transaction", lambda: _unless_not_found(self.w3.eth.get_transaction(tx_hash)))
            return TxStatus.UNKNOWN if pending is None else TxStatus.PENDING

        return TxStatus.CONFIRMED if receipt["status"] == 1 else TxStatus.REVERTED

    async def verify_setup(self) -> None:
        try:
            connected = await self._call("is_connected", self.w3.is_connected)
            if not connected:
                msg = f"Cannot connect to RPC endpoint {self.rpc_url}"
                raise LedgerSetupError(msg)

            relayer = await self._call("getRelayer", self.contract.functions.getRelayer().call)
            if Web3.to_checksum_address(relayer) != self._account.address:
                msg = f"Contract relayer {relayer} does not match configured key {self._account.address}"
                raise LedgerSetupError(msg)

            balance_wei = await self._call("get_balance", lambda: self.w3.eth.get_balance(self._account.address))
        except LedgerUnavailableError as e:
            msg = f"Ledger unreachable during setup: {e}"
            raise LedgerSetupError(msg) from e
        except (ContractLogicError, Web3Exception) as e:
            msg = f"Course contract call failed during setup: {e}"
            raise LedgerSetupError(msg) from e

        balance = Web3.from_wei(balance_wei, "ether")
        if balance < self.min_relayer_balance_eth:
            msg = f"Relayer balance {balance} is below the minimum {self.min_relayer_balance_eth}"
            raise LedgerSetupError(msg)

        logger.info(f"Ledger ready: relayer {self._account.address}, balance {balance}, chain {self.chain_id}")

    async def close(self) -> None:
        await self.w3.provider.disconnect()
