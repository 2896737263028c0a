"""In-memory stand-ins for the web3 objects ``EVMLedger`` talks to."""

import asyncio
from types import SimpleNamespace
from typing import Any

from aiohttp import ClientResponseError, RequestInfo
from multidict import CIMultiDict, CIMultiDictProxy
from web3.exceptions import TransactionNotFound
from yarl import URL

from learnchain.ledger.evm import EVMLedger


CONTRACT = "0x" + "12" * 20
RELAYER_KEY = "0x" + "11" * 32
RPC_URL = "http://localhost:8545"


def bad_gateway() -> ClientResponseError:
    """What aiohttp raises when the RPC node answers with HTTP 502."""
    url = URL(RPC_URL)
    request_info = RequestInfo(url, "POST", CIMultiDictProxy(CIMultiDict()), url)
    return ClientResponseError(request_info, (), status=502, message="Bad Gateway")


class StubFunction:
    def __init__(self, contract: "StubContract", name: str, args: tuple[Any, ...]) -> None:
        self.contract = contract
        self.name = name
        self.args = args

    async def call(self) -> Any:
        if self.contract.errors:
            raise self.contract.errors.pop(0)
        return self.contract.views[self.name]

    async def build_transaction(self, params: dict[str, Any]) -> dict[str, Any]:
        # Yield so concurrent submissions interleave here if they are not serialized
        await asyncio.sleep(0)
        return {"nonce": params["nonce"], "chainId": params["chainId"], "function": self.name, "args": self.args}


class StubContract:
    def __init__(self, relayer: str) -> None:
        self.views: dict[str, Any] = {
            "getRelayer": relayer,
            "isUserEnrolled": False,
            "hasCompletedCourse": False,
            "getUserPoints": 0,
        }
        self.errors: list[Exception] = []
        self.functions = SimpleNamespace(
            **{name: self._function(name) for name in [*self.views, "enroll", "completeCourse"]}
        )

    def _function(self, name: str) -> Any:
        return lambda *args: StubFunction(self, name, args)


class StubEth:
    def __init__(self) -> None:
        self.pending_nonce = 0
        self.balance_wei = 10**18
        self.receipts: dict[str, dict[str, Any]] = {}
        self.mempool: set[str] = set()
        self.broadcast: list[bytes] = []
        self.send_errors: list[Exception] = []
        self.errors: list[Exception] = []

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    async def get_transaction_count(self, address: str, block: str) -> int:
        self._maybe_fail()
        return self.pending_nonce

    async def send_raw_transaction(self, raw: bytes) -> bytes:
        self._maybe_fail()
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.broadcast.append(raw)
        return raw

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        self._maybe_fail()
        if tx_hash not in self.receipts:
            msg = f"Transaction with hash {tx_hash} not found"
            raise TransactionNotFound(msg)
        return self.receipts[tx_hash]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        self._maybe_fail()
        if tx_hash not in self.mempool:
            msg = f"Transaction with hash {tx_hash} not found"
            raise TransactionNotFound(msg)
        return {"hash": tx_hash}

    async def get_balance(self, address: str) -> int:
        self._maybe_fail()
        return self.balance_wei


class StubWeb3:
    def __init__(self) -> None:
        self.eth = StubEth()
        self.connected = True

    async def is_connected(self) -> bool:
        return self.connected


class StubSigner:
    """Signs by encoding the nonce, so each broadcast reveals which nonce it used."""

    def __init__(self, address: str) -> None:
        self.address = address
        self.signed_nonces: list[int] = []

    def sign_transaction(self, tx: dict[str, Any]) -> SimpleNamespace:
        self.signed_nonces.append(tx["nonce"])
        encoded = tx["nonce"].to_bytes(32, "big")
        return SimpleNamespace(raw_transaction=encoded, hash=encoded)


def stubbed_evm_ledger(timeout: float = 1.0) -> EVMLedger:
    """An ``EVMLedger`` whose RPC node, contract and signer are in-memory stubs."""
    ledger = EVMLedger(RPC_URL, CONTRACT, RELAYER_KEY, chain_id=97, timeout=timeout)
    relayer = ledger.relayer_address
    ledger.w3 = StubWeb3()
    ledger.contract = StubContract(relayer)
    ledger._account = StubSigner(relayer)
    return ledger
