"""Ledger provider factory for creating the configured ledger instance."""

import logging

from learnchain.config import Settings

from .base import AbstractLedger
from .evm import EVMLedger
from .exceptions import LedgerSetupError
from .local import LocalLedger


logger = logging.getLogger(__name__)


def create_ledger(settings: Settings) -> AbstractLedger:
    """Build the ledger provider selected by ``LEDGER_PROVIDER``.

    Returns
    -------
        Ledger provider instance. The caller owns it and must ``close()`` it.

    Raises
    ------
        LedgerSetupError: If ``evm`` is selected without a contract or relayer key.
    """
    provider = settings.LEDGER_PROVIDER.lower()

    if provider == "evm":
        if not settings.COURSE_CONTRACT_ADDRESS or not settings.RELAYER_PRIVATE_KEY:
            msg = "LEDGER_PROVIDER=evm requires COURSE_CONTRACT_ADDRESS and RELAYER_PRIVATE_KEY"
            raise LedgerSetupError(msg)
        return EVMLedger(
            rpc_url=settings.RPC_URL,
            contract_address=settings.COURSE_CONTRACT_ADDRESS,
            relayer_private_key=settings.RELAYER_PRIVATE_KEY,
            chain_id=settings.CHAIN_ID,
            timeout=settings.LEDGER_RPC_TIMEOUT_SECONDS,
            min_relayer_balance_eth=settings.LEDGER_MIN_RELAYER_BALANCE_ETH,
        )

    if provider != "local":
        msg = f"Unknown LEDGER_PROVIDER: {settings.LEDGER_PROVIDER!r}"
        raise LedgerSetupError(msg)

    logger.info("Using in-process local ledger")
    return LocalLedger()
