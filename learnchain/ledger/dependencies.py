"""FastAPI dependency for the process-wide ledger instance."""

from typing import Annotated

from fastapi import Depends, Request

from .base import AbstractLedger
from .exceptions import LedgerUnavailableError


def get_ledger(request: Request) -> AbstractLedger:
    """Return the ledger created at startup and held on ``app.state``.

    Raises
    ------
        LedgerUnavailableError: If the application started without a ledger.
    """
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        msg = "Ledger is not initialized"
        raise LedgerUnavailableError(msg)
    return ledger


Ledger = Annotated[AbstractLedger, Depends(get_ledger)]
