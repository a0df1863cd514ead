"""
FastAPI REST API Module

HTTP calling boundary over the custody ledger. A deposit request carries
the value that arrived with it; withdrawals pay out through the configured
transfer gateway. Runs on port 8090 by default.
"""

from typing import Optional
from fastapi import FastAPI, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import get_config
from .errors import (
    LedgerError, InvalidAmount, InvalidAccount, ZeroDeposit, ZeroWithdrawal,
    BankCapExceeded, InsufficientFunds, WithdrawalThresholdExceeded, TransferFailed,
    TransferOutcomeUnknown, UnknownTransferReference
)
from .logging_config import get_logger, setup_logging
from .system import CustodySystem


logger = get_logger("custody.api")

ERROR_STATUS = {
    InvalidAmount: 400,
    InvalidAccount: 400,
    ZeroDeposit: 400,
    ZeroWithdrawal: 400,
    BankCapExceeded: 409,
    InsufficientFunds: 409,
    WithdrawalThresholdExceeded: 409,
    TransferFailed: 502,
    TransferOutcomeUnknown: 504,
    UnknownTransferReference: 404,
}


class DepositRequest(BaseModel):
    account: str = Field(..., min_length=1)
    value: int = Field(..., ge=0, description="Units received with this call")


class WithdrawRequest(BaseModel):
    account: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)


class ResolveTransferRequest(BaseModel):
    delivered: bool = Field(..., description="Whether the payout service confirmed delivery")


_system: Optional[CustodySystem] = None


def get_custody_system() -> CustodySystem:
    """Get the process-wide custody system, creating it on first use"""
    global _system
    if _system is None:
        _system = CustodySystem()
    return _system


def set_custody_system(system: Optional[CustodySystem]) -> None:
    """Replace the process-wide custody system"""
    global _system
    _system = system


app = FastAPI(
    title="Custody Ledger API",
    description="Custodial pool with per-account balances, withdrawal ceiling and pool capacity",
    version="1.0.0"
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request, exc: LedgerError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health")
def health():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.post("/deposit")
def deposit(request: DepositRequest, system: CustodySystem = Depends(get_custody_system)):
    """Credit a deposit to the calling account"""
    system.ledger.deposit(request.account, request.value)
    return {
        "account": request.account,
        "balance": str(system.ledger.balance_of(request.account)),
        "message": "Deposit accepted"
    }


@app.post("/withdraw")
def withdraw(request: WithdrawRequest, system: CustodySystem = Depends(get_custody_system)):
    """Withdraw from the calling account"""
    system.ledger.withdraw(request.account, request.amount)
    return {
        "account": request.account,
        "balance": str(system.ledger.balance_of(request.account)),
        "message": "Withdrawal sent"
    }


@app.get("/accounts/{account}/balance")
def balance(account: str, system: CustodySystem = Depends(get_custody_system)):
    """Get an account's balance"""
    return {"account": account, "balance": str(system.ledger.balance_of(account))}


@app.get("/pool")
def pool(system: CustodySystem = Depends(get_custody_system)):
    """Get limits, counters and pool total"""
    return system.ledger.snapshot().to_dict()


@app.get("/events")
def events(account: Optional[str] = None, limit: Optional[int] = Query(None, ge=1),
           system: CustodySystem = Depends(get_custody_system)):
    """List emitted ledger records, oldest first"""
    if account:
        records = system.audit_trail.get_events_for_account(account)
    else:
        records = system.audit_trail.get_all_events(limit=limit)
    return {"events": [record.to_dict() for record in records]}


@app.get("/transfers/pending")
def pending_transfers(system: CustodySystem = Depends(get_custody_system)):
    """List withdrawals whose transfer outcome is still unknown"""
    return {"transfers": system.ledger.pending_transfers()}


@app.post("/transfers/{reference}/resolve")
def resolve_transfer(reference: str, request: ResolveTransferRequest,
                     system: CustodySystem = Depends(get_custody_system)):
    """Settle a withdrawal after checking its delivery with the payout service"""
    system.ledger.resolve_transfer(reference, request.delivered)
    return {"reference": reference, "status": "delivered" if request.delivered else "returned"}


@app.get("/audit/verify")
def verify(system: CustodySystem = Depends(get_custody_system)):
    """Verify the record chain and balance conservation"""
    return {
        "audit": system.audit_trail.verify_integrity(),
        "conservation": {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v
                         for k, v in system.ledger.verify_conservation().items()}
    }


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "custody_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
