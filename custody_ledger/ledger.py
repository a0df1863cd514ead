"""
Custody Ledger Engine

Tracks per-account balances of a single fungible value held by a pool,
enforces a per-withdrawal ceiling and a global pool capacity, and records
every committed movement in a hash-chained trail.

Every mutating call runs checks, then effects, then the external
interaction. A withdrawal's debit is committed before value leaves through
the transfer gateway, so a gateway that calls back into the ledger observes
the post-debit balance and cannot spend the same units twice.
"""

import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import (
    LedgerError, InvalidAmount, InvalidAccount, InvalidLimit,
    ArithmeticBoundsError, ZeroDeposit, BankCapExceeded, ZeroWithdrawal,
    InsufficientFunds, WithdrawalThresholdExceeded, TransferFailed,
    TransferOutcomeUnknown, UnknownTransferReference
)
from .events import EventDispatcher, EventPayload, LedgerEvent
from .logging_config import get_logger, log_action
from .storage import StorageInterface, InMemoryStorage
from .transfer import TransferGateway, TransferStatus, LocalTransferGateway


# Largest representable quantity; all amounts are unsigned 256-bit integers
MAX_UINT256 = 2 ** 256 - 1


def checked_add(a: int, b: int) -> int:
    """Add two unsigned quantities, rejecting results above MAX_UINT256"""
    if b > MAX_UINT256 - a:
        raise ArithmeticBoundsError(f"Addition overflows: {a} + {b}")
    return a + b


def checked_sub(a: int, b: int) -> int:
    """Subtract two unsigned quantities, rejecting negative results"""
    if b > a:
        raise ArithmeticBoundsError(f"Subtraction underflows: {a} - {b}")
    return a - b


def _validate_quantity(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > MAX_UINT256:
        raise InvalidAmount(f"{name} must be between 0 and 2**256 - 1, got {value}")


def _validate_account(account: Any) -> None:
    if not isinstance(account, str) or not account:
        raise InvalidAccount(f"Account identifier must be a non-empty string, got {account!r}")


@dataclass(frozen=True)
class PoolSnapshot:
    """Point-in-time view of the pool's limits, counters and total"""
    withdrawal_threshold: int
    bank_cap: int
    total_held: int
    deposit_count: int
    withdrawal_count: int
    unconfirmed_outflow: int = 0

    def to_dict(self) -> Dict[str, str]:
        # Quantities may exceed what JSON consumers can represent exactly
        return {
            'withdrawal_threshold': str(self.withdrawal_threshold),
            'bank_cap': str(self.bank_cap),
            'total_held': str(self.total_held),
            'deposit_count': str(self.deposit_count),
            'withdrawal_count': str(self.withdrawal_count),
            'unconfirmed_outflow': str(self.unconfirmed_outflow)
        }


class CustodyLedger:
    """
    Balance-accounting engine for a custodial pool.

    All calls are serialized by one re-entrant lock. The lock stays held
    while the transfer gateway runs, so only callbacks made by the gateway
    itself (on the same thread) can enter the ledger mid-withdrawal.
    """

    STATE_TABLE = "pool_state"
    BALANCE_TABLE = "balances"
    PENDING_TABLE = "unconfirmed_transfers"
    STATE_ID = "pool"

    def __init__(
        self,
        withdrawal_threshold: int,
        bank_cap: int,
        transfer_gateway: Optional[TransferGateway] = None,
        storage: Optional[StorageInterface] = None,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        for name, limit in (("withdrawal_threshold", withdrawal_threshold), ("bank_cap", bank_cap)):
            if isinstance(limit, bool) or not isinstance(limit, int):
                raise InvalidLimit(f"{name} must be an integer, got {type(limit).__name__}")
            if limit <= 0 or limit > MAX_UINT256:
                raise InvalidLimit(f"{name} must be a positive integer, got {limit}")

        self._withdrawal_threshold = withdrawal_threshold
        self._bank_cap = bank_cap
        self.storage = storage if storage is not None else InMemoryStorage()
        self.audit_trail = audit_trail if audit_trail is not None else AuditTrail(self.storage)
        self.transfer_gateway = transfer_gateway if transfer_gateway is not None else LocalTransferGateway()
        self._event_dispatcher = event_dispatcher
        self._lock = threading.RLock()
        # Units debited but still inside the transfer gateway
        self._outflow_in_flight = 0
        self.logger = get_logger("custody.ledger")

        self._open()

    def _open(self) -> None:
        """Initialize fresh storage, or resume a ledger already stored there"""
        with self._lock:
            stored = self.storage.load(self.STATE_TABLE, self.STATE_ID)
            if stored is None:
                with self.storage.atomic():
                    self._save_state({
                        'total_held': 0,
                        'deposit_count': 0,
                        'withdrawal_count': 0,
                        'unconfirmed': 0
                    })
                    self.audit_trail.log_event(
                        AuditEventType.LEDGER_OPENED,
                        metadata={
                            'withdrawal_threshold': str(self._withdrawal_threshold),
                            'bank_cap': str(self._bank_cap)
                        }
                    )
                self.logger.info(
                    f"Opened ledger: threshold={self._withdrawal_threshold} cap={self._bank_cap}"
                )
                return

            stored_limits = (int(stored['withdrawal_threshold']), int(stored['bank_cap']))
            if stored_limits != (self._withdrawal_threshold, self._bank_cap):
                raise InvalidLimit(
                    f"Stored ledger has threshold={stored_limits[0]} cap={stored_limits[1]}, "
                    f"cannot reopen with threshold={self._withdrawal_threshold} cap={self._bank_cap}"
                )
            self.logger.info(f"Resumed ledger holding {stored['total_held']}")

    # Immutable configuration

    @property
    def withdrawal_threshold(self) -> int:
        return self._withdrawal_threshold

    @property
    def bank_cap(self) -> int:
        return self._bank_cap

    # Counters

    @property
    def deposit_count(self) -> int:
        with self._lock:
            return self._load_state()['deposit_count']

    @property
    def withdrawal_count(self) -> int:
        with self._lock:
            return self._load_state()['withdrawal_count']

    # Queries

    def balance_of(self, account: str) -> int:
        """Current balance of an account; zero for accounts never seen"""
        _validate_account(account)
        with self._lock:
            return self._load_balance(account)

    def total_held(self) -> int:
        """Current pool total"""
        with self._lock:
            return self._load_state()['total_held']

    def snapshot(self) -> PoolSnapshot:
        """Consistent view of limits, counters and total"""
        with self._lock:
            state = self._load_state()
            return PoolSnapshot(
                withdrawal_threshold=self._withdrawal_threshold,
                bank_cap=self._bank_cap,
                total_held=state['total_held'],
                deposit_count=state['deposit_count'],
                withdrawal_count=state['withdrawal_count'],
                unconfirmed_outflow=state['unconfirmed']
            )

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Compare the stored pool total with the sum of all stored balances

        Returns:
            Dictionary with the two figures and whether they agree
        """
        with self._lock:
            balances_sum = sum(int(r['balance']) for r in self.storage.load_all(self.BALANCE_TABLE))
            total = self._load_state()['total_held']
            return {
                'valid': balances_sum == total,
                'total_held': total,
                'sum_of_balances': balances_sum,
                'accounts': self.storage.count(self.BALANCE_TABLE)
            }

    # Mutations

    def deposit(self, caller: str, value: int) -> None:
        """
        Credit ``value`` units, already received with the call, to ``caller``

        Raises:
            ZeroDeposit: value is zero
            BankCapExceeded: the pool would hold more than bank_cap
        """
        with self._lock:
            try:
                _validate_account(caller)
                _validate_quantity("value", value)
                if value == 0:
                    raise ZeroDeposit()

                state = self._load_state()
                # Pool total before this deposit; units in flight to a withdrawing
                # account, or sent with an unknown outcome, keep their headroom
                # until the transfer settles
                pool_before = checked_add(
                    checked_add(state['total_held'], state['unconfirmed']), self._outflow_in_flight
                )
                available = self._bank_cap - pool_before if pool_before <= self._bank_cap else 0
                if value > available:
                    raise BankCapExceeded(available=available)

                new_balance = checked_add(self._load_balance(caller), value)
                state['total_held'] = checked_add(state['total_held'], value)
                state['deposit_count'] = checked_add(state['deposit_count'], 1)

                with self.storage.atomic():
                    self._save_balance(caller, new_balance)
                    self._save_state(state)
                    self.audit_trail.log_event(AuditEventType.DEPOSIT, account=caller, amount=value)
            except LedgerError as e:
                self._log_rejection("deposit", caller, value, e)
                raise

            log_action(
                self.logger, "info", f"Deposit of {value} credited",
                account=caller, action="deposit",
                extra={"amount": str(value), "balance": str(new_balance), "total_held": str(state['total_held'])}
            )
            self._publish(LedgerEvent.DEPOSIT, caller, value)

    def withdraw(self, caller: str, amount: int) -> None:
        """
        Debit ``amount`` from ``caller`` and send it through the transfer gateway

        Check order: zero amount, then the caller's balance, then the
        per-withdrawal threshold.

        Raises:
            ZeroWithdrawal: amount is zero
            InsufficientFunds: amount exceeds the caller's balance
            WithdrawalThresholdExceeded: amount exceeds withdrawal_threshold
            TransferFailed: the gateway rejected the transfer; this call's debit was reversed
            TransferOutcomeUnknown: the payout may have been delivered; the
                debit stays until resolve_transfer settles it
        """
        with self._lock:
            try:
                _validate_account(caller)
                _validate_quantity("amount", amount)
                if amount == 0:
                    raise ZeroWithdrawal()

                balance = self._load_balance(caller)
                if amount > balance:
                    raise InsufficientFunds(balance=balance)
                if amount > self._withdrawal_threshold:
                    raise WithdrawalThresholdExceeded(threshold=self._withdrawal_threshold)

                state = self._load_state()
                new_balance = checked_sub(balance, amount)
                state['total_held'] = checked_sub(state['total_held'], amount)
                state['withdrawal_count'] = checked_add(state['withdrawal_count'], 1)
                reference = uuid.uuid4().hex

                # Effects are committed before the gateway is called
                with self.storage.atomic():
                    self._save_balance(caller, new_balance)
                    self._save_state(state)

                self._send(caller, amount, reference)
                self.audit_trail.log_event(
                    AuditEventType.WITHDRAWAL, account=caller, amount=amount,
                    metadata={'reference': reference}
                )
            except LedgerError as e:
                self._log_rejection("withdraw", caller, amount, e)
                raise

            log_action(
                self.logger, "info", f"Withdrawal of {amount} sent",
                account=caller, action="withdraw",
                extra={"amount": str(amount), "reference": reference}
            )
            self._publish(LedgerEvent.WITHDRAWAL, caller, amount)

    def _send(self, caller: str, amount: int, reference: str) -> None:
        """Run the transfer and settle this withdrawal by its outcome

        A rejected or raising transfer reverses the debit. An unknown outcome
        keeps the debit as unconfirmed outflow and raises TransferOutcomeUnknown.
        """
        self._outflow_in_flight += amount
        try:
            try:
                result = self.transfer_gateway.transfer(caller, amount, reference=reference)
            except Exception as e:
                self._reverse_withdrawal(caller, amount)
                raise TransferFailed(f"{type(e).__name__}: {e}".encode("utf-8")) from e
            except BaseException:
                # Interrupted without a result; the caller sees the interruption
                self._reverse_withdrawal(caller, amount)
                raise
            if result.status is TransferStatus.UNKNOWN:
                self._hold_unconfirmed(caller, amount, reference, result.reason)
                raise TransferOutcomeUnknown(reference, result.reason)
            if not result.success:
                self._reverse_withdrawal(caller, amount)
                raise TransferFailed(result.reason)
        finally:
            self._outflow_in_flight -= amount

    def _reverse_withdrawal(self, caller: str, amount: int) -> None:
        # Reload: calls made by the gateway may have changed state meanwhile
        state = self._load_state()
        new_balance = checked_add(self._load_balance(caller), amount)
        state['total_held'] = checked_add(state['total_held'], amount)
        state['withdrawal_count'] = checked_sub(state['withdrawal_count'], 1)
        with self.storage.atomic():
            self._save_balance(caller, new_balance)
            self._save_state(state)

    def _hold_unconfirmed(self, caller: str, amount: int, reference: str, reason: bytes) -> None:
        # The debit stands; the withdrawal is only counted once delivery is confirmed
        state = self._load_state()
        state['withdrawal_count'] = checked_sub(state['withdrawal_count'], 1)
        state['unconfirmed'] = checked_add(state['unconfirmed'], amount)
        with self.storage.atomic():
            self._save_state(state)
            self.storage.save(self.PENDING_TABLE, reference, {
                'reference': reference,
                'account': caller,
                'amount': str(amount),
                'status': 'pending'
            })
            self.audit_trail.log_event(
                AuditEventType.TRANSFER_UNCONFIRMED, account=caller, amount=amount,
                metadata={'reference': reference, 'reason': reason.decode("utf-8", errors="replace")}
            )

    def resolve_transfer(self, reference: str, delivered: bool) -> None:
        """
        Settle a withdrawal whose transfer outcome was unknown

        ``delivered=True`` confirms the payout: the withdrawal is counted,
        recorded and published. ``delivered=False`` returns the units to the
        account's balance and the pool total.

        Raises:
            UnknownTransferReference: nothing is pending under ``reference``
        """
        with self._lock:
            pending = self.storage.load(self.PENDING_TABLE, reference) if isinstance(reference, str) else None
            if pending is None or pending['status'] != 'pending':
                raise UnknownTransferReference(reference)

            account = pending['account']
            amount = int(pending['amount'])
            state = self._load_state()
            state['unconfirmed'] = checked_sub(state['unconfirmed'], amount)
            if delivered:
                state['withdrawal_count'] = checked_add(state['withdrawal_count'], 1)
                pending['status'] = 'delivered'
            else:
                new_balance = checked_add(self._load_balance(account), amount)
                state['total_held'] = checked_add(state['total_held'], amount)
                pending['status'] = 'returned'

            with self.storage.atomic():
                if not delivered:
                    self._save_balance(account, new_balance)
                self._save_state(state)
                self.storage.save(self.PENDING_TABLE, reference, pending)
                self.audit_trail.log_event(
                    AuditEventType.WITHDRAWAL if delivered else AuditEventType.TRANSFER_RETURNED,
                    account=account, amount=amount, metadata={'reference': reference}
                )

            log_action(
                self.logger, "info", f"Transfer {reference} resolved as {pending['status']}",
                account=account, action="resolve_transfer",
                extra={"amount": str(amount), "reference": reference}
            )
            if delivered:
                self._publish(LedgerEvent.WITHDRAWAL, account, amount)

    def pending_transfers(self) -> List[Dict[str, str]]:
        """Withdrawals still waiting for resolve_transfer, oldest first"""
        with self._lock:
            return self.storage.find(self.PENDING_TABLE, {'status': 'pending'})

    # Helpers

    def _log_rejection(self, operation: str, caller: Any, amount: Any, error: LedgerError) -> None:
        log_action(
            self.logger, "warning", f"{operation} rejected: {error.message}",
            account=caller if isinstance(caller, str) else None, action=operation,
            extra={"error": error.code, "amount": str(amount), **{k: str(v) for k, v in error.fields().items()}}
        )

    def _publish(self, event_type: LedgerEvent, account: str, amount: int) -> None:
        """Publish a ledger event if an event dispatcher is available"""
        if self._event_dispatcher:
            self._event_dispatcher.publish(EventPayload(event_type=event_type, account=account, amount=amount))

    def _load_state(self) -> Dict[str, int]:
        data = self.storage.load(self.STATE_TABLE, self.STATE_ID)
        return {
            'total_held': int(data['total_held']),
            'deposit_count': int(data['deposit_count']),
            'withdrawal_count': int(data['withdrawal_count']),
            'unconfirmed': int(data.get('unconfirmed', 0))
        }

    def _save_state(self, state: Dict[str, int]) -> None:
        self.storage.save(self.STATE_TABLE, self.STATE_ID, {
            'withdrawal_threshold': str(self._withdrawal_threshold),
            'bank_cap': str(self._bank_cap),
            'total_held': str(state['total_held']),
            'deposit_count': str(state['deposit_count']),
            'withdrawal_count': str(state['withdrawal_count']),
            'unconfirmed': str(state['unconfirmed'])
        })

    def _load_balance(self, account: str) -> int:
        record = self.storage.load(self.BALANCE_TABLE, account)
        return int(record['balance']) if record else 0

    def _save_balance(self, account: str, balance: int) -> None:
        self.storage.save(self.BALANCE_TABLE, account, {'account': account, 'balance': str(balance)})
