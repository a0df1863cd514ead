"""
Audit Trail Module

Hash-chained append-only record log with SHA-256 for tamper detection.
Every committed deposit and withdrawal is recorded here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface


class AuditEventType(Enum):
    """Types of ledger records"""
    LEDGER_OPENED = "LedgerOpened"
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER_UNCONFIRMED = "TransferUnconfirmed"
    TRANSFER_RETURNED = "TransferReturned"


@dataclass
class AuditEvent:
    """
    Immutable ledger record with hash chaining for tamper detection
    """
    id: str
    sequence: int
    created_at: datetime
    event_type: AuditEventType
    account: Optional[str]
    amount: Optional[int]
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this record
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'account': self.account,
            # Amounts may exceed 64 bits, hash their decimal form
            'amount': None if self.amount is None else str(self.amount),
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'account': self.account,
            'amount': None if self.amount is None else str(self.amount),
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary"""
        amount = data.get('amount')
        return cls(
            id=data['id'],
            sequence=data['sequence'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            account=data.get('account'),
            amount=None if amount is None else int(amount),
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {}
        )


class AuditTrail:
    """
    Hash-chained record log. The chain head is the last inserted record,
    read back from storage on every append, so a rolled-back storage scope
    leaves no gap in the chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "ledger_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _chain_head(self) -> Optional[Dict[str, Any]]:
        """Load the most recent record, if any"""
        return self.storage.load_last(self.table_name)

    def log_event(
        self,
        event_type: AuditEventType,
        account: Optional[str] = None,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append a record with hash chaining

        Args:
            event_type: Type of record
            account: Account the record concerns
            amount: Amount moved
            metadata: Additional record-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                sequence=head['sequence'] + 1 if head else 1,
                created_at=datetime.now(timezone.utc),
                event_type=event_type,
                account=account,
                amount=amount,
                previous_hash=head['current_hash'] if head else "",
                current_hash="",
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """
        Get all records in append order

        Args:
            limit: Maximum number of records to return (most recent)
        """
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def get_events_for_account(self, account: str) -> List[AuditEvent]:
        """Get all records concerning one account"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'account': account})
        ]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get all records of one type"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'event_type': event_type.value})
        ]
        events.sort(key=lambda e: e.sequence)
        return events

    def count_events(self) -> int:
        """Get total number of records"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent record"""
        head = self._chain_head()
        return head['current_hash'] if head else None

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire record chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
