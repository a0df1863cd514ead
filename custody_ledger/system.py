"""
System wiring: builds storage, audit trail, transfer gateway, event
dispatcher and ledger from configuration.
"""

from typing import Optional

from .audit import AuditTrail
from .config import CustodyConfig, get_config
from .events import EventDispatcher
from .ledger import CustodyLedger
from .storage import create_storage
from .transfer import TransferGateway, HttpTransferGateway, LocalTransferGateway


class CustodySystem:
    """Custody ledger with all collaborators initialized"""

    def __init__(self, config: Optional[CustodyConfig] = None,
                 transfer_gateway: Optional[TransferGateway] = None):
        self.config = config or get_config()

        self.storage = create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = EventDispatcher()
        self.transfer_gateway = transfer_gateway or self._create_transfer_gateway()
        self.ledger = CustodyLedger(
            withdrawal_threshold=self.config.withdrawal_threshold,
            bank_cap=self.config.bank_cap,
            transfer_gateway=self.transfer_gateway,
            storage=self.storage,
            audit_trail=self.audit_trail,
            event_dispatcher=self.event_dispatcher
        )

    def _create_transfer_gateway(self) -> TransferGateway:
        """Create transfer gateway based on configuration"""
        if self.config.transfer_gateway_url:
            return HttpTransferGateway(
                base_url=self.config.transfer_gateway_url,
                timeout=self.config.transfer_timeout,
                api_key=self.config.transfer_api_key or None
            )
        return LocalTransferGateway()

    def close(self) -> None:
        self.transfer_gateway.close()
        self.storage.close()
