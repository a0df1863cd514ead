"""
Value Transfer Module

The capability the ledger calls to move value out of the pool to a
withdrawing account. Gateways report their outcome as a TransferResult
rather than by raising. A rejected transfer lets the ledger roll the
withdrawal back. An unknown outcome (the payout may have been delivered)
keeps the debit until an operator resolves it.
"""

import httpx
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger("custody.transfer")


class TransferStatus(Enum):
    """What the gateway knows about one transfer"""
    COMPLETED = "completed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one transfer attempt"""
    status: TransferStatus
    reason: bytes = b""

    @property
    def success(self) -> bool:
        return self.status is TransferStatus.COMPLETED

    @classmethod
    def ok(cls) -> 'TransferResult':
        return cls(status=TransferStatus.COMPLETED)

    @classmethod
    def failed(cls, reason: bytes) -> 'TransferResult':
        return cls(status=TransferStatus.REJECTED, reason=reason)

    @classmethod
    def unknown(cls, reason: bytes) -> 'TransferResult':
        return cls(status=TransferStatus.UNKNOWN, reason=reason)


class TransferGateway(ABC):
    """Moves value from the pool to an external recipient"""

    @abstractmethod
    def transfer(self, to: str, amount: int, reference: Optional[str] = None) -> TransferResult:
        """Send exactly ``amount`` units to ``to``

        ``reference`` identifies the withdrawal; a gateway that talks to a
        remote service passes it along so repeated delivery can be detected.
        """
        pass

    def close(self) -> None:
        pass


class HttpTransferGateway(TransferGateway):
    """REST client for an external payout service"""

    # Raised before any request bytes reach the service
    NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def transfer(self, to: str, amount: int, reference: Optional[str] = None) -> TransferResult:
        """POST the payout once, never retried here

        The withdrawal reference is sent as the Idempotency-Key. A 4xx reply
        or a connection that never opened is a rejection. A 5xx reply or a
        transport error after the request went out is an unknown outcome.
        """
        headers = {"Idempotency-Key": reference or str(uuid.uuid4())}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = self._client.post(
                f"{self.base_url}/transfers",
                json={"to": to, "amount": str(amount)},
                headers=headers
            )
        except self.NOT_SENT_ERRORS as e:
            logger.error(f"Transfer service unreachable: {e}")
            return TransferResult.failed(_describe(e))
        except httpx.HTTPError as e:
            logger.error(f"Transfer {headers['Idempotency-Key']} outcome unknown: {e}")
            return TransferResult.unknown(_describe(e))

        latency_ms = (time.time() - start) * 1000
        if response.is_success:
            logger.debug(f"Transfer of {amount} to {to} accepted in {latency_ms:.1f}ms")
            return TransferResult.ok()

        reason = response.content or f"HTTP {response.status_code}".encode("utf-8")
        if response.is_server_error:
            logger.error(f"Transfer service returned {response.status_code}, outcome unknown: {response.text}")
            return TransferResult.unknown(reason)

        logger.warning(f"Transfer service returned {response.status_code}: {response.text}")
        return TransferResult.failed(reason)

    def health_check(self) -> bool:
        """Check if the transfer service is healthy"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


def _describe(error: Exception) -> bytes:
    return (str(error) or type(error).__name__).encode("utf-8")


@dataclass
class LocalTransferGateway(TransferGateway):
    """
    In-process gateway that records payouts instead of moving real value.

    ``on_transfer`` runs before the result is returned and may call back
    into the ledger. Setting ``fail_with`` makes every transfer fail with
    that reason. Setting ``unknown_with`` reports every transfer as having
    an unknown outcome, without recording a payout.
    """
    fail_with: Optional[bytes] = None
    unknown_with: Optional[bytes] = None
    on_transfer: Optional[Callable[[str, int], None]] = None
    payouts: List[Tuple[str, int]] = field(default_factory=list)
    references: List[Optional[str]] = field(default_factory=list)

    def transfer(self, to: str, amount: int, reference: Optional[str] = None) -> TransferResult:
        self.references.append(reference)
        if self.on_transfer is not None:
            self.on_transfer(to, amount)
        if self.fail_with is not None:
            return TransferResult.failed(self.fail_with)
        if self.unknown_with is not None:
            return TransferResult.unknown(self.unknown_with)
        self.payouts.append((to, amount))
        return TransferResult.ok()

    def paid_to(self, account: str) -> int:
        """Total paid out to one account"""
        return sum(amount for to, amount in self.payouts if to == account)
