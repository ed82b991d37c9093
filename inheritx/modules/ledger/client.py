"""
Ledger / escrow gateway clients.

The chain is the authoritative escrow ledger. The engine reaches it through a
gateway service that holds the signing key and submits contract calls; every
mutating flow calls the ledger first and only then mirrors the result into the
database.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from inheritx.core.config import settings
from inheritx.core.errors import LedgerError, LedgerTimeout

logger = logging.getLogger(__name__)


class LedgerClient(ABC):
    """Contract every ledger implementation must satisfy. Methods return a tx hash."""

    name: str = "ledger"

    @abstractmethod
    def lock_escrow(self, plan_id: int, asset_type: str, amount: int) -> str:
        """Lock amount (allocable + fee) for a plan."""

    @abstractmethod
    def release_escrow(self, plan_id: int, beneficiary_index: int, amount: int) -> str:
        """Release amount from a plan's escrow to one beneficiary."""

    @abstractmethod
    def refund_escrow(self, plan_id: int) -> str:
        """Return whatever remains in a plan's escrow to the owner."""


class HttpLedgerClient(LedgerClient):
    """JSON-over-HTTP client for the escrow gateway, with bounded timeouts."""

    name = "http"

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def lock_escrow(self, plan_id: int, asset_type: str, amount: int) -> str:
        return self._post("/escrow/lock", {
            "planId": plan_id,
            "assetType": asset_type,
            "amount": str(amount),
        })

    def release_escrow(self, plan_id: int, beneficiary_index: int, amount: int) -> str:
        return self._post("/escrow/release", {
            "planId": plan_id,
            "beneficiaryIndex": beneficiary_index,
            "amount": str(amount),
        })

    def refund_escrow(self, plan_id: int) -> str:
        return self._post("/escrow/refund", {"planId": plan_id})

    def _post(self, path: str, payload: Dict[str, Any]) -> str:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning(f"Ledger call {path} timed out after {self.timeout}s")
            raise LedgerTimeout(f"{path} timed out") from e
        except requests.RequestException as e:
            logger.error(f"Ledger call {path} failed: {e}")
            raise LedgerError(f"{path} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Ledger call {path} returned HTTP {response.status_code}: {response.text[:200]}")
            raise LedgerError(f"{path} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerError(f"{path} returned a non-JSON body") from e

        tx_hash = body.get("txHash")
        if not tx_hash:
            raise LedgerError(f"{path} response did not include a txHash")
        if body.get("status") == "reverted":
            raise LedgerError(f"{path} transaction {tx_hash} reverted on-chain")

        logger.info(f"Ledger call {path} confirmed: {tx_hash}")
        return tx_hash


class DryRunLedgerClient(LedgerClient):
    """
    Stand-in used when no gateway is configured (local development).

    Logs every call and returns a deterministic synthetic hash; nothing moves on-chain.
    """

    name = "dry-run"

    def __init__(self):
        self._counter = 0

    def _fake_hash(self, *parts: Any) -> str:
        self._counter += 1
        raw = ":".join(str(p) for p in (*parts, self._counter)).encode()
        return "0x" + hashlib.sha256(raw).hexdigest()

    def lock_escrow(self, plan_id: int, asset_type: str, amount: int) -> str:
        logger.warning(f"Ledger not configured, skipping on-chain lock for plan {plan_id}")
        return self._fake_hash("lock", plan_id, asset_type, amount)

    def release_escrow(self, plan_id: int, beneficiary_index: int, amount: int) -> str:
        logger.warning(f"Ledger not configured, skipping on-chain release for plan {plan_id}/{beneficiary_index}")
        return self._fake_hash("release", plan_id, beneficiary_index, amount)

    def refund_escrow(self, plan_id: int) -> str:
        logger.warning(f"Ledger not configured, skipping on-chain refund for plan {plan_id}")
        return self._fake_hash("refund", plan_id)


_ledger_client: Optional[LedgerClient] = None


def get_ledger_client() -> LedgerClient:
    """Get or create the global ledger client."""
    global _ledger_client
    if _ledger_client is None:
        if settings.LEDGER_URL:
            _ledger_client = HttpLedgerClient(
                settings.LEDGER_URL,
                api_key=settings.LEDGER_API_KEY,
                timeout=settings.LEDGER_TIMEOUT_SECONDS,
            )
        else:
            _ledger_client = DryRunLedgerClient()
        logger.info(f"Using {_ledger_client.name} ledger client")
    return _ledger_client
