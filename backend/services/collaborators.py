"""External collaborators consulted before a payment is committed.

The wallet balance lookup and the evidence upload both run before the ledger
write; their failures surface as ``CollaboratorUnavailable`` and leave the
ledger untouched.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
import json
import logging
from pathlib import Path
import re
from threading import RLock
from typing import Any, Dict, Optional, Tuple
from urllib import error, parse, request
from uuid import uuid4

from common.money import ZERO, round_money, to_decimal
from core.config import AppSettings
from models.exceptions import CollaboratorUnavailable


logger = logging.getLogger(__name__)

_SAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class PayerInfo:
    """Who handed over a manual (cash) payment."""

    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def has_name(self) -> bool:
        return bool((self.name or "").strip())

    @property
    def has_phone(self) -> bool:
        return bool((self.phone or "").strip())


@dataclass(frozen=True)
class EvidenceUpload:
    """Receipt or transfer proof attached to a manual payment."""

    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ManualPaymentConfig:
    """Tenant rules for cash submissions. A payer name is always required."""

    require_payer_phone: bool = False
    require_transaction_reference: bool = False
    require_payment_evidence: bool = True

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ManualPaymentConfig":
        return cls(
            require_payer_phone=settings.require_payer_phone,
            require_transaction_reference=settings.require_transaction_reference,
            require_payment_evidence=settings.require_payment_evidence,
        )


class WalletService(ABC):
    """Source of a member's equity wallet balance."""

    @abstractmethod
    def get_balance(self, tenant_id: str, member_id: str) -> Decimal:
        """Return the spendable balance.

        Raises:
            CollaboratorUnavailable: If the balance cannot be read.
        """


class StaticWalletService(WalletService):
    """In-process wallet registry used when no wallet service URL is configured."""

    def __init__(self, balances: Optional[Dict[Tuple[str, str], Any]] = None) -> None:
        self._lock = RLock()
        self._balances: Dict[Tuple[str, str], Decimal] = {
            key: round_money(value) for key, value in (balances or {}).items()
        }

    def set_balance(self, tenant_id: str, member_id: str, amount: Any) -> None:
        with self._lock:
            self._balances[(tenant_id, member_id)] = round_money(amount)

    def get_balance(self, tenant_id: str, member_id: str) -> Decimal:
        with self._lock:
            return self._balances.get((tenant_id, member_id), ZERO)


class HttpWalletService(WalletService):
    """Reads balances from the wallet REST service."""

    def __init__(self, base_url: str, timeout_sec: int = 10) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = max(1, int(timeout_sec))

    def _request_json(self, path: str) -> Dict[str, Any]:
        """Execute a GET request and decode its JSON body."""
        url = "{0}{1}".format(self._base_url, path)
        req = request.Request(
            url=url,
            method="GET",
            headers={"Accept": "application/json", "User-Agent": "PropertyPaymentLedger/1.0"},
        )
        try:
            with request.urlopen(req, timeout=self._timeout_sec) as response:
                body = response.read().decode("utf-8")
                if not body:
                    return {}
                return json.loads(body)
        except error.HTTPError as exc:
            logger.exception("Wallet request failed path=%s status=%s", path, exc.code)
            raise CollaboratorUnavailable(
                "Wallet service returned an error", context={"collaborator": "wallet", "status": exc.code}
            )
        except (error.URLError, TimeoutError, ValueError) as exc:
            logger.exception("Wallet network error path=%s", path)
            raise CollaboratorUnavailable(
                "Wallet service is unreachable", context={"collaborator": "wallet", "cause": str(exc)}
            )

    def get_balance(self, tenant_id: str, member_id: str) -> Decimal:
        path = "/tenants/{0}/members/{1}/wallet".format(
            parse.quote(tenant_id, safe=""), parse.quote(member_id, safe="")
        )
        payload = self._request_json(path)
        raw = payload.get("balance")
        if raw is None and isinstance(payload.get("data"), dict):
            raw = payload["data"].get("balance")
        try:
            return round_money(to_decimal(raw))
        except ValueError:
            logger.error("Wallet balance missing or invalid tenant_id=%s member_id=%s", tenant_id, member_id)
            raise CollaboratorUnavailable(
                "Wallet service returned an unreadable balance", context={"collaborator": "wallet"}
            )


class EvidenceStore(ABC):
    """Stores payment evidence and hands back a reference to it."""

    @abstractmethod
    def store(self, upload: EvidenceUpload, tenant_id: str, plan_id: str) -> str:
        """Persist the upload and return its URL.

        Raises:
            CollaboratorUnavailable: If the upload fails.
        """


class LocalEvidenceStore(EvidenceStore):
    """Writes evidence files below a directory served at ``public_base_url``."""

    def __init__(self, directory: str, public_base_url: str = "/evidence") -> None:
        self._directory = Path(directory)
        self._public_base_url = public_base_url.rstrip("/")

    def store(self, upload: EvidenceUpload, tenant_id: str, plan_id: str) -> str:
        if not upload.content:
            raise CollaboratorUnavailable("Evidence file is empty", context={"collaborator": "evidence"})
        filename = "{0}_{1}".format(uuid4().hex[:12], _SAFE_FILENAME.sub("_", upload.filename or "evidence"))
        relative = Path(_SAFE_FILENAME.sub("_", tenant_id)) / _SAFE_FILENAME.sub("_", plan_id) / filename
        target = self._directory / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(upload.content)
        except OSError as exc:
            logger.exception("Evidence upload failed plan_id=%s filename=%s", plan_id, upload.filename)
            raise CollaboratorUnavailable(
                "Evidence storage is unavailable", context={"collaborator": "evidence", "cause": str(exc)}
            )
        logger.info("Evidence stored plan_id=%s path=%s bytes=%d", plan_id, target, len(upload.content))
        return "{0}/{1}".format(self._public_base_url, relative.as_posix())


def build_wallet_service(settings: AppSettings) -> WalletService:
    """Pick the HTTP wallet client when configured, else the in-process registry."""
    if settings.wallet_service_base_url:
        return HttpWalletService(settings.wallet_service_base_url, settings.wallet_service_timeout_sec)
    logger.warning("wallet_service.base_url not set. Using in-process wallet balances.")
    return StaticWalletService()
