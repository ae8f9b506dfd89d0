"""Shared base models and common type aliases."""

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ModelValidationError


logger = logging.getLogger(__name__)

Money = Decimal
Percentage = Decimal


def utc_now() -> datetime:
    """Return current UTC timestamp."""
    return datetime.now(timezone.utc)


class BaseDocumentModel(BaseModel):
    """Versioned document stored by a ``PaymentStore``.

    ``version`` starts at 1 and is bumped by the store on every conditional
    update; callers pass the version they read as ``expected_version``.
    """

    id: Optional[str] = Field(default=None, description="Store document ID.")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(default=1, ge=1)

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        use_enum_values=False,
    )

    def to_firestore(self) -> Dict[str, Any]:
        """Dump to a store document.

        JSON mode writes every Decimal as text, so amounts never pass through
        a binary float on their way to storage.
        """
        try:
            return self.model_dump(mode="json", exclude_none=True)
        except (ValueError, TypeError) as exc:
            logger.exception("Could not serialize %s id=%s", self.__class__.__name__, self.id)
            raise ModelValidationError(str(exc))

    @classmethod
    def from_firestore(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> "BaseDocumentModel":
        """Rebuild a model from a stored document.

        Raises:
            ModelValidationError: If the stored payload no longer validates.
        """
        payload = dict(data)
        if doc_id is not None:
            payload.setdefault("id", doc_id)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            logger.error("Stored %s doc_id=%s failed validation: %s", cls.__name__, doc_id, exc.errors())
            raise ModelValidationError(str(exc))
