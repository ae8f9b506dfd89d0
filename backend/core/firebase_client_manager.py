"""Firestore client wrapper shared by the payment store."""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

from google.cloud import firestore
from google.oauth2 import service_account


logger = logging.getLogger(__name__)

FilterTuple = Tuple[str, str, Any]


class FirebaseClientManager:
    """Owns one Firestore client and hands out references, queries and transactions.

    Reads outside a transaction go through ``get_document`` and
    ``query_documents``; both return plain dicts with the document id under
    ``"id"`` so models can be rebuilt with ``from_firestore``.
    """

    def __init__(self, project_id: Optional[str] = None, credentials_path: Optional[str] = None) -> None:
        try:
            if credentials_path:
                os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path
                credentials = service_account.Credentials.from_service_account_file(credentials_path)
                self._client = firestore.Client(project=project_id, credentials=credentials)
            elif project_id:
                self._client = firestore.Client(project=project_id)
            else:
                self._client = firestore.Client()
        except Exception:
            logger.exception("Could not create Firestore client project_id=%s", project_id)
            raise
        logger.info("Firestore client ready project_id=%s", project_id or self._client.project)

    def document(self, collection_name: str, document_id: str) -> firestore.DocumentReference:
        return self._client.collection(collection_name).document(document_id)

    def transaction(self) -> firestore.Transaction:
        """Return a fresh transaction for a ``@firestore.transactional`` function."""
        return self._client.transaction()

    def build_query(self, collection_name: str, filters: Optional[Sequence[FilterTuple]] = None) -> Any:
        """Chain ``(field, op, value)`` filters onto a collection."""
        query: Any = self._client.collection(collection_name)
        for field_name, operator, value in filters or ():
            query = query.where(field_name, operator, value)
        return query

    @staticmethod
    def _payload(snapshot: Any) -> Dict[str, Any]:
        payload = snapshot.to_dict() or {}
        payload["id"] = snapshot.id
        return payload

    def get_document(self, collection_name: str, document_id: str) -> Optional[Dict[str, Any]]:
        """Return one document, or None when it does not exist."""
        try:
            snapshot = self.document(collection_name, document_id).get()
        except Exception:
            logger.exception("Firestore read failed collection=%s document_id=%s", collection_name, document_id)
            raise
        return self._payload(snapshot) if snapshot.exists else None

    def query_documents(
        self,
        collection_name: str,
        filters: Optional[Sequence[FilterTuple]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Stream a filtered, optionally ordered and limited query into dicts."""
        query = self.build_query(collection_name, filters)
        if order_by:
            query = query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)
        try:
            return [self._payload(snapshot) for snapshot in query.stream()]
        except Exception:
            logger.exception("Firestore query failed collection=%s filters=%s", collection_name, filters)
            raise
