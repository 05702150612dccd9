"""
External Identity Map

Durable (provider, entity_type, external_id) -> internal_id lookups.
This is the idempotency backbone of delta sync: an external entity seen
twice always resolves to the same internal row.

upsert() never reassigns internal_id once a mapping exists; only the
metadata is refreshed.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models.channel_integration import ExternalIdentityMapping, DEFAULT_PROVIDER
from ..utils.db_helpers import acquire_row_lock
from ..utils.dates import utcnow

logger = logging.getLogger(__name__)


class IdentityMap:

    def __init__(self, db: Session, provider: str = DEFAULT_PROVIDER):
        self.db = db
        self.provider = provider

    def _query(self, entity_type: str, external_id: str, provider: Optional[str] = None):
        return self.db.query(ExternalIdentityMapping).filter(
            ExternalIdentityMapping.provider == (provider or self.provider),
            ExternalIdentityMapping.entity_type == entity_type,
            ExternalIdentityMapping.external_id == str(external_id),
        )

    def get(self, entity_type: str, external_id: str, provider: Optional[str] = None) -> Optional[ExternalIdentityMapping]:
        # Newest row wins if duplicates slipped in before the repair pass ran
        return self._query(entity_type, external_id, provider).order_by(
            ExternalIdentityMapping.created_at.desc()
        ).first()

    def resolve(self, entity_type: str, external_id: str, provider: Optional[str] = None) -> Optional[str]:
        """Return the internal id for an external entity, or None"""
        mapping = self.get(entity_type, external_id, provider)
        return mapping.internal_id if mapping else None

    def upsert(
        self,
        entity_type: str,
        external_id: str,
        internal_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ) -> ExternalIdentityMapping:
        """
        Create the mapping, or refresh metadata on the existing one.

        The caller's internal_id is ignored when a mapping already exists;
        check the returned mapping's internal_id to learn the owner.
        """
        provider = provider or self.provider
        external_id = str(external_id)

        existing = acquire_row_lock(
            self.db,
            ExternalIdentityMapping,
            (ExternalIdentityMapping.provider == provider)
            & (ExternalIdentityMapping.entity_type == entity_type)
            & (ExternalIdentityMapping.external_id == external_id),
        )

        if existing:
            if existing.internal_id != internal_id:
                logger.warning(
                    f"Ignoring remap of {entity_type}:{external_id} "
                    f"from {existing.internal_id} to {internal_id}"
                )
            if metadata is not None:
                merged = dict(existing.mapping_metadata or {})
                merged.update(metadata)
                existing.mapping_metadata = merged
            existing.updated_at = utcnow()
            self.db.flush()
            return existing

        mapping = ExternalIdentityMapping(
            provider=provider,
            entity_type=entity_type,
            external_id=external_id,
            internal_id=internal_id,
            mapping_metadata=metadata,
        )
        self.db.add(mapping)
        self.db.flush()
        logger.debug(f"Mapped {provider}/{entity_type}:{external_id} -> {internal_id}")
        return mapping

    def reverse_lookup(self, entity_type: str, internal_id: str, provider: Optional[str] = None) -> Optional[str]:
        """Return the external id for an internal row, or None"""
        mapping = self.db.query(ExternalIdentityMapping).filter(
            ExternalIdentityMapping.provider == (provider or self.provider),
            ExternalIdentityMapping.entity_type == entity_type,
            ExternalIdentityMapping.internal_id == internal_id,
        ).order_by(ExternalIdentityMapping.created_at.desc()).first()
        return mapping.external_id if mapping else None

    def get_mappings(
        self,
        entity_type: str,
        internal_ids: Optional[Iterable[str]] = None,
        provider: Optional[str] = None,
    ) -> List[ExternalIdentityMapping]:
        query = self.db.query(ExternalIdentityMapping).filter(
            ExternalIdentityMapping.provider == (provider or self.provider),
            ExternalIdentityMapping.entity_type == entity_type,
        )
        if internal_ids is not None:
            query = query.filter(ExternalIdentityMapping.internal_id.in_(list(internal_ids)))
        return query.order_by(ExternalIdentityMapping.created_at).all()
