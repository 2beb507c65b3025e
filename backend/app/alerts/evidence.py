"""
evidence.py — Photo evidence attached to alerts.

The core never stores image bytes. A submission carries EvidenceItems
that are either an already-uploaded reference or raw bytes; raw items
go through the EvidenceUploader collaborator, which returns a durable
reference URL/id. Only that reference is persisted. No uploader ships
with the service: deployments inject one into build_services(), and
without it submissions must carry references (raw bytes are rejected
during validation).

Attachment happens after the alert row is committed. Each item is
independent: an upload or insert failure is logged and the item skipped,
so the alert can end up with fewer photos than were submitted. This
partial outcome is not rolled back; EvidenceOutcome reports it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


class EvidenceUploader(Protocol):
    async def upload(self, content: bytes, content_type: str) -> str: ...


@dataclass(frozen=True)
class EvidenceItem:
    """One submitted photo: an existing reference or bytes to upload."""
    reference: Optional[str] = None
    content: Optional[bytes] = None
    content_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        if (self.reference is None) == (self.content is None):
            raise ValueError("EvidenceItem needs exactly one of reference or content")
        if self.reference is not None and not self.reference.strip():
            raise ValueError("EvidenceItem reference must not be blank")
        if self.content is not None and not self.content:
            raise ValueError("EvidenceItem content must not be empty")

    @classmethod
    def from_reference(cls, reference: str) -> "EvidenceItem":
        return cls(reference=reference)

    @classmethod
    def from_bytes(cls, content: bytes, content_type: str = "image/jpeg") -> "EvidenceItem":
        return cls(content=content, content_type=content_type)

    @property
    def needs_upload(self) -> bool:
        return self.content is not None


@dataclass
class EvidenceOutcome:
    """Result of attaching a submission's evidence to a stored alert."""
    requested: int
    attached: List[str] = field(default_factory=list)
    failed: int = 0

    @property
    def is_partial(self) -> bool:
        return len(self.attached) < self.requested


async def attach_evidence(
    store: AlertStore,
    alert_id: str,
    items: Sequence[EvidenceItem],
    uploader: Optional[EvidenceUploader] = None,
) -> EvidenceOutcome:
    """Upload (if needed) and persist each item; skip the ones that fail."""
    outcome = EvidenceOutcome(requested=len(items))

    for index, item in enumerate(items):
        try:
            if item.needs_upload:
                if uploader is None:
                    raise RuntimeError("no evidence uploader configured")
                reference = await uploader.upload(item.content, item.content_type)
            else:
                reference = item.reference
            await store.insert_evidence(alert_id, reference)
        except Exception:
            outcome.failed += 1
            logger.warning(
                "Evidence item %d/%d for alert %s could not be attached",
                index + 1, len(items), alert_id,
                exc_info=True,
                extra={"alert_id": alert_id},
            )
            continue
        outcome.attached.append(reference)

    if outcome.is_partial:
        logger.warning(
            "Alert %s kept with %d of %d evidence items",
            alert_id, len(outcome.attached), outcome.requested,
            extra={"alert_id": alert_id},
        )
    return outcome
