"""
Document Service

Generates case documents (notice letter, itemized statement, proof packet,
rule snapshot) through two narrow collaborators:

- DocumentRenderer: case snapshot + document type -> bytes
- ObjectStorage: path + bytes -> stored reference

Generation is idempotent per (case, document type, version). Storage paths are
deterministic, storage is written before the database row, and the row is
only inserted after a successful write, so a retry after a transient failure
neither duplicates records nor leaves dangling references.
"""
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import CaseDB, DocumentDB, DocumentType
from .audit_trail import AuditTrailRecorder
from .errors import UpstreamFailureError, ValidationError

logger = logging.getLogger(__name__)

# Configuration
STORAGE_ROOT = os.getenv("STORAGE_ROOT", "./storage")


# =============================================================================
# COLLABORATOR INTERFACES
# =============================================================================

class DocumentRenderer(ABC):
    """Renders a case snapshot into document bytes."""

    @abstractmethod
    def render(self, snapshot: Dict[str, Any], document_type: DocumentType) -> bytes:
        pass

    def file_name(self, document_type: DocumentType, version: int) -> str:
        return f"{document_type.value.lower()}_v{version}.txt"


class ObjectStorage(ABC):
    """Stores document bytes."""

    @abstractmethod
    def put(self, path: str, data: bytes) -> str:
        """Store bytes at path (overwriting) and return the stored reference."""
        pass

    @abstractmethod
    def url(self, path: str) -> str:
        """Retrieval URL for a stored reference."""
        pass


# =============================================================================
# DEFAULT IMPLEMENTATIONS
# =============================================================================

class LocalFileStorage(ObjectStorage):
    """Filesystem-backed storage rooted at STORAGE_ROOT."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or STORAGE_ROOT)

    def put(self, path: str, data: bytes) -> str:
        target = self.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path

    def url(self, path: str) -> str:
        return (self.root / path).resolve().as_uri()


class PlainTextRenderer(DocumentRenderer):
    """
    Deterministic plain-text rendering.
    Same snapshot -> same bytes (no timestamps are read during rendering).
    """

    def render(self, snapshot: Dict[str, Any], document_type: DocumentType) -> bytes:
        renderers = {
            DocumentType.NOTICE_LETTER: self._notice_letter,
            DocumentType.ITEMIZED_STATEMENT: self._itemized_statement,
            DocumentType.PROOF_PACKET: self._proof_packet,
            DocumentType.RULE_SNAPSHOT: self._rule_snapshot,
        }
        return renderers[document_type](snapshot).encode("utf-8")

    def file_name(self, document_type: DocumentType, version: int) -> str:
        extension = "json" if document_type == DocumentType.RULE_SNAPSHOT else "txt"
        return f"{document_type.value.lower()}_v{version}.{extension}"

    @staticmethod
    def _tenant_names(snapshot: Dict[str, Any]) -> str:
        return ", ".join(t["name"] for t in snapshot["tenants"])

    @staticmethod
    def _citations(snapshot: Dict[str, Any]) -> List[str]:
        return [c["code"] for c in snapshot["rule_set"]["citations"]]

    def _notice_letter(self, snapshot: Dict[str, Any]) -> str:
        prop = snapshot["property"]
        lines = [
            "NOTICE OF SECURITY DEPOSIT DISPOSITION",
            "",
            f"To: {self._tenant_names(snapshot)}",
            f"Premises: {prop['address']}, {prop['city']}, {prop['state']}",
            f"Move-out date: {snapshot['move_out_date']}",
            "",
            f"Security deposit held: ${snapshot['deposit_amount']}",
            f"Interest accrued: ${snapshot['deposit_interest']}",
            f"Total deductions: ${snapshot['total_deductions']}",
            f"Amount returned to you: ${snapshot['refund_amount']}",
            "",
            "An itemized statement of deductions accompanies this notice.",
        ]
        citations = self._citations(snapshot)
        if citations:
            lines += ["", f"This notice is provided pursuant to {'; '.join(citations)}."]
        return "\n".join(lines) + "\n"

    def _itemized_statement(self, snapshot: Dict[str, Any]) -> str:
        lines = [
            "ITEMIZED STATEMENT OF DEDUCTIONS",
            "",
            f"Tenant(s): {self._tenant_names(snapshot)}",
            "",
        ]
        if not snapshot["deductions"]:
            lines.append("No deductions were taken from the deposit.")
        for i, deduction in enumerate(snapshot["deductions"], start=1):
            lines.append(f"{i}. {deduction['description']} ({deduction['category']}) ${deduction['amount']}")
            if deduction.get("notes"):
                lines.append(f"   Notes: {deduction['notes']}")
        lines += [
            "",
            f"Deposit: ${snapshot['deposit_amount']}",
            f"Interest: ${snapshot['deposit_interest']}",
            f"Total deductions: ${snapshot['total_deductions']}",
            f"Refund due: ${snapshot['refund_amount']}",
        ]
        return "\n".join(lines) + "\n"

    def _proof_packet(self, snapshot: Dict[str, Any]) -> str:
        lines = [
            "PROOF OF COMPLIANCE PACKET",
            "",
            f"Case: {snapshot['id']}",
            f"Status: {snapshot['status']}",
            f"Return deadline: {snapshot['due_date']}",
            f"Delivery method: {snapshot.get('delivery_method') or 'not recorded'}",
            f"Tracking number: {snapshot.get('tracking_number') or 'not recorded'}",
            f"Sent: {snapshot.get('sent_at') or 'not sent'}",
            "",
            "ACTIVITY LOG",
        ]
        for entry in snapshot.get("audit_events", []):
            lines.append(f"{entry['timestamp']}  {entry['action']}  {entry['description']}")
        return "\n".join(lines) + "\n"

    def _rule_snapshot(self, snapshot: Dict[str, Any]) -> str:
        return json.dumps(snapshot["rule_set"], indent=2, sort_keys=True) + "\n"


# =============================================================================
# DOCUMENT SERVICE
# =============================================================================

class DocumentService:
    """Idempotent, storage-first document generation."""

    def __init__(
        self,
        db_session: Session,
        renderer: Optional[DocumentRenderer] = None,
        storage: Optional[ObjectStorage] = None,
        audit: Optional[AuditTrailRecorder] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize with database session and collaborators."""
        self.db = db_session
        self.clock = clock
        self.renderer = renderer or PlainTextRenderer()
        self.storage = storage or LocalFileStorage()
        self.audit = audit or AuditTrailRecorder(db_session, clock)

    @staticmethod
    def storage_path(case_id: str, document_type: DocumentType, file_name: str) -> str:
        return f"cases/{case_id}/{document_type.value.lower()}/{file_name}"

    def latest_version(self, case_id: str, document_type: DocumentType) -> int:
        return (
            self.db.query(func.max(DocumentDB.version))
            .filter(DocumentDB.case_id == case_id, DocumentDB.document_type == document_type)
            .scalar()
        ) or 0

    def generate(
        self,
        case: CaseDB,
        document_type: DocumentType,
        snapshot: Dict[str, Any],
        actor_id: Optional[str] = None,
        version: Optional[int] = None,
    ) -> DocumentDB:
        """
        Render, store and record one document version.

        version=None generates the next version. Passing an existing version
        returns that document unchanged, which makes client retries safe.
        The caller commits.
        """
        latest = self.latest_version(case.id, document_type)

        if version is not None:
            if version < 1 or version > latest + 1:
                raise ValidationError(
                    f"Document version must be between 1 and {latest + 1}",
                    details={"version": version},
                )
            existing = (
                self.db.query(DocumentDB)
                .filter(
                    DocumentDB.case_id == case.id,
                    DocumentDB.document_type == document_type,
                    DocumentDB.version == version,
                )
                .first()
            )
            if existing:
                logger.info(f"Document {document_type.value} v{version} already exists for case {case.id}")
                return existing
        else:
            version = latest + 1

        if not snapshot.get("tenants"):
            raise ValidationError("At least one tenant is required to generate documents")
        if not snapshot.get("rule_set"):
            raise UpstreamFailureError("Case has no resolved rule set")

        file_name = self.renderer.file_name(document_type, version)
        path = self.storage_path(case.id, document_type, file_name)

        try:
            data = self.renderer.render(snapshot, document_type)
        except Exception as e:
            logger.warning(f"Render failed for case {case.id} {document_type.value}: {e}")
            raise UpstreamFailureError("Document rendering failed", details={"document_type": document_type.value}) from e

        try:
            stored_path = self.storage.put(path, data)
        except Exception as e:
            logger.warning(f"Storage write failed for {path}: {e}")
            raise UpstreamFailureError("Document storage failed", details={"path": path}) from e

        # Storage succeeded - only now link the row
        document = DocumentDB(
            id=str(uuid4()),
            case_id=case.id,
            document_type=document_type,
            version=version,
            file_name=file_name,
            storage_path=stored_path,
            content_hash=sha256(data).hexdigest(),
            generated_by=actor_id,
            generated_at=self.clock(),
        )
        self.db.add(document)

        self.audit.record(
            case,
            "document_generated",
            f"Generated {document_type.value.replace('_', ' ').lower()} (v{version})",
            actor_id=actor_id,
            metadata={"document_id": document.id, "document_type": document_type.value, "version": version},
        )
        case.updated_at = self.clock()

        logger.info(f"Generated {document_type.value} v{version} for case {case.id}")
        return document

    def serialize(self, document: DocumentDB) -> Dict[str, Any]:
        return {
            "id": document.id,
            "document_type": document.document_type.value,
            "version": document.version,
            "file_name": document.file_name,
            "storage_path": document.storage_path,
            "url": self.storage.url(document.storage_path),
            "content_hash": document.content_hash,
            "generated_at": document.generated_at.isoformat() if document.generated_at else None,
        }
