"""
File management operations: listing, metadata registration, rename, delete,
download and orphan reconciliation.

Authorization is decided by the predicates in ``churchportal.permissions``;
this module is responsible for logging and auditing every denial.
"""
import logging
import os
import time
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from churchportal.audit import log_action
from churchportal.auth import SessionClaims
from churchportal.config import get_orphan_grace_seconds
from churchportal.errors import (
    AuthorizationError, ConflictError, NotFoundError, StorageIOError, ValidationError,
)
from churchportal.filetypes import classify, get_extension
from churchportal.models import FileRecord, Ministry
from churchportal.permissions import CreateDecision, can_download, can_modify, check_create
from churchportal.schemas import FileCreateRequest
from churchportal.storage import StorageAdapter, public_reference, stored_name

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def serialize_file(record: FileRecord, ministry_name: Optional[str]) -> dict:
    return {
        'ArchivoID': record.file_id,
        'NombreArchivo': record.display_name,
        'TipoArchivo': record.file_type,
        'RutaArchivo': record.stored_path,
        'UsuarioID': record.user_id,
        'MinisterioID': record.ministry_id,
        'NombreMinisterio': ministry_name,
        'FechaSubida': record.uploaded_at.strftime(TIMESTAMP_FORMAT) if record.uploaded_at else None,
    }


def _files_query(db: Session):
    return (
        db.query(FileRecord, Ministry.name)
        .outerjoin(Ministry, FileRecord.ministry_id == Ministry.ministry_id)
        .order_by(FileRecord.uploaded_at.desc(), FileRecord.file_id.desc())
    )


def list_files(db: Session) -> List[dict]:
    """All file records with their ministry name, newest first."""
    return [serialize_file(record, name) for record, name in _files_query(db).all()]


def list_files_by_ministry(db: Session, ministry_id: int) -> List[dict]:
    rows = _files_query(db).filter(FileRecord.ministry_id == ministry_id).all()
    return [serialize_file(record, name) for record, name in rows]


def get_file(db: Session, file_id: int) -> FileRecord:
    record = db.get(FileRecord, file_id)
    if record is None:
        raise NotFoundError("File not found", code="FILE_NOT_FOUND")
    return record


def _deny(db: Session, claims: SessionClaims, action: str, message: str, code: str,
          resource_ministry: Optional[int] = None, file_id: Optional[int] = None,
          ip_address: Optional[str] = None) -> AuthorizationError:
    """Log and audit a denial, returning the error for the caller to raise."""
    details = (f"{action} denied: role={claims.role.name} actor_ministry={claims.ministry_id} "
               f"resource_ministry={resource_ministry}")
    logger.warning("Authorization denied for user %s: %s (file %s)", claims.user_id, details, file_id)
    log_action(db, claims.user_id, "DENIED", file_id, ip_address, details)
    return AuthorizationError(message, code=code)


def deny_upload(claims: SessionClaims) -> AuthorizationError:
    """Denial for the physical upload step, which does not touch the database."""
    logger.warning("Authorization denied for user %s: UPLOAD denied: role=%s actor_ministry=%s",
                   claims.user_id, claims.role.name, claims.ministry_id)
    return AuthorizationError("Permission denied. Your role cannot upload files.",
                              code="UPLOAD_NOT_ALLOWED")


def create_file_record(db: Session, storage: StorageAdapter, claims: SessionClaims,
                       request: FileCreateRequest, ip_address: Optional[str] = None) -> FileRecord:
    """
    Register metadata for a file already written to the content store.
    The type classification is always derived from the stored reference.
    """
    decision = check_create(claims.role, claims.ministry_id, request.ministry_id)
    if decision == CreateDecision.ROLE_DENIED:
        raise _deny(db, claims, "CREATE", "Permission denied. Your role cannot upload files.",
                    "UPLOAD_NOT_ALLOWED", request.ministry_id, ip_address=ip_address)
    if decision == CreateDecision.MINISTRY_DENIED:
        raise _deny(db, claims, "CREATE",
                    "Permission denied. You can only upload files to the ministry you lead.",
                    "MINISTRY_MISMATCH", request.ministry_id, ip_address=ip_address)

    name = stored_name(request.stored_path)
    if not name or not storage.exists(name):
        raise ValidationError("The referenced file was not found on the server. Upload it first.",
                              code="STORED_FILE_MISSING")

    if db.get(Ministry, request.ministry_id) is None:
        raise ValidationError(f"Ministry {request.ministry_id} does not exist", code="UNKNOWN_MINISTRY")

    reference = public_reference(name)
    if db.query(FileRecord).filter(FileRecord.stored_path == reference).first():
        raise ConflictError("This file is already registered", code="DUPLICATE_REFERENCE")

    file_type = classify(name)
    record = FileRecord(
        display_name=request.display_name,
        file_type=file_type.value,
        stored_path=reference,
        user_id=claims.user_id,
        ministry_id=request.ministry_id,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent registration of the same reference won the insert.
        db.rollback()
        logger.warning("Duplicate registration of %s by user %s", reference, claims.user_id)
        raise ConflictError("This file is already registered", code="DUPLICATE_REFERENCE")
    db.refresh(record)

    logger.info("Registered file %s (%s, %s) for ministry %s by user %s",
                record.file_id, request.display_name, file_type.value, request.ministry_id, claims.user_id)
    log_action(db, claims.user_id, "CREATE", record.file_id, ip_address, request.display_name)
    return record


def rename_file(db: Session, claims: SessionClaims, file_id: int, new_name: str,
                ip_address: Optional[str] = None) -> None:
    """Change a record's display name. Ministry scope comes from the stored row."""
    record = get_file(db, file_id)

    if not can_modify(claims.role, claims.ministry_id, record.ministry_id):
        raise _deny(db, claims, "RENAME",
                    "Permission denied. Only the administrator or the leader of the "
                    "owning ministry can edit this file.",
                    "MODIFY_NOT_ALLOWED", record.ministry_id, file_id, ip_address)

    updated = (
        db.query(FileRecord)
        .filter(FileRecord.file_id == file_id)
        .update({FileRecord.display_name: new_name}, synchronize_session=False)
    )
    db.commit()
    if updated == 0:
        logger.warning("File %s disappeared before rename", file_id)
        raise NotFoundError("File not found", code="FILE_NOT_FOUND")

    logger.info("Renamed file %s to %s", file_id, new_name)
    log_action(db, claims.user_id, "RENAME", file_id, ip_address, new_name)


def delete_file(db: Session, storage: StorageAdapter, claims: SessionClaims, file_id: int,
                ip_address: Optional[str] = None) -> None:
    """
    Remove the stored bytes, then the metadata row.

    Failure to remove the physical file never blocks metadata removal: a
    missing file is treated as already consistent and other I/O errors are
    logged.
    """
    record = get_file(db, file_id)

    if not can_modify(claims.role, claims.ministry_id, record.ministry_id):
        raise _deny(db, claims, "DELETE",
                    "Permission denied. Only the administrator or the leader of the "
                    "owning ministry can delete this file.",
                    "MODIFY_NOT_ALLOWED", record.ministry_id, file_id, ip_address)

    reference = record.stored_path
    try:
        if not storage.delete(reference):
            logger.warning("Stored file %s was already missing while deleting file %s", reference, file_id)
    except StorageIOError as e:
        logger.error("Failed to delete stored file for file %s: %s", file_id, e.message)

    deleted = (
        db.query(FileRecord)
        .filter(FileRecord.file_id == file_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted == 0:
        logger.warning("File %s metadata already removed", file_id)
        raise NotFoundError("File not found", code="FILE_NOT_FOUND")

    logger.info("Deleted file %s (%s)", file_id, reference)
    log_action(db, claims.user_id, "DELETE", file_id, ip_address, reference)


def download_name(record: FileRecord) -> str:
    """Display name used for downloads, keeping the stored extension."""
    name = os.path.basename(record.display_name.replace("\\", "/")) or "archivo"
    if not get_extension(name):
        name += get_extension(record.stored_path)
    return name


def get_download(db: Session, storage: StorageAdapter, claims: SessionClaims, file_id: int,
                 ip_address: Optional[str] = None) -> Tuple[str, str]:
    """Return the on-disk path and the download file name for a record."""
    if not can_download(claims.role):
        raise _deny(db, claims, "DOWNLOAD",
                    "Permission denied. Readers/guests cannot download files.",
                    "DOWNLOAD_NOT_ALLOWED", file_id=file_id, ip_address=ip_address)

    record = get_file(db, file_id)
    if not storage.exists(record.stored_path):
        logger.error("Stored file for file %s is missing: %s", file_id, record.stored_path)
        raise NotFoundError("The stored file was not found on the server.", code="STORED_FILE_MISSING")

    log_action(db, claims.user_id, "DOWNLOAD", file_id, ip_address)
    return storage.path_for(record.stored_path), download_name(record)


def reconcile_orphans(db: Session, storage: StorageAdapter, grace_seconds: Optional[int] = None,
                      dry_run: bool = False) -> dict:
    """
    Remove stored files that no metadata record references.

    Uploads are registered in a second request, so files younger than
    ``grace_seconds`` are left alone.
    """
    if grace_seconds is None:
        grace_seconds = get_orphan_grace_seconds()

    referenced = {stored_name(path) for (path,) in db.query(FileRecord.stored_path).all()}
    cutoff = time.time() - grace_seconds

    orphans = []
    skipped_recent = 0
    scanned = 0
    for name, mtime in storage.list_stored():
        if name.startswith("."):
            continue
        scanned += 1
        if name in referenced:
            continue
        if mtime > cutoff:
            skipped_recent += 1
            continue
        orphans.append(name)

    removed = 0
    if not dry_run:
        for name in orphans:
            try:
                if storage.delete(name):
                    removed += 1
            except StorageIOError as e:
                logger.error("Failed to remove orphaned file %s: %s", name, e.message)

    logger.info("Orphan sweep: scanned=%d orphans=%d removed=%d skipped_recent=%d dry_run=%s",
                scanned, len(orphans), removed, skipped_recent, dry_run)
    return {
        'scanned': scanned,
        'orphans': sorted(orphans),
        'removed': removed,
        'skipped_recent': skipped_recent,
        'dry_run': dry_run,
    }
