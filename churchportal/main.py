"""
Main FastAPI application for the church portal.
Provides REST API endpoints for authentication, catalogues, user
administration and ministry-scoped file management.
"""
import logging
import os
from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from churchportal import files as file_service
from churchportal.audit import get_audit_logs, log_action
from churchportal.auth import (
    SessionClaims, authenticate_user, create_access_token, ensure_ministry, get_client_ip,
    get_current_user, hash_password, normalize_email, register_user, require_admin,
    validate_email, validate_password_strength,
)
from churchportal.config import (
    get_client_url, get_log_level, get_max_upload_bytes, get_port, get_uploads_dir, is_production,
)
from churchportal.errors import (
    AuthenticationError, AuthorizationError, ConflictError, NotFoundError, PortalError, ValidationError,
)
from churchportal.models import FileRecord, Ministry, Role, RoleRecord, User
from churchportal.permissions import can_upload
from churchportal.schemas import (
    FileCreateRequest, FileRenameRequest, LoginRequest, MinistryCreateRequest,
    PasswordResetRequest, RegisterRequest, UserCreateRequest, UserUpdateRequest,
)
from churchportal.storage import StorageAdapter, check_declared_length, get_storage_adapter
from churchportal.utils import get_db, init_database


logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("churchportal")

app = FastAPI(title="Church Portal API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_client_url()],
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=get_uploads_dir(), check_dir=False), name="uploads")


@app.on_event("startup")
async def startup_event():
    """Initialize database and content directory on application startup."""
    os.makedirs(get_uploads_dir(), exist_ok=True)
    init_database()
    logger.info("Serving uploads from %s; CORS origin %s", get_uploads_dir(), get_client_url())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"message": "; ".join(problems) or "Invalid request", "code": "VALIDATION_ERROR"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    message = "Internal server error." if is_production() else f"Database error: {exc}"
    return JSONResponse(status_code=500, content={"message": message, "code": "DATABASE_ERROR"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Internal server error." if is_production() else str(exc)
    return JSONResponse(status_code=500, content={"message": message, "code": "INTERNAL_ERROR"})


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@app.post("/auth/register", status_code=201)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """Register a new user. Self-registered users are Standard Users."""
    user = register_user(db, request.name, request.email, request.password,
                         Role.STANDARD_USER, request.ministry_id)
    return {"message": "User registered successfully.", "usuarioID": user.user_id}


@app.post("/auth/login")
async def login(request: LoginRequest, req: Request, db: Session = Depends(get_db)):
    """Authenticate user and issue a one-hour session token."""
    user = authenticate_user(db, request.email, request.password)

    if not user:
        logger.warning("Failed login for %s", normalize_email(request.email))
        raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")

    token = create_access_token(user)
    log_action(db, user.user_id, "LOGIN", None, get_client_ip(req))

    return {
        "status": "success",
        "message": "Login successful",
        "token": token,
        "user": {
            "UsuarioID": user.user_id,
            "Nombre": user.name,
            "Email": user.email,
            "RolID": user.role_id,
            "MinisterioID": user.ministry_id,
        },
    }


@app.get("/api/userinfo")
async def user_info(claims: SessionClaims = Depends(get_current_user)):
    return {"message": "Authenticated user information.", "user": claims.to_dict()}


# ---------------------------------------------------------------------------
# Catalogues
# ---------------------------------------------------------------------------

@app.get("/ministerios")
async def list_ministries(db: Session = Depends(get_db)):
    """Public so the registration form can offer ministries."""
    ministries = db.query(Ministry).order_by(Ministry.name.asc()).all()
    return [{"MinisterioID": m.ministry_id, "NombreMinisterio": m.name} for m in ministries]


@app.post("/ministerios", status_code=201)
async def create_ministry(
    request: MinistryCreateRequest,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if db.query(Ministry).filter(Ministry.name == request.name).first():
        raise ConflictError("Ministry already exists")

    ministry = Ministry(name=request.name)
    db.add(ministry)
    db.commit()
    db.refresh(ministry)
    logger.info("Created ministry %s (%s)", ministry.ministry_id, ministry.name)
    return {"message": "Ministry created successfully.", "ministerioID": ministry.ministry_id}


@app.get("/roles")
async def list_roles(db: Session = Depends(get_db)):
    roles = db.query(RoleRecord).order_by(RoleRecord.name.asc()).all()
    return [{"RolID": r.role_id, "NombreRol": r.name} for r in roles]


# ---------------------------------------------------------------------------
# User administration (General Admin only)
# ---------------------------------------------------------------------------

@app.get("/users")
async def list_users(
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows = (
        db.query(User, RoleRecord.name, Ministry.name)
        .outerjoin(RoleRecord, User.role_id == RoleRecord.role_id)
        .outerjoin(Ministry, User.ministry_id == Ministry.ministry_id)
        .order_by(User.name.asc())
        .all()
    )
    return [
        {
            "UsuarioID": u.user_id,
            "Nombre": u.name,
            "Email": u.email,
            "RolID": u.role_id,
            "NombreRol": role_name,
            "MinisterioID": u.ministry_id,
            "NombreMinisterio": ministry_name,
            "FechaRegistro": u.created_at.isoformat() if u.created_at else None,
        }
        for u, role_name, ministry_name in rows
    ]


@app.post("/users", status_code=201)
async def create_user(
    request: UserCreateRequest,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = register_user(db, request.name, request.email, request.password,
                         request.role, request.ministry_id)
    return {"message": "User created successfully.", "usuarioID": user.user_id}


@app.put("/users/{user_id}")
async def update_user(
    user_id: int,
    request: UserUpdateRequest,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Update name, email, role and ministry. Passwords are reset separately."""
    target = db.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")

    email = normalize_email(request.email)
    validate_email(email)
    clash = db.query(User).filter(User.email == email, User.user_id != user_id).first()
    if clash:
        raise ConflictError("Email is already registered")
    ensure_ministry(db, request.ministry_id)

    target.name = request.name
    target.email = email
    target.role_id = int(request.role)
    target.ministry_id = request.ministry_id
    db.commit()

    logger.info("User %s updated by admin %s", user_id, claims.user_id)
    return {"message": "User updated successfully."}


@app.patch("/users/{user_id}/password")
async def reset_user_password(
    user_id: int,
    request: PasswordResetRequest,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    validate_password_strength(request.new_password)

    target = db.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")

    target.password_hash = hash_password(request.new_password)
    db.commit()

    logger.info("Password reset for user %s by admin %s", user_id, claims.user_id)
    return {"message": "Password reset successfully."}


@app.delete("/users/{user_id}")
async def delete_user(
    user_id: int,
    req: Request,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if user_id == claims.user_id:
        raise AuthorizationError("You cannot delete your own administrator account.")

    target = db.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")

    # Files stay with their ministry after the uploader is removed.
    db.query(FileRecord).filter(FileRecord.user_id == user_id).update(
        {FileRecord.user_id: None}, synchronize_session=False
    )
    email = target.email
    db.delete(target)
    db.commit()

    logger.info("User %s (%s) deleted by admin %s", user_id, email, claims.user_id)
    log_action(db, claims.user_id, "USER_DELETE", None, get_client_ip(req), f"Deleted user {email}")
    return {"message": "User deleted successfully."}


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

@app.post("/archivos/uploads")
async def upload_file(
    req: Request,
    claims: SessionClaims = Depends(get_current_user),
    storage: StorageAdapter = Depends(get_storage_adapter),
):
    """
    Store the uploaded bytes under a generated unique name.
    Metadata is registered separately through POST /archivos.

    The multipart body is only parsed after the caller is authorized and the
    declared length fits under the cap.
    """
    if not can_upload(claims.role):
        raise file_service.deny_upload(claims)

    max_bytes = get_max_upload_bytes()
    check_declared_length(req.headers.get("content-length"), max_bytes)

    async with req.form() as form:
        upload = form.get("file")
        if not isinstance(upload, StarletteUploadFile):
            raise ValidationError("file: a file part is required", code="VALIDATION_ERROR")
        metadata = await run_in_threadpool(
            storage.save_upload, upload.file, upload.filename or "", upload.content_type or "", max_bytes
        )
    return {
        "message": "File uploaded successfully.",
        "fileName": metadata['file_name'],
        "filePath": metadata['file_path'],
    }


@app.post("/archivos", status_code=201)
async def create_file(
    request: FileCreateRequest,
    req: Request,
    claims: SessionClaims = Depends(get_current_user),
    storage: StorageAdapter = Depends(get_storage_adapter),
    db: Session = Depends(get_db),
):
    record = file_service.create_file_record(db, storage, claims, request, get_client_ip(req))
    return {"message": "File metadata registered successfully.", "archivoID": record.file_id}


@app.get("/archivos")
async def list_files(
    claims: SessionClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """All files, newest first. Reading is not scoped by ministry."""
    return {"files": file_service.list_files(db)}


@app.get("/archivos/ministry/{ministry_id}")
async def list_ministry_files(
    ministry_id: int,
    claims: SessionClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return file_service.list_files_by_ministry(db, ministry_id)


@app.put("/archivos/{file_id}")
async def rename_file(
    file_id: int,
    request: FileRenameRequest,
    req: Request,
    claims: SessionClaims = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    file_service.rename_file(db, claims, file_id, request.display_name, get_client_ip(req))
    return {"message": "File name updated successfully."}


@app.delete("/archivos/{file_id}")
async def delete_file(
    file_id: int,
    req: Request,
    claims: SessionClaims = Depends(get_current_user),
    storage: StorageAdapter = Depends(get_storage_adapter),
    db: Session = Depends(get_db),
):
    file_service.delete_file(db, storage, claims, file_id, get_client_ip(req))
    return {"message": "File deleted successfully."}


@app.get("/archivos/download/{file_id}")
async def download_file(
    file_id: int,
    req: Request,
    claims: SessionClaims = Depends(get_current_user),
    storage: StorageAdapter = Depends(get_storage_adapter),
    db: Session = Depends(get_db),
):
    """Stream a stored file under its display name."""
    path, filename = file_service.get_download(db, storage, claims, file_id, get_client_ip(req))
    return FileResponse(path, filename=filename)


@app.post("/archivos/reconcile")
async def reconcile_files(
    dry_run: bool = False,
    grace_seconds: Optional[int] = None,
    claims: SessionClaims = Depends(require_admin),
    storage: StorageAdapter = Depends(get_storage_adapter),
    db: Session = Depends(get_db),
):
    """Sweep stored files that never got a metadata record."""
    report = file_service.reconcile_orphans(db, storage, grace_seconds, dry_run)
    return {"message": "Reconciliation finished.", "report": report}


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@app.get("/audit/logs")
async def get_logs(
    usuario_id: Optional[int] = None,
    action: Optional[str] = None,
    archivo_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    claims: SessionClaims = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Retrieve audit logs (General Admin only)."""
    logs = get_audit_logs(db, user_id=usuario_id, action=action, file_id=archivo_id,
                          limit=limit, offset=offset)
    return {"logs": logs, "total": len(logs)}


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "Church Portal API"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_port())
