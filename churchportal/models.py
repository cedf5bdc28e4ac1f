"""
Database models for the church portal.
Defines the rol, ministerio, usuario, archivo and audit_log tables.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, Text, TIMESTAMP
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()


class Role(enum.IntEnum):
    """Fixed authorization tiers. Ids match the seeded rows of the rol table."""
    GENERAL_ADMIN = 1
    MINISTRY_LEADER = 2
    STANDARD_USER = 3
    READER_GUEST = 4


ROLE_NAMES = {
    Role.GENERAL_ADMIN: "Administrador General",
    Role.MINISTRY_LEADER: "Líder de Ministerio",
    Role.STANDARD_USER: "Usuario Estándar",
    Role.READER_GUEST: "Lector/Invitado",
}


class FileType(str, enum.Enum):
    """Type classification stored with each file record."""
    PDF = "PDF"
    DOCX = "DOCX"
    XLSX = "XLSX"
    PPTX = "PPTX"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    ZIP = "ZIP"
    RAR = "RAR"
    OTHER = "OTHER"


class RoleRecord(Base):
    __tablename__ = 'rol'

    role_id = Column("RolID", Integer, primary_key=True, autoincrement=False)
    name = Column("NombreRol", String(100), unique=True, nullable=False)

    users = relationship("User", back_populates="role")


class Ministry(Base):
    """Organizational unit; the scoping boundary for ministry leaders."""
    __tablename__ = 'ministerio'

    ministry_id = Column("MinisterioID", Integer, primary_key=True, autoincrement=True)
    name = Column("NombreMinisterio", String(150), unique=True, nullable=False)

    users = relationship("User", back_populates="ministry")
    files = relationship("FileRecord", back_populates="ministry")


class User(Base):
    """Portal member with credentials, role and optional ministry."""
    __tablename__ = 'usuario'

    user_id = Column("UsuarioID", Integer, primary_key=True, autoincrement=True)
    name = Column("Nombre", String(150), nullable=False)
    email = Column("Email", String(255), unique=True, nullable=False)
    password_hash = Column("Contraseña", String(255), nullable=False)
    role_id = Column("RolID", Integer, ForeignKey('rol.RolID'), nullable=False, default=int(Role.STANDARD_USER))
    ministry_id = Column("MinisterioID", Integer, ForeignKey('ministerio.MinisterioID'), nullable=True)
    created_at = Column("FechaRegistro", TIMESTAMP, nullable=False, default=datetime.utcnow)

    role = relationship("RoleRecord", back_populates="users")
    ministry = relationship("Ministry", back_populates="users")
    files = relationship("FileRecord", back_populates="uploader")


class FileRecord(Base):
    """
    Metadata for one stored file. The bytes live on the content store under
    ``stored_path``; each stored reference belongs to exactly one record.
    """
    __tablename__ = 'archivo'

    file_id = Column("ArchivoID", Integer, primary_key=True, autoincrement=True)
    display_name = Column("NombreArchivo", String(255), nullable=False)
    file_type = Column("TipoArchivo", String(20), nullable=False, default=FileType.OTHER.value)
    stored_path = Column("RutaArchivo", String(512), unique=True, nullable=False)
    user_id = Column("UsuarioID", Integer, ForeignKey('usuario.UsuarioID', ondelete="SET NULL"), nullable=True)
    ministry_id = Column("MinisterioID", Integer, ForeignKey('ministerio.MinisterioID'), nullable=False)
    uploaded_at = Column("FechaSubida", TIMESTAMP, nullable=False, default=datetime.utcnow)

    uploader = relationship("User", back_populates="files")
    ministry = relationship("Ministry", back_populates="files")


class AuditLog(Base):
    """Append-only audit trail. No foreign keys so entries outlive their subjects."""
    __tablename__ = 'audit_log'

    log_id = Column("LogID", Integer, primary_key=True, autoincrement=True)
    user_id = Column("UsuarioID", Integer, nullable=False)
    file_id = Column("ArchivoID", Integer, nullable=True)
    action = Column("Accion", String(50), nullable=False)
    details = Column("Detalle", Text, nullable=True)
    ip_address = Column("DireccionIP", String(45), nullable=True)
    timestamp = Column("FechaRegistro", TIMESTAMP, nullable=False, default=datetime.utcnow)
    signature_hash = Column("FirmaHash", String(64), nullable=False)
