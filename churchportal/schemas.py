"""
Request schemas for the church portal API.
JSON keys keep the column-style names used by the web client.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from churchportal.models import Role


class PortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(PortalRequest):
    name: str = Field(alias="Nombre", min_length=1, max_length=150)
    email: str = Field(alias="Email", min_length=3, max_length=255)
    password: str = Field(alias="Contraseña", min_length=1)
    ministry_id: Optional[int] = Field(default=None, alias="MinisterioID", gt=0)


class LoginRequest(PortalRequest):
    email: str = Field(alias="Email", min_length=1)
    password: str = Field(alias="Contraseña", min_length=1)


class MinistryCreateRequest(PortalRequest):
    name: str = Field(alias="NombreMinisterio", min_length=1, max_length=150)


class UserCreateRequest(PortalRequest):
    name: str = Field(alias="Nombre", min_length=1, max_length=150)
    email: str = Field(alias="Email", min_length=3, max_length=255)
    password: str = Field(alias="Contraseña", min_length=1)
    role: Role = Field(alias="RolID")
    ministry_id: Optional[int] = Field(default=None, alias="MinisterioID", gt=0)


class UserUpdateRequest(PortalRequest):
    name: str = Field(alias="Nombre", min_length=1, max_length=150)
    email: str = Field(alias="Email", min_length=3, max_length=255)
    role: Role = Field(alias="RolID")
    ministry_id: Optional[int] = Field(default=None, alias="MinisterioID", gt=0)


class PasswordResetRequest(PortalRequest):
    new_password: str = Field(alias="newPassword", min_length=1)


class FileCreateRequest(PortalRequest):
    """Metadata registration for a file already placed on the content store."""
    display_name: str = Field(alias="NombreArchivo", min_length=1, max_length=255)
    stored_path: str = Field(alias="RutaArchivo", min_length=1, max_length=512)
    ministry_id: int = Field(alias="MinisterioID", gt=0)


class FileRenameRequest(PortalRequest):
    display_name: str = Field(alias="NombreArchivo", min_length=1, max_length=255)
