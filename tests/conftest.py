import os
import tempfile

import pytest

# Must be set before the application module is imported.
os.environ["UPLOADS_DIR"] = tempfile.mkdtemp(prefix="churchportal-uploads-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from churchportal import auth as auth_module
from churchportal.auth import create_access_token, hash_password
from churchportal.main import app
from churchportal.models import Ministry, Role, User
from churchportal.storage import FilesystemStorageAdapter, get_storage_adapter, public_reference
from churchportal.utils import get_db, init_database

# Production uses 10 rounds; too slow for tests
auth_module.BCRYPT_ROUNDS = 4

TEST_PASSWORD = "Secreto123"

MINISTRIES = {
    1: "Jóvenes Adventistas",
    2: "Mayordomía Cristiana",
    3: "Ministerio de Comunicación",
    4: "Ministerio de la Familia",
    5: "Ministerio de Música",
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(tmp_path):
    return FilesystemStorageAdapter(str(tmp_path / "uploads"))


@pytest.fixture
def ministries(db):
    for ministry_id, name in MINISTRIES.items():
        db.add(Ministry(ministry_id=ministry_id, name=name))
    db.commit()
    return MINISTRIES


@pytest.fixture
def users(db, ministries):
    """One user per role. The ministry leader leads ministry 3."""
    specs = {
        Role.GENERAL_ADMIN: ("Admin General", "admin@iasd.org", None),
        Role.MINISTRY_LEADER: ("Líder Comunicación", "lider@iasd.org", 3),
        Role.STANDARD_USER: ("Miembro", "miembro@iasd.org", 4),
        Role.READER_GUEST: ("Invitado", "invitado@iasd.org", None),
    }
    created = {}
    for role, (name, email, ministry_id) in specs.items():
        user = User(
            name=name,
            email=email,
            password_hash=hash_password(TEST_PASSWORD),
            role_id=int(role),
            ministry_id=ministry_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        created[role] = user
    return created


@pytest.fixture
def headers(users):
    """Authorization headers keyed by role."""
    return {
        role: {"Authorization": f"Bearer {create_access_token(user)}"}
        for role, user in users.items()
    }


@pytest.fixture
def client(session_factory, storage):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_adapter] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides = {}


@pytest.fixture
def put_stored_file(storage):
    """Place bytes on the content store as if they had been uploaded."""
    def _put(name, content=b"contenido"):
        with open(os.path.join(storage.storage_path, name), "wb") as f:
            f.write(content)
        return public_reference(name)
    return _put
