"""
API tests for ministry-scoped file management.
"""
import logging
from datetime import datetime, timedelta

from starlette.requests import Request

from churchportal import files as file_service
from churchportal.config import get_uploads_dir
from churchportal.errors import StorageIOError
from churchportal.models import AuditLog, FileRecord, Role
from churchportal.storage import FilesystemStorageAdapter, get_storage_adapter


def make_record(db, reference, ministry_id, name="Documento", uploaded_at=None, user_id=None):
    record = FileRecord(
        display_name=name,
        file_type="PDF",
        stored_path=reference,
        ministry_id=ministry_id,
        user_id=user_id,
        uploaded_at=uploaded_at or datetime.utcnow(),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record.file_id


def upload(client, headers, filename="boletin.pdf", content=b"%PDF-1.4 boletin", mime="application/pdf"):
    return client.post("/archivos/uploads", files={"file": (filename, content, mime)}, headers=headers)


class TestUpload:

    def test_upload_returns_stored_reference(self, client, headers, storage):
        response = upload(client, headers[Role.STANDARD_USER])

        assert response.status_code == 200
        data = response.json()
        assert data['filePath'] == "/uploads/" + data['fileName']
        assert data['fileName'].endswith(".pdf")
        assert storage.exists(data['filePath'])

    def test_extension_with_mismatched_mime_is_rejected(self, client, headers, storage):
        response = upload(client, headers[Role.GENERAL_ADMIN], filename="boletin.pdf", mime="image/png")

        assert response.status_code == 400
        assert response.json()['code'] == "UNSUPPORTED_TYPE"
        assert storage.list_stored() == []

    def test_mime_with_unlisted_extension_is_rejected(self, client, headers):
        response = upload(client, headers[Role.GENERAL_ADMIN], filename="programa.exe", mime="application/pdf")

        assert response.status_code == 400
        assert response.json()['code'] == "UNSUPPORTED_TYPE"

    def test_oversized_upload_reports_limit_code(self, client, headers, monkeypatch):
        monkeypatch.setenv("MAX_UPLOAD_MB", "1")
        response = upload(client, headers[Role.GENERAL_ADMIN], content=b"x" * (1024 * 1024 + 1))

        assert response.status_code == 400
        assert response.json()['code'] == "LIMIT_FILE_SIZE"

    def test_reader_cannot_upload(self, client, headers, storage):
        response = upload(client, headers[Role.READER_GUEST])

        assert response.status_code == 403
        assert storage.list_stored() == []

    def test_upload_requires_token(self, client):
        response = upload(client, {})

        assert response.status_code == 401
        assert response.json()['code'] == "TOKEN_MISSING"

    def test_missing_file_part(self, client, headers):
        response = client.post("/archivos/uploads", headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 400

    def test_declared_length_over_limit_is_rejected_before_storing(self, client, headers, storage, monkeypatch):
        monkeypatch.setenv("MAX_UPLOAD_MB", "1")
        saved = []
        monkeypatch.setattr(storage, "save_upload", lambda *args, **kwargs: saved.append(args))

        response = upload(client, headers[Role.GENERAL_ADMIN], content=b"x" * (2 * 1024 * 1024))

        assert response.status_code == 400
        assert response.json()['code'] == "LIMIT_FILE_SIZE"
        assert saved == []

    def test_body_is_not_parsed_for_unauthorized_callers(self, client, headers, monkeypatch):
        parsed = []
        monkeypatch.setattr(Request, "form", lambda self, **kwargs: parsed.append(self))

        assert upload(client, {}).status_code == 401
        assert upload(client, headers[Role.READER_GUEST]).status_code == 403
        assert parsed == []

    def test_storage_failure_is_logged_with_cause(self, client, headers, storage, tmp_path, caplog):
        storage.storage_path = str(tmp_path / "missing")

        with caplog.at_level(logging.ERROR, logger="churchportal"):
            response = upload(client, headers[Role.GENERAL_ADMIN])

        assert response.status_code == 500
        assert response.json()['code'] == "STORAGE_IO_ERROR"
        record = next(r for r in caplog.records if r.name == "churchportal" and r.exc_info)
        assert isinstance(record.exc_info[1], StorageIOError)
        assert isinstance(record.exc_info[1].__cause__, OSError)


class TestCreate:

    def test_round_trip_uses_server_derived_type(self, client, headers):
        uploaded = upload(client, headers[Role.MINISTRY_LEADER]).json()
        response = client.post("/archivos", json={
            "NombreArchivo": "Boletín de Abril",
            "RutaArchivo": uploaded['filePath'],
            "MinisterioID": 3,
            "TipoArchivo": "VIDEO",
        }, headers=headers[Role.MINISTRY_LEADER])

        assert response.status_code == 201
        file_id = response.json()['archivoID']

        files = client.get("/archivos", headers=headers[Role.READER_GUEST]).json()['files']
        assert len(files) == 1
        assert files[0]['ArchivoID'] == file_id
        assert files[0]['NombreArchivo'] == "Boletín de Abril"
        assert files[0]['TipoArchivo'] == "PDF"
        assert files[0]['RutaArchivo'] == uploaded['filePath']
        assert files[0]['NombreMinisterio'] == "Ministerio de Comunicación"

    def test_leader_cannot_create_for_other_ministry(self, client, headers, put_stored_file, db):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": reference, "MinisterioID": 5,
        }, headers=headers[Role.MINISTRY_LEADER])

        assert response.status_code == 403
        assert response.json()['code'] == "MINISTRY_MISMATCH"
        assert db.query(FileRecord).count() == 0

    def test_reader_denial_is_distinct_from_ministry_denial(self, client, headers, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": reference, "MinisterioID": 3,
        }, headers=headers[Role.READER_GUEST])

        assert response.status_code == 403
        assert response.json()['code'] == "UPLOAD_NOT_ALLOWED"

    def test_ministry_is_required_for_every_role(self, client, headers, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": reference,
        }, headers=headers[Role.STANDARD_USER])

        assert response.status_code == 400
        assert "MinisterioID" in response.json()['message']

    def test_blank_name_is_rejected(self, client, headers, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "   ", "RutaArchivo": reference, "MinisterioID": 3,
        }, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 400

    def test_reference_must_exist_on_content_store(self, client, headers):
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": "/uploads/file-0-missing.pdf", "MinisterioID": 3,
        }, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 400
        assert response.json()['code'] == "STORED_FILE_MISSING"

    def test_unknown_ministry(self, client, headers, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": reference, "MinisterioID": 99,
        }, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 400
        assert response.json()['code'] == "UNKNOWN_MINISTRY"

    def test_reference_can_only_be_registered_once(self, client, headers, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        body = {"NombreArchivo": "Acta", "RutaArchivo": reference, "MinisterioID": 3}

        assert client.post("/archivos", json=body, headers=headers[Role.GENERAL_ADMIN]).status_code == 201
        response = client.post("/archivos", json=body, headers=headers[Role.GENERAL_ADMIN])
        assert response.status_code == 409

    def test_concurrent_registration_of_same_reference(self, client, headers, put_stored_file,
                                                       session_factory, monkeypatch):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        classify = file_service.classify

        def register_elsewhere_first(name):
            # Another request commits the same reference after the duplicate check passed.
            other = session_factory()
            try:
                other.add(FileRecord(display_name="Otra", file_type="PDF", stored_path=reference, ministry_id=3))
                other.commit()
            finally:
                other.close()
            return classify(name)

        monkeypatch.setattr(file_service, "classify", register_elsewhere_first)
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": reference, "MinisterioID": 3,
        }, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 409
        assert response.json()['code'] == "DUPLICATE_REFERENCE"

    def test_path_components_in_reference_are_discarded(self, client, headers, put_stored_file, db):
        put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        response = client.post("/archivos", json={
            "NombreArchivo": "Acta", "RutaArchivo": "../../uploads/file-1-aaaaaaaaaaaa.pdf", "MinisterioID": 3,
        }, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 201
        record = db.query(FileRecord).one()
        assert record.stored_path == "/uploads/file-1-aaaaaaaaaaaa.pdf"

    def test_uploader_comes_from_token(self, client, headers, users, put_stored_file, db):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.docx")
        client.post("/archivos", json={
            "NombreArchivo": "Plan anual", "RutaArchivo": reference, "MinisterioID": 4,
        }, headers=headers[Role.STANDARD_USER])

        record = db.query(FileRecord).one()
        assert record.user_id == users[Role.STANDARD_USER].user_id
        assert record.file_type == "DOCX"


class TestList:

    def test_newest_first(self, client, headers, db, ministries):
        now = datetime.utcnow()
        older = make_record(db, "/uploads/a.pdf", 3, "Antiguo", now - timedelta(days=2))
        newest = make_record(db, "/uploads/b.pdf", 5, "Nuevo", now)
        middle = make_record(db, "/uploads/c.pdf", 3, "Intermedio", now - timedelta(days=1))

        files = client.get("/archivos", headers=headers[Role.READER_GUEST]).json()['files']

        assert [f['ArchivoID'] for f in files] == [newest, middle, older]
        assert files[0]['FechaSubida'] == now.strftime("%Y-%m-%d %H:%M:%S")

    def test_by_ministry(self, client, headers, db, ministries):
        now = datetime.utcnow()
        first = make_record(db, "/uploads/a.pdf", 3, uploaded_at=now - timedelta(hours=1))
        make_record(db, "/uploads/b.pdf", 5)
        second = make_record(db, "/uploads/c.pdf", 3, uploaded_at=now)

        response = client.get("/archivos/ministry/3", headers=headers[Role.STANDARD_USER])

        assert response.status_code == 200
        assert [f['ArchivoID'] for f in response.json()] == [second, first]

    def test_list_requires_authentication(self, client):
        assert client.get("/archivos").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/archivos", headers={"Authorization": "Bearer not-a-token"})

        assert response.status_code == 401
        assert response.json()['code'] == "TOKEN_INVALID"


class TestRename:

    def test_leader_renames_own_ministry_file(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/a.pdf", 3, "Acta")

        response = client.put(f"/archivos/{file_id}", json={"NombreArchivo": "Acta corregida"},
                              headers=headers[Role.MINISTRY_LEADER])

        assert response.status_code == 200
        files = client.get("/archivos", headers=headers[Role.MINISTRY_LEADER]).json()['files']
        assert files[0]['NombreArchivo'] == "Acta corregida"

    def test_leader_cannot_rename_other_ministry_even_with_forged_ministry(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/a.pdf", 5, "Acta")

        response = client.put(f"/archivos/{file_id}", json={"NombreArchivo": "X", "MinisterioID": 3},
                              headers=headers[Role.MINISTRY_LEADER])

        assert response.status_code == 403
        db.expire_all()
        assert db.get(FileRecord, file_id).display_name == "Acta"

    def test_standard_user_cannot_rename(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/a.pdf", 4)

        response = client.put(f"/archivos/{file_id}", json={"NombreArchivo": "X"},
                              headers=headers[Role.STANDARD_USER])

        assert response.status_code == 403
        assert response.json()['code'] == "MODIFY_NOT_ALLOWED"

    def test_missing_file(self, client, headers):
        response = client.put("/archivos/404", json={"NombreArchivo": "X"}, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 404

    def test_new_name_is_required(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/a.pdf", 3)

        response = client.put(f"/archivos/{file_id}", json={}, headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 400

    def test_denial_is_audited(self, client, headers, users, db, ministries):
        file_id = make_record(db, "/uploads/a.pdf", 5)

        client.put(f"/archivos/{file_id}", json={"NombreArchivo": "X"}, headers=headers[Role.MINISTRY_LEADER])

        entry = db.query(AuditLog).filter(AuditLog.action == "DENIED").one()
        assert entry.user_id == users[Role.MINISTRY_LEADER].user_id
        assert entry.file_id == file_id
        assert "role=MINISTRY_LEADER" in entry.details
        assert "resource_ministry=5" in entry.details


class TestDelete:

    def test_admin_deletes_any_ministry_file(self, client, headers, db, ministries, put_stored_file, storage):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        file_id = make_record(db, reference, 5)

        response = client.delete(f"/archivos/{file_id}", headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 200
        assert not storage.exists(reference)
        assert db.query(FileRecord).count() == 0

    def test_deleting_twice_returns_not_found(self, client, headers, db, ministries, put_stored_file):
        file_id = make_record(db, put_stored_file("file-1-aaaaaaaaaaaa.pdf"), 3)

        assert client.delete(f"/archivos/{file_id}", headers=headers[Role.MINISTRY_LEADER]).status_code == 200
        response = client.delete(f"/archivos/{file_id}", headers=headers[Role.MINISTRY_LEADER])
        assert response.status_code == 404

    def test_leader_cannot_delete_other_ministry_file(self, client, headers, db, ministries, put_stored_file, storage):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf")
        file_id = make_record(db, reference, 5)

        response = client.delete(f"/archivos/{file_id}", headers=headers[Role.MINISTRY_LEADER])

        assert response.status_code == 403
        assert storage.exists(reference)

    def test_missing_physical_file_does_not_block_metadata_removal(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/file-0-gone.pdf", 3)

        response = client.delete(f"/archivos/{file_id}", headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 200
        assert db.query(FileRecord).count() == 0

    def test_storage_error_does_not_block_metadata_removal(self, client, headers, db, ministries,
                                                           put_stored_file, storage, monkeypatch):
        file_id = make_record(db, put_stored_file("file-1-aaaaaaaaaaaa.pdf"), 3)

        def failing_delete(reference):
            raise StorageIOError("permission denied")

        monkeypatch.setattr(storage, "delete", failing_delete)
        response = client.delete(f"/archivos/{file_id}", headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 200
        assert db.query(FileRecord).count() == 0


class TestDownload:

    def test_reader_cannot_download(self, client, headers, db, ministries, put_stored_file):
        file_id = make_record(db, put_stored_file("file-1-aaaaaaaaaaaa.pdf"), 3)

        response = client.get(f"/archivos/download/{file_id}", headers=headers[Role.READER_GUEST])

        assert response.status_code == 403
        assert response.json()['code'] == "DOWNLOAD_NOT_ALLOWED"

    def test_download_uses_display_name(self, client, headers, db, ministries, put_stored_file):
        reference = put_stored_file("file-1-aaaaaaaaaaaa.pdf", b"%PDF-1.4 acta")
        file_id = make_record(db, reference, 3, "Boletin_Abril")

        response = client.get(f"/archivos/download/{file_id}", headers=headers[Role.STANDARD_USER])

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 acta"
        assert "Boletin_Abril.pdf" in response.headers["content-disposition"]

    def test_missing_record(self, client, headers):
        response = client.get("/archivos/download/77", headers=headers[Role.STANDARD_USER])

        assert response.status_code == 404

    def test_missing_physical_file(self, client, headers, db, ministries):
        file_id = make_record(db, "/uploads/file-0-gone.pdf", 3)

        response = client.get(f"/archivos/download/{file_id}", headers=headers[Role.GENERAL_ADMIN])

        assert response.status_code == 404
        assert response.json()['code'] == "STORED_FILE_MISSING"


def test_uploaded_file_is_served_statically(client, headers):
    from churchportal.main import app

    served = FilesystemStorageAdapter(get_uploads_dir())
    app.dependency_overrides[get_storage_adapter] = lambda: served

    uploaded = upload(client, headers[Role.GENERAL_ADMIN], content=b"%PDF-1.4 estatico").json()
    try:
        response = client.get(uploaded['filePath'])

        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 estatico"
    finally:
        served.delete(uploaded['fileName'])
