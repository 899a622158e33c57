"""
Tests for the File and Job record stores.

Every test runs against both back-ends so they stay interchangeable.
"""

import pytest

from pdf_toolkit_backend.configuration import load_settings
from pdf_toolkit_backend.database import (
    MemoryRecordStore,
    SqliteRecordStore,
    build_record_store,
)
from pdf_toolkit_backend.errors import NotFoundError
from pdf_toolkit_backend.models import JobStatus


@pytest.fixture(params=["memory", "sqlite"])
def record_store(request, tmp_path):
    if request.param == "memory":
        return MemoryRecordStore()
    return SqliteRecordStore(tmp_path / "records.db")


def new_file(record_store, **overrides):
    values = {
        "stored_name": "abc.pdf",
        "original_name": "report.pdf",
        "size": 42,
        "content_type": "application/pdf",
    }
    values.update(overrides)
    return record_store.create_file(**values)


def new_job(record_store, **overrides):
    values = {"tool_id": "rotate-pdf", "status": JobStatus.PENDING, "input_file_ids": ["a", "b"]}
    values.update(overrides)
    return record_store.create_job(**values)


class TestFiles:
    def test_create_assigns_identity(self, record_store):
        record = new_file(record_store, metadata={"pageCount": 3})
        assert len(record.id) == 32
        assert record.created_at.tzinfo is not None

        fetched = record_store.get_file(record.id)
        assert fetched == record
        assert fetched.metadata == {"pageCount": 3}
        assert fetched.extension == ".pdf"

    def test_identifiers_are_unique(self, record_store):
        ids = {new_file(record_store).id for _ in range(20)}
        assert len(ids) == 20

    def test_update_merges_changes(self, record_store):
        record = new_file(record_store, user_id="alice")
        updated = record_store.update_file(record.id, metadata={"note": "x"})
        assert updated.metadata == {"note": "x"}
        assert updated.original_name == "report.pdf"
        assert updated.user_id == "alice"
        assert record_store.get_file(record.id) == updated

    def test_identity_fields_are_immutable(self, record_store):
        record = new_file(record_store)
        with pytest.raises(ValueError):
            record_store.update_file(record.id, id="other")

    def test_unknown_fields_are_rejected(self, record_store):
        with pytest.raises(ValueError):
            new_file(record_store, colour="blue")

    def test_missing_record(self, record_store):
        with pytest.raises(NotFoundError):
            record_store.get_file("does-not-exist")
        with pytest.raises(NotFoundError):
            record_store.update_file("does-not-exist", size=1)

    def test_delete_reports_existence(self, record_store):
        record = new_file(record_store)
        assert record_store.delete_file(record.id) is True
        assert record_store.delete_file(record.id) is False
        with pytest.raises(NotFoundError):
            record_store.get_file(record.id)

    def test_list_by_owner(self, record_store):
        mine = [new_file(record_store, user_id="alice") for _ in range(3)]
        new_file(record_store, user_id="bob")
        anonymous = new_file(record_store)

        listed = record_store.list_files("alice")
        assert {record.id for record in listed} == {record.id for record in mine}
        assert [r.created_at for r in listed] == sorted((r.created_at for r in listed), reverse=True)
        assert [record.id for record in record_store.list_files(None)] == [anonymous.id]

    def test_owned_files_are_hidden_from_others(self, record_store):
        owned = new_file(record_store, user_id="alice")
        public = new_file(record_store)

        assert record_store.get_visible_file(owned.id, "alice").id == owned.id
        with pytest.raises(NotFoundError):
            record_store.get_visible_file(owned.id, "bob")
        with pytest.raises(NotFoundError):
            record_store.get_visible_file(owned.id, None)
        assert record_store.get_visible_file(public.id, "bob").id == public.id


class TestJobs:
    def test_create_and_round_trip(self, record_store):
        job = new_job(record_store, options={"angle": 90}, user_id="alice")
        fetched = record_store.get_job(job.id)
        assert fetched.status is JobStatus.PENDING
        assert fetched.input_file_ids == ["a", "b"]
        assert fetched.options == {"angle": 90}
        assert fetched.updated_at == fetched.created_at

    def test_update_refreshes_timestamp(self, record_store):
        job = new_job(record_store)
        updated = record_store.update_job(job.id, status=JobStatus.COMPLETED, output_file_id="out")
        assert updated.status is JobStatus.COMPLETED
        assert updated.output_file_id == "out"
        assert updated.input_file_ids == ["a", "b"]
        assert updated.updated_at >= job.updated_at
        assert updated.created_at == job.created_at

    def test_failed_job_keeps_error(self, record_store):
        job = new_job(record_store)
        record_store.update_job(job.id, status=JobStatus.FAILED, error="boom")
        fetched = record_store.get_job(job.id)
        assert fetched.status is JobStatus.FAILED
        assert fetched.error == "boom"
        assert fetched.output_file_id is None

    def test_hidden_from_other_owner(self, record_store):
        job = new_job(record_store, user_id="alice")
        with pytest.raises(NotFoundError):
            record_store.get_visible_job(job.id, "bob")
        assert [j.id for j in record_store.list_jobs("alice")] == [job.id]


class TestBackends:
    def test_sqlite_records_survive_reopen(self, tmp_path):
        path = tmp_path / "records.db"
        record = new_file(SqliteRecordStore(path), metadata={"k": [1, 2]})
        assert SqliteRecordStore(path).get_file(record.id) == record

    def test_build_record_store(self, tmp_path):
        assert isinstance(build_record_store(load_settings(environ={})), MemoryRecordStore)

        sqlite_settings = load_settings(
            overrides={"database": {"backend": "sqlite", "path": str(tmp_path / "r.db")}}, environ={}
        )
        assert isinstance(build_record_store(sqlite_settings), SqliteRecordStore)

        with pytest.raises(ValueError, match="Unknown database backend"):
            build_record_store(load_settings(overrides={"database": {"backend": "mongo"}}, environ={}))
