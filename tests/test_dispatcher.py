"""
Tests for tool dispatch and the job lifecycle.
"""

import pytest

from pdf_samples import build_pdf, build_text_pdf, page_widths, pdf_text
from pdf_toolkit_backend.dispatcher import ToolDispatcher
from pdf_toolkit_backend.errors import (
    BackendConversionFailure,
    InvalidOption,
    NotFoundError,
    ProcessingError,
    UnsupportedToolError,
    ValidationError,
)
from pdf_toolkit_backend.handlers import OperationHandler
from pdf_toolkit_backend.models import JobStatus


class ExplodingHandler(OperationHandler):
    tool_id = "explode-pdf"
    category = "test"

    def handle(self, sources, options):
        raise RuntimeError("kaboom")


class TestSuccessfulDispatch:
    """A completed job yields exactly one new File."""

    def test_creates_one_file_and_completed_job(self, dispatcher, store, blobs, add_file):
        source = add_file("doc.pdf", build_pdf(3))

        job = dispatcher.dispatch("rotate-pdf", [source.id], {"angle": 180})

        assert job.status is JobStatus.COMPLETED
        assert job.input_file_ids == [source.id]
        assert len(store.list_files(None)) == 2
        output = store.get_file(job.output_file_id)
        assert output.original_name == "rotated_doc.pdf"
        assert output.size == len(blobs.read(output.stored_name))
        assert output.metadata["sourceFileIds"] == [source.id]
        assert output.metadata["toolId"] == "rotate-pdf"
        assert output.metadata["jobId"] == job.id
        assert output.metadata["rotationAngle"] == 180
        assert store.get_job(job.id) == job

    def test_inputs_are_not_modified(self, dispatcher, store, blobs, add_file):
        content = build_pdf(2)
        source = add_file("doc.pdf", content)
        dispatcher.dispatch("remove-pages", [source.id], {"pagesToRemove": [0]})
        assert blobs.read(store.get_file(source.id).stored_name) == content

    def test_defaults_fill_missing_options(self, dispatcher, store, add_file):
        source = add_file("doc.pdf", build_pdf())
        job = dispatcher.dispatch("rotate-pdf", [source.id])
        assert job.options == {"angle": 90}
        assert store.get_file(job.output_file_id).metadata["rotationAngle"] == 90

    def test_input_order_is_preserved(self, dispatcher, store, blobs, add_file):
        first = add_file("a.pdf", build_pdf(2))
        second = add_file("b.pdf", build_pdf(1))
        job = dispatcher.dispatch("merge-pdf", [second.id, first.id])
        output = store.get_file(job.output_file_id)
        assert page_widths(blobs.read(output.stored_name)) == [100, 100, 101]

    def test_extensionless_pdf_is_accepted(self, dispatcher, add_file):
        source = add_file("scan", build_pdf(), content_type="application/pdf")
        assert dispatcher.dispatch("rotate-pdf", [source.id]).status is JobStatus.COMPLETED

    def test_watermark_text_with_interpolation_syntax(self, dispatcher, store, blobs, add_file):
        source = add_file("doc.pdf", build_text_pdf("body"))
        job = dispatcher.dispatch("add-watermark", [source.id], {"text": "Price ${oops", "rotation": 0})

        assert job.status is JobStatus.COMPLETED
        assert job.options["text"] == "Price ${oops"
        output = store.get_file(job.output_file_id)
        assert "Price ${oops" in pdf_text(blobs.read(output.stored_name))


class TestFailedDispatch:
    """A failed job is recorded and leaves no output behind."""

    def test_handler_failure_marks_job_failed(self, dispatcher, store, add_file):
        source = add_file("doc.pdf", build_pdf())

        with pytest.raises(ProcessingError) as excinfo:
            dispatcher.dispatch("rotate-pdf", [source.id], {"angle": 45})

        assert isinstance(excinfo.value.cause, InvalidOption)
        job = store.get_job(excinfo.value.job_id)
        assert job.status is JobStatus.FAILED
        assert job.output_file_id is None
        assert "multiple of 90" in job.error
        assert [f.id for f in store.list_files(None)] == [source.id]

    def test_unexpected_exception_is_wrapped(self, store, blobs, settings, add_file):
        dispatcher = ToolDispatcher(store, blobs, {"explode-pdf": ExplodingHandler()}, settings)
        source = add_file("doc.pdf", build_pdf())

        with pytest.raises(ProcessingError) as excinfo:
            dispatcher.dispatch("explode-pdf", [source.id])

        assert isinstance(excinfo.value.cause, BackendConversionFailure)
        assert store.get_job(excinfo.value.job_id).status is JobStatus.FAILED
        assert len(list(blobs.root.iterdir())) == 1


class TestRequestValidation:
    """Rejected requests never create a Job."""

    def test_unknown_tool(self, dispatcher, store, add_file):
        source = add_file("doc.pdf", build_pdf())
        with pytest.raises(UnsupportedToolError):
            dispatcher.dispatch("frobnicate-pdf", [source.id])
        assert store.list_jobs(None) == []

    def test_empty_file_list(self, dispatcher):
        with pytest.raises(ValidationError, match="No files specified"):
            dispatcher.dispatch("rotate-pdf", [])

    def test_unknown_file(self, dispatcher, store):
        with pytest.raises(NotFoundError):
            dispatcher.dispatch("rotate-pdf", ["does-not-exist"])
        assert store.list_jobs(None) == []

    def test_arity_is_checked(self, dispatcher, store, add_file):
        one = add_file("a.pdf", build_pdf())
        two = add_file("b.pdf", build_pdf())
        with pytest.raises(ValidationError, match="at least 2"):
            dispatcher.dispatch("merge-pdf", [one.id])
        with pytest.raises(ValidationError, match="at most 1"):
            dispatcher.dispatch("rotate-pdf", [one.id, two.id])
        assert store.list_jobs(None) == []

    def test_input_type_is_checked(self, dispatcher, store, add_file):
        image = add_file("photo.png", b"png", content_type="image/png")
        with pytest.raises(ValidationError, match="cannot process"):
            dispatcher.dispatch("rotate-pdf", [image.id])
        assert store.list_jobs(None) == []


class TestOwnershipAndAudit:
    def test_owned_inputs_are_hidden_from_others(self, dispatcher, store, add_file):
        private = add_file("doc.pdf", build_pdf(), owner="alice")
        with pytest.raises(NotFoundError):
            dispatcher.dispatch("rotate-pdf", [private.id], owner="bob")

        job = dispatcher.dispatch("rotate-pdf", [private.id], owner="alice")
        assert job.user_id == "alice"
        assert store.get_file(job.output_file_id).user_id == "alice"

    def test_passwords_are_not_stored_on_jobs(self, dispatcher, store, add_file):
        source = add_file("doc.pdf", build_pdf())
        job = dispatcher.dispatch("protect-pdf", [source.id], {"password": "hunter2"})
        assert job.options["password"] == "***"
        assert "hunter2" not in str(store.get_job(job.id))

    def test_list_tools_describes_registry(self, dispatcher):
        tools = {tool.id: tool for tool in dispatcher.list_tools()}
        assert len(tools) == 21
        assert tools["merge-pdf"].min_files == 2
        assert tools["merge-pdf"].max_files is None
        assert tools["rotate-pdf"].defaults == {"angle": 90}
        assert ".docx" in tools["word-to-pdf"].accepted_extensions
