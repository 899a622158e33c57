"""
Tests for configuration loading and tool option defaults.
"""

from pdf_toolkit_backend.configuration import load_settings, make_tool_options, tool_defaults


class TestLoadSettings:
    """Tests for load_settings precedence."""

    def test_packaged_defaults(self):
        settings = load_settings(environ={})
        assert settings.storage.backend == "local"
        assert settings.database.backend == "memory"
        assert settings.upload.max_files == 10
        assert settings.upload.max_file_size == 100 * 1024 * 1024

    def test_environment_overrides_defaults(self):
        settings = load_settings(
            environ={"PDF_TOOLKIT_MAX_FILES": "3", "S3_BUCKET_NAME": "my-bucket", "PDF_TOOLKIT_DATABASE": "sqlite"}
        )
        assert settings.upload.max_files == 3
        assert settings.storage.s3_bucket == "my-bucket"
        assert settings.database.backend == "sqlite"

    def test_explicit_overrides_win_over_environment(self):
        settings = load_settings(overrides={"upload": {"max_files": 7}}, environ={"PDF_TOOLKIT_MAX_FILES": "3"})
        assert settings.upload.max_files == 7


class TestToolOptions:
    """Tests for per-tool defaults and option merging."""

    def test_tool_defaults(self):
        settings = load_settings(environ={})
        assert tool_defaults(settings, "rotate-pdf") == {"angle": 90}
        assert tool_defaults(settings, "merge-pdf") == {}

    def test_merges_over_defaults(self):
        settings = load_settings(environ={})
        options = make_tool_options(settings, "add-page-numbers", {"format": "Page {n}", "fontSize": None})
        assert options["format"] == "Page {n}"
        assert options["fontSize"] == 11
        assert options["position"] == "bottomCenter"

    def test_merges_nested_defaults(self):
        settings = load_settings(environ={})
        options = make_tool_options(settings, "protect-pdf", {"password": "pw", "permissions": {"printing": False}})
        assert options["permissions"]["printing"] is False
        assert options["permissions"]["copying"] is True

    def test_tool_without_defaults(self):
        settings = load_settings(environ={})
        assert make_tool_options(settings, "merge-pdf", None) == {}
        assert make_tool_options(settings, "merge-pdf", {"pageOrder": [1, 0]}) == {"pageOrder": [1, 0]}

    def test_interpolation_syntax_is_kept_literally(self):
        settings = load_settings(environ={})
        for text in ("Price ${oops", "Total ${price}", "${oc.env:HOME}"):
            options = make_tool_options(settings, "add-watermark", {"text": text})
            assert options["text"] == text
            assert options["opacity"] == 0.3

    def test_submitted_options_are_not_mutated(self):
        settings = load_settings(environ={})
        submitted = {"permissions": {"printing": False}}
        make_tool_options(settings, "protect-pdf", submitted)
        assert submitted == {"permissions": {"printing": False}}
