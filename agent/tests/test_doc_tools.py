"""Tests for the model-facing toolboxes.

The toolboxes are the only way generated content reaches the pipeline, so
these cover the once-only guards, atomic multi-edit semantics and the JSON
argument handling of dispatch().
"""

import json

import pytest

from catalogue import CatalogueOutline
from doc_tools import CatalogueToolbox, DocumentToolbox, is_success
from errors import OutlineValidationError, ToolInvocationError

VALID_OUTLINE = {"items": [{"name": "overview", "title": "Overview", "prompt": "Describe the project"}]}


# ---------------------------------------------------------------------------
# DocumentToolbox
# ---------------------------------------------------------------------------


class TestDocumentGenerate:
    def test_generate_stores_content_and_summary(self):
        toolbox = DocumentToolbox()
        status = toolbox.generate("  # Doc\n\nbody  ", summary=" short ")
        assert is_success(status)
        assert toolbox.content == "# Doc\n\nbody"
        assert toolbox.summary == "short"
        assert toolbox.generated

    def test_generate_twice_raises(self):
        toolbox = DocumentToolbox()
        toolbox.generate("# Doc")
        with pytest.raises(ToolInvocationError):
            toolbox.generate("# Other")
        assert toolbox.content == "# Doc"

    def test_empty_generate_can_be_retried(self):
        toolbox = DocumentToolbox()
        assert not is_success(toolbox.generate("   "))
        assert not toolbox.generated
        assert is_success(toolbox.generate("# Doc"))

    def test_summarize_rejects_blank(self):
        toolbox = DocumentToolbox()
        assert not is_success(toolbox.summarize(""))
        assert is_success(toolbox.summarize("A summary"))
        assert toolbox.summary == "A summary"


class TestMultiEdit:
    @pytest.fixture
    def toolbox(self):
        toolbox = DocumentToolbox()
        toolbox.write("alpha beta alpha gamma")
        return toolbox

    def test_sequential_edits(self, toolbox):
        status = toolbox.multi_edit([
            {"old_string": "beta", "new_string": "BETA"},
            {"old_string": "alpha gamma", "new_string": "delta"},
        ])
        assert is_success(status)
        assert toolbox.content == "alpha BETA delta"

    def test_non_unique_match_rejected_without_changes(self, toolbox):
        status = toolbox.multi_edit([
            {"old_string": "gamma", "new_string": "G"},
            {"old_string": "alpha", "new_string": "A"},
        ])
        assert "not unique" in status
        assert toolbox.content == "alpha beta alpha gamma"

    def test_replace_all(self, toolbox):
        assert is_success(toolbox.multi_edit([{"old_string": "alpha", "new_string": "A", "replace_all": True}]))
        assert toolbox.content == "A beta A gamma"

    def test_missing_old_string(self, toolbox):
        assert "not found" in toolbox.multi_edit([{"old_string": "zeta", "new_string": "z"}])

    def test_identical_strings_rejected(self, toolbox):
        assert "must be different" in toolbox.multi_edit([{"old_string": "beta", "new_string": "beta"}])

    def test_edit_on_empty_document(self):
        status = DocumentToolbox().multi_edit([{"old_string": "a", "new_string": "b"}])
        assert "empty" in status


class TestDispatch:
    def test_dispatch_parses_json_arguments(self):
        toolbox = DocumentToolbox()
        status = toolbox.dispatch("docs_generate", json.dumps({"content": "# Title", "summary": "s"}))
        assert is_success(status)
        assert toolbox.content == "# Title"

    def test_invalid_json_returns_reminder(self):
        status = DocumentToolbox().dispatch("docs_write", "{not json")
        assert status.startswith("<system-reminder>")
        assert "not valid JSON" in status

    def test_unknown_tool(self):
        assert "Unknown tool" in DocumentToolbox().dispatch("docs_delete", {})

    def test_unexpected_argument(self):
        assert "Invalid arguments" in DocumentToolbox().dispatch("docs_summarize", {"text": "x"})

    def test_second_generate_propagates(self):
        toolbox = DocumentToolbox()
        toolbox.dispatch("docs_generate", {"content": "# A"})
        with pytest.raises(ToolInvocationError):
            toolbox.dispatch("docs_generate", {"content": "# B"})

    def test_schemas_can_be_filtered(self):
        schemas = DocumentToolbox().tool_schemas(only="docs_generate")
        assert [s["function"]["name"] for s in schemas] == ["docs_generate"]


class TestReadSourceFile:
    def test_reads_and_records_path(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("print('hi')\n", encoding="utf-8")
        toolbox = DocumentToolbox(tmp_path)

        assert toolbox.read_source_file("src/main.py") == "print('hi')\n"
        toolbox.read_source_file("src/main.py", offset=2, limit=3)
        assert toolbox.source_files == ["src/main.py"]

    def test_rejects_paths_outside_repo(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (tmp_path / "secret.txt").write_text("x", encoding="utf-8")
        toolbox = DocumentToolbox(repo)
        assert "File not found" in toolbox.read_source_file("../secret.txt")
        assert toolbox.source_files == []

    def test_without_repo(self):
        assert "not available" in DocumentToolbox().read_source_file("a.py")


class TestMalformedArguments:
    """Bad argument shapes from the model come back as reminders, never exceptions."""

    @pytest.fixture
    def toolbox(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n", encoding="utf-8")
        toolbox = DocumentToolbox(tmp_path)
        toolbox.write("# Doc\n\nbody")
        return toolbox

    @pytest.mark.parametrize("edits", [
        ["oops"],
        [{"old_string": 3, "new_string": "x"}],
        [{"old_string": "body", "new_string": None}],
        "body",
    ])
    def test_multi_edit_shapes(self, toolbox, edits):
        status = toolbox.dispatch("docs_multi_edit", {"edits": edits})
        assert status.startswith("<system-reminder>")
        assert not is_success(status)
        assert toolbox.content == "# Doc\n\nbody"

    def test_write_non_string(self, toolbox):
        status = toolbox.dispatch("docs_write", {"content": 42})
        assert not is_success(status)
        assert toolbox.content == "# Doc\n\nbody"

    @pytest.mark.parametrize("arguments", [
        {"path": "a.py", "offset": "start"},
        {"path": "a.py", "limit": None},
        {"path": ["a.py"]},
    ])
    def test_read_source_file_arguments(self, toolbox, arguments):
        status = toolbox.dispatch("docs_read_source_file", arguments)
        assert status.startswith("<system-reminder>")
        assert toolbox.source_files == []

    def test_summary_non_string(self):
        toolbox = DocumentToolbox()
        assert not is_success(toolbox.dispatch("docs_summarize", {"summary": 7}))
        assert is_success(toolbox.dispatch("docs_generate", {"content": "# A", "summary": 7}))
        assert toolbox.summary is None


# ---------------------------------------------------------------------------
# CatalogueToolbox
# ---------------------------------------------------------------------------


class TestCatalogueToolbox:
    def test_generate_catalogue_validates_and_stores_json(self):
        toolbox = CatalogueToolbox()
        outline = toolbox.generate_catalogue(VALID_OUTLINE)
        assert isinstance(outline, CatalogueOutline)
        assert json.loads(toolbox.content) == VALID_OUTLINE

    def test_generate_catalogue_once(self):
        toolbox = CatalogueToolbox()
        toolbox.generate_catalogue(VALID_OUTLINE)
        with pytest.raises(ToolInvocationError):
            toolbox.generate_catalogue(VALID_OUTLINE)

    def test_invalid_outline_raises(self):
        with pytest.raises(OutlineValidationError):
            CatalogueToolbox().generate_catalogue({"items": [{"name": "x", "title": "", "prompt": "p"}]})

    def test_invalid_outline_via_dispatch_is_reported(self):
        toolbox = CatalogueToolbox()
        status = toolbox.dispatch("catalog_generate_catalogue", {"items": []})
        assert "rejected" in status
        assert toolbox.content is None
        assert not toolbox.generated

    def test_write_rejects_invalid_json(self):
        toolbox = CatalogueToolbox()
        status = toolbox.dispatch("catalog_write", {"json": "{broken"})
        assert "not valid JSON" in status
        assert toolbox.content is None

    def test_edit_that_breaks_json_is_rejected(self):
        toolbox = CatalogueToolbox()
        toolbox.write(json.dumps(VALID_OUTLINE))
        before = toolbox.content
        status = toolbox.multi_edit([{"old_string": '"items":', "new_string": '"items"'}])
        assert "MultiEdit rejected" in status
        assert toolbox.content == before
