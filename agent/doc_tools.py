"""Tool surfaces the model calls to hand back typed results.

Each toolbox is created fresh for one generation attempt and holds the
content the model produced through it, so concurrent writers never share
scratch state. Every tool returns a short ``<system-reminder>`` status
string the model can read; only the once-only ``generate`` tools raise.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

from catalogue import CatalogueOutline, validate_outline
from errors import OutlineValidationError, ToolInvocationError

logger = logging.getLogger("docforge.agent.tools")

# Maximum characters returned by a single read_source_file call.
SOURCE_READ_LIMIT = 20_000


def _reminder(text: str) -> str:
    return f"<system-reminder>{text}</system-reminder>"


def is_success(status: str) -> bool:
    return "successful" in status.lower()


_MULTI_EDIT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "edits": {
            "type": "array",
            "description": "Edit operations applied sequentially; all succeed or none are applied.",
            "items": {
                "type": "object",
                "properties": {
                    "old_string": {"type": "string", "description": "The text to replace (exact match)"},
                    "new_string": {"type": "string", "description": "The text to replace it with"},
                    "replace_all": {"type": "boolean", "description": "Replace every occurrence (default false)"},
                },
                "required": ["old_string", "new_string"],
            },
        },
    },
    "required": ["edits"],
}


def _function(name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
    return {"type": "function", "function": {"name": name, "description": description, "parameters": parameters}}


class _EditableToolbox:
    """Read / write / multi-edit over a single stored text."""

    prefix = ""
    empty_message = "Content is empty. Use Write to store content first."

    def __init__(self) -> None:
        self.content: str | None = None

    # Subclasses reject content that would break their invariants.
    def _check(self, content: str) -> str | None:
        return None

    def read(self) -> str:
        if not self.content or not self.content.strip():
            return _reminder(self.empty_message)
        return self.content

    def write(self, content: str) -> str:
        if not isinstance(content, str):
            return _reminder("Content must be a string.")
        if not content or not content.strip():
            return _reminder("Content cannot be empty.")
        content = content.strip()
        problem = self._check(content)
        if problem:
            return _reminder(f"Write rejected: {problem}")
        self.content = content
        return _reminder("Write successful")

    def multi_edit(self, edits: list[dict[str, Any]] | None) -> str:
        if not self.content or not self.content.strip():
            return _reminder(self.empty_message)
        if not edits:
            return _reminder("No edits provided.")
        if not isinstance(edits, list):
            return _reminder("Edits must be a list of objects.")

        for i, edit in enumerate(edits, 1):
            if not isinstance(edit, dict):
                return _reminder(f"Edit {i}: must be an object with old_string and new_string.")
            old = edit.get("old_string") or ""
            if not isinstance(old, str) or not isinstance(edit.get("new_string", ""), str):
                return _reminder(f"Edit {i}: old_string and new_string must be strings.")
            if not old:
                return _reminder(f"Edit {i}: Old string cannot be empty.")
            if old == edit.get("new_string", ""):
                return _reminder(f"Edit {i}: New string must be different from old string.")

        current = self.content
        for i, edit in enumerate(edits, 1):
            old = edit["old_string"]
            new = edit.get("new_string", "")
            occurrences = current.count(old)
            if occurrences == 0:
                return _reminder(f"Edit {i}: Old string not found.")
            if edit.get("replace_all"):
                current = current.replace(old, new)
            elif occurrences > 1:
                return _reminder(
                    f"Edit {i}: Old string is not unique. Use replace_all=true or provide a longer unique string."
                )
            else:
                current = current.replace(old, new, 1)

        problem = self._check(current)
        if problem:
            return _reminder(f"MultiEdit rejected: {problem}")
        self.content = current
        return _reminder("MultiEdit successful")

    # ------------------------------------------------------------------
    # Model-facing surface
    # ------------------------------------------------------------------

    def _handlers(self) -> dict[str, Callable[..., str]]:
        return {
            f"{self.prefix}_read": lambda: self.read(),
            f"{self.prefix}_write": lambda content="", json="": self.write(content or json),
            f"{self.prefix}_multi_edit": lambda edits=None: self.multi_edit(edits),
        }

    def dispatch(self, name: str, arguments: str | dict[str, Any] | None) -> str:
        """Invoke tool *name* with JSON *arguments* and return its status string.

        Unknown tools and malformed arguments come back as reminders so the
        model can correct itself. ToolInvocationError propagates.
        """
        handler = self._handlers().get(name)
        if handler is None:
            return _reminder(f"Unknown tool '{name}'.")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                return _reminder(f"Arguments for '{name}' are not valid JSON: {e}")
        if not isinstance(arguments, dict):
            return _reminder(f"Arguments for '{name}' must be a JSON object.")
        try:
            return handler(**arguments)
        except (TypeError, ValueError, AttributeError) as e:
            return _reminder(f"Invalid arguments for '{name}': {e}")


class DocumentToolbox(_EditableToolbox):
    """Tools for one document: generate once, summarize, read/write/edit.

    Args:
        repo_root: Repository checkout the model may read source files from.
            Files read through ``read_source_file`` are recorded in
            ``source_files`` and become the artifact's source references.
    """

    prefix = "docs"
    empty_message = "Document is empty. Use docs_generate or docs_write first."

    def __init__(self, repo_root: Path | None = None) -> None:
        super().__init__()
        self.summary: str | None = None
        self.generated = False
        self.repo_root = repo_root.resolve() if repo_root else None
        self.source_files: list[str] = []

    def generate(self, content: str, summary: str | None = None) -> str:
        if self.generated:
            raise ToolInvocationError("docs_generate may only be called once per task.")
        status = self.write(content)
        if not is_success(status):
            return status
        if isinstance(summary, str) and summary.strip():
            self.summary = summary.strip()
        self.generated = True
        return _reminder("Generate successful")

    def summarize(self, summary: str) -> str:
        if not isinstance(summary, str) or not summary.strip():
            return _reminder("Summary cannot be empty.")
        self.summary = summary.strip()
        return _reminder("Summarize successful")

    def read_source_file(self, path: str, offset: int = 0, limit: int = SOURCE_READ_LIMIT) -> str:
        if self.repo_root is None:
            return _reminder("Source files are not available in this session.")
        if not isinstance(path, str) or not path:
            return _reminder("Path must be a non-empty string.")
        try:
            offset = max(0, int(offset))
            limit = max(1, min(int(limit), SOURCE_READ_LIMIT))
        except (TypeError, ValueError):
            return _reminder("offset and limit must be integers.")
        target = (self.repo_root / path).resolve()
        if not target.is_relative_to(self.repo_root) or not target.is_file():
            return _reminder(f"File not found: {path}")
        try:
            text = target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return _reminder(f"Cannot read {path}: {e}")
        relative = target.relative_to(self.repo_root).as_posix()
        if relative not in self.source_files:
            self.source_files.append(relative)
        return text[offset:offset + limit]

    def _handlers(self) -> dict[str, Callable[..., str]]:
        handlers = super()._handlers()
        handlers.update({
            "docs_generate": lambda content="", summary=None: self.generate(content, summary),
            "docs_summarize": lambda summary="": self.summarize(summary),
            "docs_read_source_file": lambda path="", offset=0, limit=SOURCE_READ_LIMIT: self.read_source_file(
                path, offset, limit
            ),
        })
        return handlers

    def tool_schemas(self, only: str | None = None) -> list[dict[str, Any]]:
        schemas = [
            _function(
                "docs_generate",
                "Return the COMPLETE markdown document in one call. May only be called once.",
                {
                    "type": "object",
                    "properties": {
                        "content": {"type": "string", "description": "The full markdown document"},
                        "summary": {"type": "string", "description": "Optional short summary (<= 200 words)"},
                    },
                    "required": ["content"],
                },
            ),
            _function(
                "docs_summarize",
                "Store a concise summary of the document.",
                {
                    "type": "object",
                    "properties": {"summary": {"type": "string"}},
                    "required": ["summary"],
                },
            ),
            _function("docs_read", "Read the current stored document.", {"type": "object", "properties": {}}),
            _function(
                "docs_write",
                "Overwrite the stored document with complete markdown content.",
                {
                    "type": "object",
                    "properties": {"content": {"type": "string"}},
                    "required": ["content"],
                },
            ),
            _function(
                "docs_multi_edit",
                "Apply several exact search/replace edits to the stored document atomically. "
                "Use docs_read first; prefer small localized edits over full rewrites.",
                _MULTI_EDIT_SCHEMA,
            ),
            _function(
                "docs_read_source_file",
                "Read a source file from the repository (relative path).",
                {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string"},
                        "offset": {"type": "integer"},
                        "limit": {"type": "integer"},
                    },
                    "required": ["path"],
                },
            ),
        ]
        if only:
            return [s for s in schemas if s["function"]["name"] == only]
        return schemas


class CatalogueToolbox(_EditableToolbox):
    """Tools for the outline JSON: generate once, read/write/edit."""

    prefix = "catalog"
    empty_message = "Catalogue is empty. Use catalog_write to store JSON first."

    def __init__(self) -> None:
        super().__init__()
        self.generated = False

    def _check(self, content: str) -> str | None:
        try:
            json.loads(content)
        except json.JSONDecodeError as e:
            return f"resulting content is not valid JSON. Provide more precise edits. Error Message: {e}"
        return None

    def generate_catalogue(self, catalogue: dict[str, Any] | CatalogueOutline) -> CatalogueOutline:
        """Store the outline exactly once, after validating it.

        Raises:
            ToolInvocationError: called a second time.
            OutlineValidationError: the outline is structurally invalid.
        """
        if self.generated:
            raise ToolInvocationError("catalog_generate_catalogue may only be called once per task.")
        outline = catalogue if isinstance(catalogue, CatalogueOutline) else CatalogueOutline.from_dict(catalogue)
        try:
            validate_outline(outline)
        except OutlineValidationError:
            logger.error("Invalid catalogue structure in generate_catalogue call", exc_info=True)
            raise
        status = self.write(outline.to_json())
        if not is_success(status):
            raise ToolInvocationError(status)
        self.generated = True
        return outline

    def _generate_handler(self, items: list | None = None, catalogue: dict | None = None) -> str:
        payload = catalogue if catalogue is not None else {"items": items or []}
        try:
            outline = self.generate_catalogue(payload)
        except OutlineValidationError as e:
            return _reminder(f"GenerateCatalogue rejected: {e}")
        return _reminder(f"GenerateCatalogue successful ({outline.count()} sections)")

    def _handlers(self) -> dict[str, Callable[..., str]]:
        handlers = super()._handlers()
        handlers["catalog_generate_catalogue"] = self._generate_handler
        return handlers

    def tool_schemas(self, only: str | None = None) -> list[dict[str, Any]]:
        node: dict[str, Any] = {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "machine readable identifier"},
                "title": {"type": "string", "description": "human readable title"},
                "prompt": {"type": "string", "description": "authoring guidance for the section"},
                "children": {"type": "array", "items": {"type": "object"},
                             "description": "optional nested items with the same schema"},
            },
            "required": ["name", "title", "prompt"],
        }
        schemas = [
            _function(
                "catalog_generate_catalogue",
                "Generate the complete documentation catalogue exactly once.",
                {"type": "object", "properties": {"items": {"type": "array", "items": node}}, "required": ["items"]},
            ),
            _function("catalog_read", "Read the stored catalogue JSON.", {"type": "object", "properties": {}}),
            _function(
                "catalog_write",
                "Overwrite the stored catalogue JSON. Output MUST be valid JSON without code fences.",
                {"type": "object", "properties": {"json": {"type": "string"}}, "required": ["json"]},
            ),
            _function(
                "catalog_multi_edit",
                "Apply several exact search/replace edits to the catalogue JSON atomically; "
                "the result must remain valid JSON.",
                _MULTI_EDIT_SCHEMA,
            ),
        ]
        if only:
            return [s for s in schemas if s["function"]["name"] == only]
        return schemas
