"""Catalogue outline model: parsing, structural validation, flattening.

The outline is the hierarchical plan of documentation sections produced
before any page is written. Every node needs a non-empty ``name``,
``title`` and ``prompt``; nodes with children are validated recursively.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from json_repair import repair_json

from errors import OutlineValidationError
from models import PendingItem, new_id

logger = logging.getLogger("docforge.agent.catalogue")


@dataclasses.dataclass
class OutlineNode:
    name: str
    title: str
    prompt: str
    children: list["OutlineNode"] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, where: str = "<root>") -> "OutlineNode":
        if not isinstance(data, dict):
            raise OutlineValidationError(f"Catalogue item under '{where}' is not an object.")
        raw_children = data.get("children") or []
        if not isinstance(raw_children, list):
            raise OutlineValidationError(f"Catalogue item '{data.get('name', where)}' has non-list 'children'.")
        name = _text(data.get("name"))
        return cls(
            name=name,
            title=_text(data.get("title")),
            prompt=_text(data.get("prompt")),
            children=[cls.from_dict(child, name or where) for child in raw_children],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "title": self.title, "prompt": self.prompt}
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data


@dataclasses.dataclass
class CatalogueOutline:
    items: list[OutlineNode] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "CatalogueOutline":
        if not isinstance(data, dict):
            raise OutlineValidationError("Catalogue JSON must be an object with an 'items' array.")
        items = data.get("items")
        if items is None:
            return cls(items=[])
        if not isinstance(items, list):
            raise OutlineValidationError("Catalogue 'items' must be an array.")
        return cls(items=[OutlineNode.from_dict(item) for item in items])

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def count(self) -> int:
        """Total number of nodes at every depth."""
        def _count(nodes: list[OutlineNode]) -> int:
            return sum(1 + _count(n.children) for n in nodes)
        return _count(self.items)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ("" if value is None else str(value))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_outline(outline: CatalogueOutline) -> None:
    """Raise OutlineValidationError if *outline* violates its invariants."""
    if outline is None:
        raise OutlineValidationError("Catalogue is missing.")
    if not outline.items:
        raise OutlineValidationError("The catalogue must contain at least one item.")
    for index, item in enumerate(outline.items):
        _validate_node(item, index, [])


def _validate_node(node: OutlineNode, index: int, path: list[str]) -> None:
    if node is None:
        raise OutlineValidationError(f"Catalogue item at index {index} is null.")
    parent_path = "/".join(path) if path else "<root>"
    if not node.name.strip():
        raise OutlineValidationError(f"Catalogue item '{parent_path}' (index {index}) is missing a 'name'.")
    if not node.title.strip():
        raise OutlineValidationError(f"Catalogue item '{node.name}' is missing a 'title'.")
    if not node.prompt.strip():
        raise OutlineValidationError(f"Catalogue item '{node.name}' is missing a 'prompt'.")
    for child_index, child in enumerate(node.children):
        _validate_node(child, child_index, path + [node.name])


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_outline(text: str, *, lenient: bool = False) -> CatalogueOutline:
    """Deserialize and validate an outline from JSON text.

    Args:
        text: JSON document with an ``items`` array.
        lenient: Run ``json_repair`` first (for free-text model replies).

    Raises:
        json.JSONDecodeError: text is not JSON.
        OutlineValidationError: JSON does not satisfy the outline invariants.
    """
    if not text or not text.strip():
        raise OutlineValidationError("Content is empty.")
    source = repair_json(text) if lenient else text
    outline = CatalogueOutline.from_dict(json.loads(source))
    validate_outline(outline)
    return outline


def try_parse_outline(text: str | None, *, lenient: bool = False) -> tuple[CatalogueOutline | None, str | None]:
    """Like parse_outline but returns (outline, error) instead of raising."""
    try:
        return parse_outline(text or "", lenient=lenient), None
    except (ValueError, OutlineValidationError) as e:
        logger.debug("Failed to parse catalogue JSON: %s", e)
        return None, str(e)


def extract_json_fragment(response_text: str | None) -> str | None:
    """Return the text between the first '{' and the last '}' after removing fences."""
    if not response_text or not response_text.strip():
        return None
    sanitized = response_text
    for fence in ("```json", "```JSON", "```"):
        sanitized = sanitized.replace(fence, "")
    sanitized = sanitized.strip()
    first = sanitized.find("{")
    last = sanitized.rfind("}")
    if first < 0 or last <= first:
        return None
    return sanitized[first:last + 1]


# ---------------------------------------------------------------------------
# Flattening into pending items
# ---------------------------------------------------------------------------

def flatten_outline(outline: CatalogueOutline, document_id: str = "") -> list[PendingItem]:
    """Derive the ordered PendingItem list from *outline*, parents before children."""
    items: list[PendingItem] = []
    _flatten(outline.items, None, None, document_id, items)
    return items


def _flatten(
    nodes: list[OutlineNode],
    parent_id: str | None,
    parent_url: str | None,
    document_id: str,
    out: list[PendingItem],
) -> None:
    for order, node in enumerate(nodes):
        title = node.title.replace(" ", "")
        url = f"{parent_url}_{title}" if parent_url else title
        item = PendingItem(
            id=f"{new_id()}{title}",
            name=node.name,
            title=title,
            prompt=node.prompt if node.prompt.strip() else " ",
            document_id=document_id,
            parent_id=parent_id,
            url=url,
            order=order,
            is_completed=False,
        )
        out.append(item)
        if node.children:
            _flatten(node.children, item.id, url, document_id, out)
