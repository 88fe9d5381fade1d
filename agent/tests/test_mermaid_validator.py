"""Tests for mermaid block extraction, integrity checks and repair.

Everything here is a pure function over markdown text, except
ensure_mermaid_integrity which mutates the artifact it is given.
"""

from mermaid_validator import (
    NO_DIAGRAM_ISSUE,
    MermaidError,
    check_blocks,
    ensure_mermaid_integrity,
    extract_mermaid_blocks,
    find_block_issues,
    format_errors_for_prompt,
    repair_mermaid,
    validate_mermaid_syntax,
)
from models import Artifact


# ---------------------------------------------------------------------------
# extract_mermaid_blocks
# ---------------------------------------------------------------------------


class TestExtractMermaidBlocks:
    def test_empty_content(self):
        assert extract_mermaid_blocks("") == []

    def test_no_mermaid_blocks(self):
        content = "# Hello\n\nSome text\n\n```python\nprint('hi')\n```\n"
        assert extract_mermaid_blocks(content) == []

    def test_single_block(self):
        content = "# Doc\n\n```mermaid\ngraph TD\n  A-->B\n```\n"
        blocks = extract_mermaid_blocks(content)
        assert len(blocks) == 1
        line_num, source = blocks[0]
        assert line_num == 3  # 1-based, block starts on line 3
        assert "graph TD" in source
        assert "A-->B" in source

    def test_multiple_blocks(self):
        content = (
            "# Doc\n\n"
            "```mermaid\ngraph TD\n  A-->B\n```\n\n"
            "Some text between blocks.\n\n"
            "```mermaid\nsequenceDiagram\n  Alice->>Bob: Hello\n```\n"
        )
        blocks = extract_mermaid_blocks(content)
        assert len(blocks) == 2
        assert "graph TD" in blocks[0][1]
        assert "sequenceDiagram" in blocks[1][1]

    def test_line_numbers_are_correct(self):
        # Line 1: heading, Line 2: blank, Line 3: fence open
        content = "# Heading\n\n```mermaid\ngraph LR\n```\n"
        blocks = extract_mermaid_blocks(content)
        assert blocks[0][0] == 3

    def test_block_at_start_of_file(self):
        content = "```mermaid\ngraph TD\n  A-->B\n```\n"
        blocks = extract_mermaid_blocks(content)
        assert len(blocks) == 1
        assert blocks[0][0] == 1

    def test_non_mermaid_code_blocks_ignored(self):
        content = (
            "```javascript\nconsole.log('hi')\n```\n\n"
            "```mermaid\ngraph TD\n```\n\n"
            "```python\nprint('hi')\n```\n"
        )
        blocks = extract_mermaid_blocks(content)
        assert len(blocks) == 1
        assert "graph TD" in blocks[0][1]

    def test_multiline_complex_diagram(self):
        content = """# Architecture

```mermaid
graph TD
    subgraph Frontend
        A[React App]
        B[API Client]
    end
    subgraph Backend
        C[FastAPI]
        D[Database]
    end
    A --> B
    B --> C
    C --> D
```

More text here.
"""
        blocks = extract_mermaid_blocks(content)
        assert len(blocks) == 1
        source = blocks[0][1]
        assert "subgraph Frontend" in source
        assert "subgraph Backend" in source


# ---------------------------------------------------------------------------
# format_errors_for_prompt
# ---------------------------------------------------------------------------


class TestFormatErrorsForPrompt:
    def test_empty_errors(self):
        assert format_errors_for_prompt([]) == ""

    def test_single_error(self):
        errors = [
            MermaidError(
                block_index=0,
                line_number=5,
                source="graph TD\n  A-->",
                error="Expected node identifier",
            )
        ]
        result = format_errors_for_prompt(errors)
        assert "Diagram 1" in result
        assert "line 5" in result
        assert "Expected node identifier" in result
        assert "graph TD" in result

    def test_multiple_errors(self):
        errors = [
            MermaidError(block_index=0, line_number=3, source="graph TD", error="err1"),
            MermaidError(block_index=1, line_number=15, source="sequenceDiagram", error="err2"),
        ]
        result = format_errors_for_prompt(errors)
        assert "Diagram 1" in result
        assert "Diagram 2" in result
        assert "err1" in result
        assert "err2" in result

    def test_long_source_is_truncated(self):
        long_source = "x" * 1000
        errors = [
            MermaidError(block_index=0, line_number=1, source=long_source, error="err"),
        ]
        result = format_errors_for_prompt(errors)
        assert "[truncated]" in result
        # First 500 chars should be present
        assert "x" * 100 in result


# ---------------------------------------------------------------------------
# check_blocks / validate_mermaid_syntax
# ---------------------------------------------------------------------------


class TestValidateMermaidSyntax:
    def test_valid_blocks(self):
        content = "```mermaid\ngraph TD\n  A(start) --> B\n```\n\n```mermaid\nsequenceDiagram\n  A->>B: hi\n```\n"
        assert validate_mermaid_syntax(content) == (True, [])

    def test_no_blocks_is_invalid(self):
        assert validate_mermaid_syntax("# Title\n\nplain text") == (False, [NO_DIAGRAM_ISSUE])

    def test_empty_content_is_invalid(self):
        valid, issues = validate_mermaid_syntax("")
        assert not valid
        assert issues

    def test_unknown_kind(self):
        content = "```mermaid\nA --> B\n```"
        valid, issues = validate_mermaid_syntax(content)
        assert not valid
        assert issues == ["unrecognised diagram type in block 1"]

    def test_bracket_imbalance_reports_counts(self):
        content = "```mermaid\ngraph LR\n  A((x) --> B\n```"
        assert find_block_issues(content) == ["bracket imbalance in block 1: 2 '(' vs 1 ')'"]

    def test_one_block_can_fail_both_checks(self):
        errors = check_blocks("text\n\n```mermaid\nA( --> B\n```")
        assert [e.block_index for e in errors] == [0, 0]
        assert errors[0].line_number == 3

    def test_issues_name_the_failing_block(self):
        content = "```mermaid\ngraph TD\n```\n```mermaid\ngantt\n  x(\n```"
        assert find_block_issues(content) == ["bracket imbalance in block 2: 1 '(' vs 0 ')'"]


# ---------------------------------------------------------------------------
# repair_mermaid
# ---------------------------------------------------------------------------


class TestRepairMermaid:
    def test_strips_parentheses_inside_labels(self):
        content = "```mermaid\ngraph TD\n  A[Load config (env)] --> B\n```"
        assert repair_mermaid(content) == "```mermaid\ngraph TD\n  A[Load config env] --> B\n```"

    def test_keeps_shape_parentheses_outside_labels(self):
        content = "```mermaid\ngraph TD\n  A(round) --> B[x (y)]\n```"
        assert "A(round) --> B[x y]" in repair_mermaid(content)

    def test_strips_fullwidth_parentheses(self):
        content = "```mermaid\ngraph TD\n  A[配置（环境）] --> B\n```"
        assert "A[配置环境]" in repair_mermaid(content)

    def test_leaves_text_outside_blocks_alone(self):
        content = "Call `f(x)` [here (now)](a.md)\n\n```mermaid\ngraph TD\n  A[x (y)]\n```"
        repaired = repair_mermaid(content)
        assert repaired.startswith("Call `f(x)` [here (now)](a.md)")

    def test_content_without_blocks_unchanged(self):
        assert repair_mermaid("# Doc\n\nNo diagrams [a (b)].") == "# Doc\n\nNo diagrams [a (b)]."


class TestEnsureMermaidIntegrity:
    def _artifact(self, content):
        return Artifact(item_id="item-1", title="Doc", content=content)

    def test_valid_content_untouched(self):
        content = "```mermaid\ngraph TD\n  A(x) --> B\n```"
        artifact = self._artifact(content)
        assert ensure_mermaid_integrity(artifact) is True
        assert artifact.content == content

    def test_repairs_unbalanced_label(self):
        artifact = self._artifact("```mermaid\ngraph TD\n  A[Load (env] --> B\n```")
        assert ensure_mermaid_integrity(artifact) is True
        assert "A[Load env]" in artifact.content

    def test_unrepairable_block_reports_failure(self):
        artifact = self._artifact("```mermaid\ngraph TD\n  A --> B(Stop\n```")
        assert ensure_mermaid_integrity(artifact) is False
        assert "B(Stop" in artifact.content

    def test_document_without_diagrams(self):
        artifact = self._artifact("# Only text")
        assert ensure_mermaid_integrity(artifact) is False
        assert artifact.content == "# Only text"
