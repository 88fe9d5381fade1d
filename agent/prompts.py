"""Prompt templates and pipeline constants.

This module contains the static text used across the generation pipeline:
system prompts, the direct-generation instruction, refinement protocols,
summary and catalogue prompts. The only logic here is string assembly.
"""

# ---------------------------------------------------------------------------
# Pipeline Constants
# ---------------------------------------------------------------------------

# Characters of generated content fed to the dedicated summary call.
# Summaries only need the opening sections; the full document would waste
# context on a 512-token answer.
SUMMARY_SOURCE_CHARS: int = 4000
SUMMARY_MAX_TOKENS: int = 512
SUMMARY_MAX_WORDS: int = 200

# Raw model reply shown in logs when fallback JSON extraction fails.
RESPONSE_PREVIEW_CHARS: int = 800

# Upper bound on the directory listing embedded in prompts.
CATALOGUE_LISTING_LIMIT: int = 60_000


# ---------------------------------------------------------------------------
# Shared Prompt Components
# ---------------------------------------------------------------------------

DOCS_SYSTEM_PROMPT: str = """You are a senior technical documentation architect.
You read the repository context you are given and write complete,
evidence-based Markdown documentation. You hand results back ONLY through
the provided tools; never paste the final document into chat."""

CATALOGUE_SYSTEM_PROMPT: str = """You are a documentation planner. You study a
repository's layout and design a hierarchical documentation catalogue that
moves from getting-started material to deep dives. You hand the result back
ONLY through the provided catalogue tools."""

DIAGRAM_REQUIREMENTS: str = """
MERMAID DIAGRAMS (at least 3):

Use ```mermaid code blocks. Choose the right type:
  graph TB/TD: for architecture, component relationships
  sequenceDiagram: for request flows, data pipelines
  stateDiagram-v2: for stateful entities
  erDiagram: for data models

Do NOT put parentheses inside node labels such as A[Parse (JSON)];
they break the renderer. Write A[Parse JSON] instead.
"""

LANGUAGE_REQUIREMENT: str = """
<system-reminder>
Write all prose in {language}. Technical terms, identifiers and code stay in
their original form.
</system-reminder>
"""

DOCS_GENERATE_REMINDER: str = """
<system-reminder>
Return the finished document by calling `docs_generate` exactly once with the
COMPLETE Markdown content. A second call is rejected. Use `docs_read`,
`docs_write` and `docs_multi_edit` only to revise what you already stored.
Use `docs_read_source_file` to read repository files you cite.
</system-reminder>
"""


def language_reminder(language: str) -> str:
    return LANGUAGE_REQUIREMENT.format(language=language)


# ---------------------------------------------------------------------------
# Document Generation
# ---------------------------------------------------------------------------

def build_document_prompt(
    *, title: str, prompt: str, catalogue: str, git_repository: str, branch: str,
) -> str:
    """Context block shared by the direct and the streaming strategies."""
    return f"""## Repository
- Repository: {git_repository}
- Branch: {branch}
- Document title: {title}

## Directory structure (excerpt)
{catalogue}

## Code context
{prompt}
"""


def build_direct_instruction(
    *,
    title: str,
    prompt: str,
    catalogue: str,
    git_repository: str,
    branch: str,
    min_content_length: int,
) -> str:
    """Single-shot instruction: one forced ``docs_generate`` call."""
    context = build_document_prompt(
        title=title, prompt=prompt, catalogue=catalogue,
        git_repository=git_repository, branch=branch,
    )
    return f"""Generate the complete Markdown document for the section below.

{context}
## Task
- Read the code context carefully to understand the architecture, modules and purpose.
- Call `docs_generate` ONCE and return the entire Markdown document in that call; do not split it.
- The body must be at least {min_content_length} characters long, with at least 5 section headings and 3 Mermaid diagrams.
- Cover installation/deployment, architecture, core modules, runtime flow, API/interfaces, best practices and FAQ where relevant.
- Link key code files and references with Markdown links.
- End with a references section linking back to the repository.
- If the context is not sufficient to write the document, say so explicitly.
{DIAGRAM_REQUIREMENTS}
When finished, you may call `docs_summarize` with a summary of at most {SUMMARY_MAX_WORDS} words.
"""


DOCUMENT_REFINE_PROMPT: str = """Refine and enhance the document you just produced while keeping its structure and approach.

Enhancement areas:
- Deepen architectural explanations with more technical detail from the code
- Strengthen the existing Mermaid diagrams
- Add specific code references and examples where they help
- Improve clarity and readability

Refinement protocol (tools only):
1) Use docs_read to review the current document.
2) Plan improvements that preserve structure and voice.
3) Apply several small, precise docs_multi_edit operations.
4) Re-run docs_read after each edit and keep iterating for 2-3 passes.
5) Avoid full overwrites; prefer targeted edits.
"""

DOCUMENT_REFINE_REMINDER: str = """
<system-reminder>
You are in the refinement phase. EDIT the existing document; do NOT write a new one.
Preserve the structure, do not remove sections, and only add content grounded in
the code you already analysed.
</system-reminder>
"""


SUMMARY_SYSTEM_PROMPT: str = "You write short summaries of technical documents."


def build_summary_prompt(content: str) -> str:
    source = content[:SUMMARY_SOURCE_CHARS]
    return f"""Summarize the Markdown document below in at most {SUMMARY_MAX_WORDS} words,
focusing on key features, technology stack and architectural highlights.
Return the summary by calling `docs_summarize`.

```markdown
{source}
```
"""


# ---------------------------------------------------------------------------
# Catalogue Synthesis
# ---------------------------------------------------------------------------

def build_catalogue_prompt(*, catalogue: str, git_repository: str = "", branch: str = "") -> str:
    listing = catalogue[:CATALOGUE_LISTING_LIMIT]
    origin = f"Repository: {git_repository} ({branch})\n\n" if git_repository else ""
    return f"""{origin}Design the documentation catalogue for this repository.

## Directory structure
{listing}

## Requirements
- Start with getting-started sections (overview, installation, quick start), then deep dives.
- Add level 2/3 subsections for core components, features, data models and integrations.
- Every item has a kebab-case `name`, a human readable `title` and a `prompt` that tells
  the writer which code areas to read and what the section must cover.
"""


CATALOGUE_TOOL_REMINDER: str = """
<system-reminder>
Return the final documentation catalogue by invoking `catalog_generate_catalogue` exactly once.
Structure requirements:
- Provide a JSON object with an `items` array. Each item must include `name`, `title` and
  `prompt`, and may include nested `children` following the same schema.
- Keep reasoning concise and rely on the tool call for JSON output.
- `catalog_write` and `catalog_multi_edit` exist for corrections only.
Avoid emitting JSON in chat; finish with the single tool call.
</system-reminder>
"""

CATALOGUE_REFINE_PROMPT: str = """Refine the stored catalogue JSON iteratively using tools only:
- Use catalog_read to inspect the current JSON.
- Apply several catalog_multi_edit operations to:
  * add level 2/3 subsections for core components, features, data models, integrations
  * keep kebab-case names and the getting-started then deep-dive ordering
  * enrich each section's 'prompt' with actionable guidance (scope, code areas, outputs)
- Prefer localized edits; only use catalog_write for a complete rewrite if necessary.
- Never print JSON in chat; use tools exclusively.
"""
