"""Prompt templates and helpers for generation, retry and repair requests."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .models.registry import ModelProfile, ModelTier
from .protocol.anchors import locate_line_index
from .tools.assets import asset_placeholder, is_asset_filename, is_encoded_asset

MAX_FILE_CONTEXT_CHARS = 30000
FILE_CONTEXT_OVERHEAD = 32
EXCERPT_LIMIT = 1200
ESSENTIAL_FILES: tuple[str, ...] = ("index.html", "index.tsx", "App.tsx", "input.css", "tailwind.config.js")

SYSTEM_PROMPT = """You are an expert React engineer working on a small offline web app.

GOAL
Build a high-quality, offline-ready App.
- Stack: React 18, Vite, Tailwind CSS v3.
- NO external CDNs (fonts/scripts must be local or omitted).

OUTPUT FORMAT RULES
1. You must output VALID MARKER BLOCKS for all code changes.
2. Do not include diffs or explanations outside the blocks if possible.
3. Never output <tool_call>, <toolcall>, <tool>, <function_call>, or any tool syntax.
4. Do not use <details>, <summary>, or any HTML wrappers.
5. Do not use <patch: ...> or <function=...> wrappers. Use ONLY:
   <!-- filename: path/to/file.ext --> OR <!-- patch: path/to/file.ext -->
6. Single response mode: no prose outside marker blocks, no duplicate repeated patch blocks.

MODE A: CREATE NEW FILE
Use this for files not yet in [PROJECT MAP].
Filename blocks require fenced code.
<!-- filename: path/to/file.ext -->
```ext
...full content...
```

MODE B: PATCH EXISTING FILE
Use this for files found in [PROJECT MAP].
Patch blocks use XML ops only (no fenced wrapper required).
<!-- patch: path/to/file.ext -->
<replace>
  <find>
    ...exact code snippet to replace (3-10 lines)...
  </find>
  <with>
    ...new code...
  </with>
</replace>

<insert_after>
  <find>...unique anchor...</find>
  <with>...content to insert...</with>
</insert_after>

<delete>
  <find>...content to delete...</find>
</delete>

CRITICAL:
- The <find> block must match the existing file EXACTLY (ignoring indentation).
- Do not reinvent file paths. Use the ones provided.
- Do not create a new top-level src/ directory unless explicitly requested.
- Never use CDN scripts/styles at runtime.
- For 3D requests, prefer `import * as THREE from 'three'`.
- If you cannot produce a valid patch, output ONE valid <!-- filename: App.tsx --> fenced block as a safe fallback.
- For typical feature requests, modify ONLY App.tsx unless asked otherwise.
- Do not touch index.html, input.css, tailwind.config.js unless the request explicitly asks for it.
"""

FORMAT_CONTRACT = """[FORMAT CONTRACT]
- Return only marker blocks.
- For existing files, use <!-- patch: file --> with <replace>/<find>/<with>.
- For new files, use <!-- filename: file --> with fenced code.
- Do not output tool wrappers, prose-only responses, or markdown lists outside blocks.
- Never use CDN tags/scripts for dependencies.
- For 3D, use local dependency import: `import * as THREE from 'three'`.
- First non-whitespace token must start with an HTML marker block."""

UPDATE_MODE_PREFIX = """UPDATE_MODE_ACTIVE:
- For EXISTING files in PROJECT MAP, prefer <!-- patch: ... -->.
- If patch ops are not possible, you may output full file content using <!-- filename: ... -->.
- Never output <tool_call>, <toolcall>, <tool>, <function_call>, or any tool syntax. \
If you feel you must, rewrite as plain text without any tool wrapper tags.
- Patch ops MUST follow this format:
  <replace><find>snippet</find><with>new code</with></replace>


"""

CANONICAL_EXAMPLE = """Canonical valid output example:
<!-- filename: App.tsx -->
```tsx
import React from 'react';

const App: React.FC = () => <div>Hello</div>;

export default App;
```"""

_SHARED_ADDENDUM_RULES = (
    "- If 3D is requested, use local dependency imports only: `import * as THREE from 'three'`.",
    "- Never use CDN tags or `<script src=...>` for three.js.",
)
_CLOSING_ADDENDUM_RULES = (
    "- Never output <tool_call>, <toolcall>, <tool>, or <function_call> wrappers.",
    "- First non-whitespace token must start with an HTML marker block.",
)

_ADAPTIVE_RULES: dict[ModelTier, tuple[str, tuple[str, ...]]] = {
    ModelTier.SMALL: (
        "[ADAPTIVE MODE: SMALL MODEL]",
        (
            "- Keep changes minimal and deterministic.",
            "- Prefer editing exactly one file unless wiring is explicitly broken.",
            "- For UI/game requests, prefer replacing full App.tsx in one valid block.",
            "- Avoid speculative multi-file refactors.",
            "- Do not invent Tailwind utilities outside common defaults; use inline style fallback for uncommon layout needs.",
            *_SHARED_ADDENDUM_RULES,
            "- Output must be parser-safe and concise.",
        ),
    ),
    ModelTier.LARGE: (
        "[ADAPTIVE MODE: LARGE MODEL]",
        (
            "- You may use multi-file edits when required, but keep output parser-safe and deterministic.",
            *_SHARED_ADDENDUM_RULES,
        ),
    ),
    ModelTier.UNKNOWN: (
        "[ADAPTIVE MODE: UNKNOWN MODEL SIZE]",
        (
            "- Assume constrained reasoning budget.",
            "- Keep changes focused; prefer single-file deterministic edits when possible.",
            "- Prioritize strict output format compliance over creativity.",
            *_SHARED_ADDENDUM_RULES,
        ),
    ),
}

_EDIT_HINTS = (
    "- Prefer updating App.tsx first for UI/game tasks.",
    "- Keep index.html, input.css, tailwind.config.js unchanged unless explicitly requested.",
    "- Use existing paths from the map exactly.",
)

_FIND_SNIPPET_RE = re.compile(r"<find>([\s\S]*?)</find>", re.IGNORECASE)
_CANDIDATE_RE = re.compile(r"\(candidate:\s*([^)]+)\)", re.IGNORECASE)


def adaptive_addendum(tier: ModelTier) -> str:
    """System prompt addendum tuned to the model size tier."""
    header, rules = _ADAPTIVE_RULES[ModelTier(tier)]
    return "\n".join((header, *rules, *_CLOSING_ADDENDUM_RULES, CANONICAL_EXAMPLE))


def build_project_map_with_hints(files: Mapping[str, str]) -> str:
    names = "\n".join(f"- {name}" for name in sorted(files))
    return f"{names}\n\n[EDIT HINTS]\n" + "\n".join(_EDIT_HINTS)


def build_asset_section(asset_names: Sequence[str]) -> str:
    if not asset_names:
        return ""
    listing = "\n".join(f"- {name}" for name in sorted(asset_names))
    return (
        f"\n\n[ASSETS]\n{listing}\n"
        "- Prefer importing assets from these paths (e.g. import hero from './assets/hero.png')."
    )


def _context_text(name: str, content: str) -> str:
    text = content or ""
    if is_asset_filename(name) or is_encoded_asset(text):
        return asset_placeholder(name, text)
    return text


def render_file_contents(files: Mapping[str, str]) -> str:
    """Render files as ``<!-- filename: ... -->`` sections in name order."""
    return "\n\n".join(
        f"<!-- filename: {name} -->\n{_context_text(name, files[name])}" for name in sorted(files)
    )


def _context_score(name: str, content: str, prompt_lower: str) -> int:
    base = name.split("/")[-1]
    score = 0
    if name in ESSENTIAL_FILES:
        score += 100
    if name.lower() in prompt_lower or base.lower() in prompt_lower:
        score += 120
    if name.endswith((".tsx", ".ts")):
        score += 25
    if name.endswith((".css", ".html")):
        score += 15
    return score - len(content) // 1500


def build_file_context(files: Mapping[str, str], prompt: str, *, budget: int = MAX_FILE_CONTEXT_CHARS) -> str:
    """File contents for the model, trimmed to ``budget`` characters by priority.

    Over budget, files are ranked (essential files, files named in the prompt,
    code, then styles; smaller files first) and low-priority files are omitted
    with a ``[CONTEXT NOTE]``. The highest-ranked file is always included.
    """
    entries = {name: _context_text(name, content) for name, content in files.items()}
    total = sum(len(name) + len(text) + FILE_CONTEXT_OVERHEAD for name, text in entries.items())
    if total <= budget:
        return render_file_contents(entries)

    prompt_lower = prompt.lower()
    ranked = sorted(entries.items(), key=lambda item: -_context_score(item[0], item[1], prompt_lower))
    picked: dict[str, str] = {}
    used = 0
    for name, text in ranked:
        cost = len(name) + len(text) + FILE_CONTEXT_OVERHEAD
        if used + cost > budget and picked:
            continue
        picked[name] = text
        used += cost

    context = render_file_contents(picked)
    omitted = len(entries) - len(picked)
    if omitted > 0:
        return f"{context}\n\n[CONTEXT NOTE]\n- Omitted {omitted} low-priority files to fit context budget."
    return context


def optimize_history(history: Sequence[Mapping[str, str]]) -> list[dict[str, str]]:
    """Only the most recent user message is replayed to the model."""
    user_messages = [dict(message) for message in history if message.get("role") == "user"]
    return user_messages[-1:]


def build_user_content(
    prompt: str,
    files: Mapping[str, str],
    asset_names: Sequence[str] = (),
) -> str:
    file_context = (
        f"[PROJECT MAP]\n{build_project_map_with_hints(files)}{build_asset_section(asset_names)}"
        f"\n\n[FILE CONTENTS]\n{build_file_context(files, prompt)}"
    )
    return f"{FORMAT_CONTRACT}\n\n{file_context}\n\n[USER REQUEST]\n{prompt}"


def compose_messages(
    prompt: str,
    history: Sequence[Mapping[str, str]],
    files: Mapping[str, str],
    *,
    profile: ModelProfile,
    system_prompt: str = SYSTEM_PROMPT,
    asset_names: Sequence[str] = (),
) -> list[dict[str, str]]:
    """System prompt with adaptive addendum, the last user turn, then the request."""
    system = f"{system_prompt}\n\n{adaptive_addendum(profile.tier)}"
    return [
        {"role": "system", "content": system},
        *optimize_history(history),
        {"role": "user", "content": build_user_content(prompt, files, asset_names)},
    ]


@dataclass(slots=True)
class FailureEvidence:
    """Unresolved issues of an attempt, as fed back into follow-up prompts."""

    protocol_errors: list[str] = field(default_factory=list)
    patch_errors: list[str] = field(default_factory=list)
    validation_errors: list[str] = field(default_factory=list)
    runtime_errors: list[str] = field(default_factory=list)
    parser_hints: list[str] = field(default_factory=list)
    no_effective_changes: bool = False
    inline_no_op: bool = False


def build_second_attempt_prompt(base_prompt: str, evidence: FailureEvidence) -> str:
    parts = ["SECOND ATTEMPT REQUIRED", "Fix the previous failure and output only valid marker blocks."]
    if evidence.protocol_errors:
        parts.append("[PROTOCOL]\n" + "\n".join(evidence.protocol_errors))
    if evidence.patch_errors:
        parts.append("[PATCH]\n" + "\n".join(evidence.patch_errors))
    if evidence.validation_errors:
        parts.append("[VALIDATION]\n" + "\n".join(evidence.validation_errors))
    if evidence.runtime_errors:
        parts.append("[RUNTIME]\n" + "\n".join(evidence.runtime_errors))
    if evidence.parser_hints:
        parts.append("[PARSER_HINTS]\n" + "\n".join(evidence.parser_hints))
    if evidence.no_effective_changes:
        parts.append("[NO_EFFECTIVE_CHANGES]\nThe previous output produced no actual file diffs.")
    if evidence.inline_no_op:
        parts.append("[INLINE_ANCHOR_MISS]\nAnchors did not match exactly. Use precise current snippets.")
    parts.extend(
        [
            "STRICT OUTPUT",
            "- Existing files: <!-- patch: file --> with <replace><find><with>.",
            "- New files: <!-- filename: file --> fenced code.",
            "- No tool wrappers. No prose outside marker blocks.",
            "",
            f"[ORIGINAL REQUEST]\n{base_prompt}",
        ]
    )
    return "\n\n".join(parts)


def build_repair_from_evidence_prompt(user_request: str, evidence: FailureEvidence) -> str:
    """Prompt an operator can resend by hand after automatic repair gave up."""
    lines = [
        "REPAIR FROM EVIDENCE",
        "Use only valid marker blocks. Fix the issues below and keep successful existing behavior.",
    ]
    if evidence.protocol_errors:
        lines.append("[PROTOCOL]\n" + "\n".join(evidence.protocol_errors))
    if evidence.patch_errors:
        lines.append("[PATCH]\n" + "\n".join(evidence.patch_errors))
    if evidence.validation_errors:
        lines.append("[VALIDATION]\n" + "\n".join(evidence.validation_errors))
    if evidence.runtime_errors:
        lines.append("[RUNTIME]\n" + "\n".join(evidence.runtime_errors))
    if evidence.parser_hints:
        lines.append("[PARSER_HINTS]\n" + "\n".join(evidence.parser_hints))
    if evidence.no_effective_changes:
        lines.append("[NO_EFFECTIVE_CHANGES]\nPrevious response produced no real file diff.")
    if evidence.inline_no_op:
        lines.append("[INLINE_ANCHOR_MISS]\nAnchor matching failed. Use exact current snippets.")
    lines.extend(
        [
            "STRICT OUTPUT",
            "- Existing file edits: <!-- patch: file --> with <replace><find><with>.",
            "- New files: <!-- filename: file --> fenced source.",
            "- No prose outside marker blocks. No tool wrappers.",
            f"[ORIGINAL REQUEST]\n{user_request}",
        ]
    )
    return "\n\n".join(lines)


def extract_inline_find_snippet(text: str) -> str:
    match = _FIND_SNIPPET_RE.search(text or "")
    return match.group(1).strip() if match else ""


def extract_inline_candidate_file(failures: Sequence[str]) -> str:
    """File named by a ``(candidate: X)`` suffix in the first failure carrying one."""
    for failure in failures:
        match = _CANDIDATE_RE.search(failure)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return ""


def build_file_anchor_excerpt(content: str, find_snippet: str, context_lines: int = 3) -> str:
    """Lines around the first comment-insensitive match of ``find_snippet`` in ``content``."""
    if not content or not find_snippet:
        return ""
    span = len([line for line in find_snippet.split("\n") if line.strip()])
    if span == 0:
        return ""
    index = locate_line_index(content, find_snippet)
    if index is None:
        return ""
    source_lines = content.split("\n")
    start = max(0, index - context_lines)
    end = min(len(source_lines), index + span + context_lines)
    return "\n".join(source_lines[start:end])


def build_repair_prompt(
    evidence: FailureEvidence,
    *,
    validation_valid: bool,
    failed_patches: Sequence[str],
    model_text: str,
    source_files: Mapping[str, str],
    confidence: float,
    parser_stage: str,
    low_confidence: bool,
    auto_fixes: Sequence[str] = (),
) -> str:
    """Structured ``REPAIR REQUIRED`` prompt built from an attempt's evidence.

    Anchor misses include the literal ``find`` snippet and an excerpt of the
    candidate file around the best-guess match location.
    """
    prompt = "REPAIR REQUIRED:\n"
    if evidence.protocol_errors:
        prompt += "- [PROTOCOL]\n" + "\n".join(evidence.protocol_errors) + "\n"
    if evidence.patch_errors:
        prompt += "- [PATCH]\n" + "\n".join(evidence.patch_errors) + "\n"
    if not validation_valid:
        prompt += "- [VALIDATION]\n" + ", ".join(evidence.validation_errors) + "\n"
    if evidence.runtime_errors:
        prompt += "- [RUNTIME]\n" + "\n".join(evidence.runtime_errors) + "\n"
    if evidence.no_effective_changes:
        prompt += "- [NO_OP]\nParser reported edits, but resulting files are unchanged.\n"
    if evidence.inline_no_op:
        candidate_file = extract_inline_candidate_file(failed_patches) or "App.tsx"
        find_snippet = extract_inline_find_snippet(model_text)
        excerpt = build_file_anchor_excerpt(source_files.get(candidate_file) or "", find_snippet, 3)
        prompt += f"- [INLINE_ANCHOR]\ncandidate_file={candidate_file}\n"
        if find_snippet:
            prompt += f"find_snippet:\n{find_snippet}\n"
        if excerpt:
            prompt += f"file_excerpt:\n{excerpt}\n"
    if low_confidence or evidence.parser_hints:
        prompt += f"- [PARSER]\nconfidence={confidence:.2f} stage={parser_stage}\n"
        if evidence.parser_hints:
            prompt += "\n".join(evidence.parser_hints) + "\n"
    if auto_fixes:
        prompt += "- [AUTO_FIX]\n" + "\n".join(auto_fixes) + "\n"
    prompt += (
        "\nSTRICT OUTPUT:\n"
        "- Return only valid marker blocks.\n"
        "- Existing file: <!-- patch: file --> with <replace>/<find>/<with>.\n"
        "- New file: <!-- filename: file --> followed by fenced code.\n"
        "- No tool wrappers, no prose, no markdown lists outside blocks.\n"
    )
    return prompt


def make_excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    clean = (text or "").strip()
    if len(clean) <= limit:
        return clean
    return f"{clean[:limit]}\n... [truncated]"


__all__ = [
    "CANONICAL_EXAMPLE",
    "ESSENTIAL_FILES",
    "FORMAT_CONTRACT",
    "FailureEvidence",
    "MAX_FILE_CONTEXT_CHARS",
    "SYSTEM_PROMPT",
    "UPDATE_MODE_PREFIX",
    "adaptive_addendum",
    "build_asset_section",
    "build_file_anchor_excerpt",
    "build_file_context",
    "build_project_map_with_hints",
    "build_repair_from_evidence_prompt",
    "build_repair_prompt",
    "build_second_attempt_prompt",
    "build_user_content",
    "compose_messages",
    "extract_inline_candidate_file",
    "extract_inline_find_snippet",
    "make_excerpt",
    "optimize_history",
    "render_file_contents",
]
