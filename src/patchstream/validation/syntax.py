"""Parseability checks for TypeScript and JavaScript modules, backed by tree-sitter."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

TSX = "tsx"
TYPESCRIPT = "typescript"

_GRAMMAR_BY_EXTENSION = {
    ".tsx": TSX,
    ".jsx": TSX,
    ".js": TSX,
    ".mjs": TSX,
    ".cjs": TSX,
    ".ts": TYPESCRIPT,
    ".mts": TYPESCRIPT,
    ".cts": TYPESCRIPT,
}


@lru_cache(maxsize=None)
def _parser_for(grammar: str) -> Parser:
    if grammar == TYPESCRIPT:
        return Parser(Language(tree_sitter_typescript.language_typescript()))
    return Parser(Language(tree_sitter_typescript.language_tsx()))


def grammar_for(filename: str) -> Optional[str]:
    """Grammar name for ``filename``; plain ``.ts`` keeps ``<T>value`` casts legal."""
    lowered = filename.lower()
    for extension, grammar in _GRAMMAR_BY_EXTENSION.items():
        if lowered.endswith(extension):
            return grammar
    return None


def first_error_node(root: Node) -> Optional[Node]:
    """Depth-first search for the earliest ``ERROR`` or missing node."""
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return node
        if node.has_error:
            stack.extend(reversed(node.children))
    return None


def find_syntax_error(filename: str, source: str) -> Optional[str]:
    """Describe the first parse error in ``source``, or ``None`` when it parses cleanly.

    Files without a JavaScript-family extension are not checked.
    """
    grammar = grammar_for(filename)
    if grammar is None:
        return None
    data = source.encode("utf-8")
    tree = _parser_for(grammar).parse(data)
    if not tree.root_node.has_error:
        return None
    node = first_error_node(tree.root_node)
    if node is None:
        return "Source could not be parsed."
    row, column = node.start_point
    where = f"line {row + 1}, column {column + 1}"
    if node.is_missing:
        return f"Missing '{node.type}' at {where}."
    text = data[node.start_byte : node.end_byte].decode("utf-8", errors="replace").strip()
    token = text.splitlines()[0][:40] if text else ""
    if not token:
        return f"Unexpected end of input at {where}."
    return f"Unexpected '{token}' at {where}."


__all__ = ["TSX", "TYPESCRIPT", "find_syntax_error", "first_error_node", "grammar_for"]
