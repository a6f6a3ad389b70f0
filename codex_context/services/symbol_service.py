"""Symbol, import and reference extraction for JavaScript and TypeScript code."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Protocol

from ..models import ImportRef, SymbolRef

if TYPE_CHECKING:
    from tree_sitter import Node

NAME_NODE_TYPES = ("identifier", "type_identifier", "property_identifier")

# node type -> symbol kind for declaration-like nodes
DECLARATION_KINDS: dict[str, str] = {
    "class_declaration": "class",
    "abstract_class_declaration": "class",
    "class": "class",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "enum_declaration": "enum",
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "method_definition": "method",
    "method_signature": "method",
    "abstract_method_signature": "method",
    "internal_module": "namespace",
    "module": "namespace",
}
SCOPE_KINDS = frozenset({"class", "interface", "namespace"})

KEYWORDS = frozenset(
    {
        "if", "else", "for", "while", "do", "switch", "case", "return", "function",
        "class", "new", "typeof", "instanceof", "catch", "try", "finally", "throw",
        "await", "async", "yield", "super", "this", "import", "export", "require",
        "const", "let", "var", "void", "delete", "in", "of", "constructor",
    }
)


class SymbolExtractor(Protocol):
    """Capability interface for symbol extraction strategies."""

    def extract(self, source: object, start_line: int = 1) -> list[SymbolRef]:
        ...


def node_name(node: "Node") -> str | None:
    """Return the declared name of *node*, preferring its ``name`` field."""
    named = node.child_by_field_name("name")
    if named is not None and named.text:
        return named.text.decode("utf-8", errors="replace")
    for child in node.children:
        if child.type in NAME_NODE_TYPES and child.text:
            return child.text.decode("utf-8", errors="replace")
    return None


def _arrow_binding(node: "Node") -> str | None:
    if node.type != "variable_declarator":
        return None
    value = node.child_by_field_name("value")
    if value is None or value.type not in ("arrow_function", "function_expression", "function"):
        return None
    return node_name(node)


class TreeSymbolExtractor:
    """Collect declarations from a syntax sub-tree.

    The walk keeps an explicit stack of ``(node, scope)`` pairs. ``scope`` is an
    immutable tuple, so every child receives its own copy of the enclosing
    names and no traversal state is shared between siblings.
    """

    def extract(self, source: "Node", start_line: int = 1) -> list[SymbolRef]:
        base_row = source.start_point[0]
        symbols: list[SymbolRef] = []
        stack: list[tuple["Node", tuple[str, ...]]] = [(source, ())]
        while stack:
            node, scope = stack.pop()
            child_scope = scope
            kind = DECLARATION_KINDS.get(node.type)
            name: str | None = None
            if kind is not None:
                name = node_name(node)
            else:
                name = _arrow_binding(node)
                if name is not None:
                    kind = "function"
            if kind is not None and name:
                line = start_line + node.start_point[0] - base_row
                parent = ".".join(scope) if scope else None
                symbols.append(SymbolRef(name=name, kind=kind, line=line, parent=parent))
                if kind in SCOPE_KINDS:
                    child_scope = scope + (name,)
            for child in reversed(node.named_children):
                stack.append((child, child_scope))
        return symbols


_CLASS_RE = re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)")
_INTERFACE_RE = re.compile(r"^\s*(?:export\s+)?interface\s+(\w+)")
_TYPE_RE = re.compile(r"^\s*(?:export\s+)?type\s+(\w+)\s*[=<]")
_FUNCTION_RE = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)"
)
_METHOD_RE = re.compile(
    r"^\s*(?:public|private|protected)\s+(?:static\s+)?(?:async\s+)?(\w+)\s*[(<]"
)
_CONST_RE = re.compile(r"^\s*(?:export\s+)?const\s+(\w+)")
_CONTROL_RE = re.compile(r"\b(?:if|for|while)\b")


class PatternSymbolExtractor:
    """Line-oriented regex extraction used when no tree is available."""

    def extract(self, source: str, start_line: int = 1) -> list[SymbolRef]:
        symbols: list[SymbolRef] = []
        for offset, line in enumerate(source.split("\n")):
            line_no = start_line + offset
            for pattern, kind in (
                (_CLASS_RE, "class"),
                (_INTERFACE_RE, "interface"),
                (_TYPE_RE, "type"),
                (_FUNCTION_RE, "function"),
            ):
                match = pattern.match(line)
                if match:
                    symbols.append(SymbolRef(name=match.group(1), kind=kind, line=line_no))
                    break
            else:
                method = _METHOD_RE.match(line)
                if method and not _CONTROL_RE.search(line):
                    symbols.append(SymbolRef(name=method.group(1), kind="method", line=line_no))
                    continue
                const = _CONST_RE.match(line)
                if const:
                    symbols.append(SymbolRef(name=const.group(1), kind="constant", line=line_no))
        return symbols


class FallbackSymbolExtractor:
    """Run *primary*; consult *secondary* only when it finds nothing."""

    def __init__(self, primary: SymbolExtractor, secondary: SymbolExtractor) -> None:
        self.primary = primary
        self.secondary = secondary

    def extract(
        self,
        source: object,
        start_line: int = 1,
        *,
        text: str | None = None,
    ) -> list[SymbolRef]:
        symbols = self.primary.extract(source, start_line) if source is not None else []
        if symbols:
            return symbols
        fallback_source = text if text is not None else source
        return self.secondary.extract(fallback_source, start_line)


_IMPORT_FROM_RE = re.compile(
    r"^\s*import\s+(?:type\s+)?([\w$*{}\s,]+?)\s+from\s+['\"]([^'\"]+)['\"]", re.MULTILINE
)
_IMPORT_SIDE_EFFECT_RE = re.compile(r"^\s*import\s+['\"]([^'\"]+)['\"]", re.MULTILINE)
_EXPORT_FROM_RE = re.compile(
    r"^\s*export\s+(?:type\s+)?([\w$*{}\s,]+?)\s+from\s+['\"]([^'\"]+)['\"]", re.MULTILINE
)
_REQUIRE_RE = re.compile(
    r"(?:(?:const|let|var)\s+(\{[^}]*\}|\w+)\s*=\s*)?require\(\s*['\"]([^'\"]+)['\"]\s*\)"
)
_CALL_RE = re.compile(r"\b([A-Za-z_$][\w$]*)\s*\(")


def _line_of(text: str, index: int) -> int:
    return text.count("\n", 0, index) + 1


def _imported_names(clause: str) -> tuple[str, ...]:
    names: list[str] = []
    cleaned = clause.replace("{", ",").replace("}", ",")
    for raw in cleaned.split(","):
        token = raw.strip()
        if not token or token == "*":
            continue
        if " as " in token:
            token = token.split(" as ")[-1].strip()
        token = token.replace("type ", "").replace("* ", "").strip()
        if re.fullmatch(r"[A-Za-z_$][\w$]*", token):
            names.append(token)
    return tuple(names)


def extract_imports(text: str, start_line: int = 1) -> list[ImportRef]:
    """Return ES module imports, re-exports and ``require`` calls found in *text*."""

    found: list[tuple[int, ImportRef]] = []
    for pattern in (_IMPORT_FROM_RE, _EXPORT_FROM_RE):
        for match in pattern.finditer(text):
            line = start_line + _line_of(text, match.start(2)) - 1
            found.append(
                (match.start(), ImportRef(match.group(2), _imported_names(match.group(1)), line))
            )
    for match in _IMPORT_SIDE_EFFECT_RE.finditer(text):
        line = start_line + _line_of(text, match.start(1)) - 1
        found.append((match.start(), ImportRef(match.group(1), (), line)))
    for match in _REQUIRE_RE.finditer(text):
        line = start_line + _line_of(text, match.start(2)) - 1
        names = _imported_names(match.group(1) or "")
        found.append((match.start(), ImportRef(match.group(2), names, line)))
    found.sort(key=lambda item: item[0])
    return [item for _, item in found]


def extract_references(text: str, imports: Iterable[ImportRef] = ()) -> list[str]:
    """Return called identifiers and imported names, without keywords, in first-seen order."""

    seen: dict[str, None] = {}
    for match in _CALL_RE.finditer(text):
        name = match.group(1)
        if name not in KEYWORDS:
            seen.setdefault(name, None)
    for item in imports:
        for name in item.names:
            if name not in KEYWORDS:
                seen.setdefault(name, None)
    return list(seen)


def default_symbol_extractor() -> FallbackSymbolExtractor:
    return FallbackSymbolExtractor(TreeSymbolExtractor(), PatternSymbolExtractor())
