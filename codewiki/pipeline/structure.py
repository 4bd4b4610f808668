"""
Structural extraction capabilities.

A structural extractor turns the source of one file into spans that follow
function/class boundaries. Extractors are registered per language; files in a
language without an extractor (or whose extractor raises) are chunked with
fixed windows by the caller.

Python is parsed with ``ast``. Every other registered language is parsed with
tree-sitter grammars from ``tree-sitter-language-pack``, and spans follow the
real extent of the top-level definition nodes.

Spans cover the whole file: code between two definitions (imports, module
constants, preambles) becomes a span without symbol names.
"""

import ast
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, FrozenSet, List, Optional

from tree_sitter import Language, Node, Parser
from tree_sitter_language_pack import get_language

logger = logging.getLogger(__name__)


@dataclass
class Span:
    """A 1-indexed, inclusive line range with the symbols it defines."""

    line_start: int
    line_end: int
    symbol_names: List[str] = field(default_factory=list)


StructureExtractor = Callable[[str], List[Span]]

# Extractor registry
_extractors: Dict[str, StructureExtractor] = {}


def register_extractor(language: str):
    """Decorator to register a structural extractor for a language."""
    def decorator(func: StructureExtractor):
        _extractors[language] = func
        return func
    return decorator


def get_extractor(language: str) -> Optional[StructureExtractor]:
    """Get the extractor for a language."""
    return _extractors.get(language)


def registered_languages() -> List[str]:
    return sorted(_extractors)


def split_lines(text: str) -> List[str]:
    """
    Split source into lines on ``\\n`` only.

    ``str.splitlines`` also breaks on form feeds, vertical tabs and Unicode
    separators, which parsers and editors treat as ordinary characters.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _fill_gaps(definitions: List[Span], total_lines: int) -> List[Span]:
    """Interleave definition spans with spans for the code between them."""
    spans: List[Span] = []
    cursor = 1
    for span in sorted(definitions, key=lambda s: s.line_start):
        if span.line_start < cursor:
            # Overlapping definition; keep the outer one
            continue
        if span.line_start > cursor:
            spans.append(Span(cursor, span.line_start - 1))
        spans.append(span)
        cursor = span.line_end + 1
    if cursor <= total_lines:
        spans.append(Span(cursor, total_lines))
    return spans


def _dedupe(names: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for name in names:
        if name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


@register_extractor("python")
def extract_python(source: str) -> List[Span]:
    """
    Split Python source at top-level function and class definitions.

    Decorators belong to the definition they decorate. Methods are reported as
    ``Class.method`` after the class name.

    Raises:
        SyntaxError: if the file does not parse.
    """
    tree = ast.parse(source)
    total_lines = len(split_lines(source))

    definitions: List[Span] = []
    for node in tree.body:
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            continue
        start = min([node.lineno] + [d.lineno for d in node.decorator_list])
        end = node.end_lineno or node.lineno
        names = [node.name]
        if isinstance(node, ast.ClassDef):
            for child in node.body:
                if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    names.append(f"{node.name}.{child.name}")
        definitions.append(Span(start, end, _dedupe(names)))

    return _fill_gaps(definitions, total_lines)


# =============================================================================
# Tree-sitter extractors
# =============================================================================


@dataclass(frozen=True)
class TreeSitterLanguage:
    """
    How definitions look in one tree-sitter grammar.

    Attributes:
        grammar: Grammar name in tree-sitter-language-pack
        definitions: Node types that define a named symbol
        containers: Definition types whose members are reported as ``Outer.member``
        leading: Sibling node types that belong to the definition after them
    """

    grammar: str
    definitions: FrozenSet[str]
    containers: FrozenSet[str] = frozenset()
    leading: FrozenSet[str] = frozenset()


# ``const f = () => {}`` defines ``f`` when the declarator's value is one of these
_FUNCTION_VALUES = frozenset({
    "arrow_function", "function", "function_expression", "generator_function",
})

_JS_DEFINITIONS = frozenset({
    "function_declaration", "generator_function_declaration", "class_declaration",
    "class", "method_definition", "variable_declarator",
})
_TS_DEFINITIONS = _JS_DEFINITIONS | {
    "abstract_class_declaration", "interface_declaration", "type_alias_declaration",
    "enum_declaration", "internal_module", "function_signature",
}
_TS_CONTAINERS = frozenset({
    "class_declaration", "class", "abstract_class_declaration", "interface_declaration",
    "internal_module",
})

TREE_SITTER_LANGUAGES: Dict[str, TreeSitterLanguage] = {
    "javascript": TreeSitterLanguage(
        grammar="javascript",
        definitions=_JS_DEFINITIONS,
        containers=frozenset({"class_declaration", "class"}),
    ),
    "typescript": TreeSitterLanguage(
        grammar="typescript",
        definitions=_TS_DEFINITIONS,
        containers=_TS_CONTAINERS,
    ),
    "tsx": TreeSitterLanguage(
        grammar="tsx",
        definitions=_TS_DEFINITIONS,
        containers=_TS_CONTAINERS,
    ),
    "go": TreeSitterLanguage(
        grammar="go",
        definitions=frozenset({"function_declaration", "method_declaration", "type_declaration"}),
    ),
    "rust": TreeSitterLanguage(
        grammar="rust",
        definitions=frozenset({
            "function_item", "struct_item", "enum_item", "union_item", "trait_item",
            "impl_item", "mod_item", "macro_definition",
        }),
        containers=frozenset({"impl_item", "trait_item", "mod_item"}),
        leading=frozenset({"attribute_item"}),
    ),
    "ruby": TreeSitterLanguage(
        grammar="ruby",
        definitions=frozenset({"method", "singleton_method", "class", "module"}),
        containers=frozenset({"class", "module"}),
    ),
    "java": TreeSitterLanguage(
        grammar="java",
        definitions=frozenset({
            "class_declaration", "interface_declaration", "enum_declaration",
            "record_declaration", "annotation_type_declaration", "method_declaration",
            "constructor_declaration",
        }),
        containers=frozenset({
            "class_declaration", "interface_declaration", "enum_declaration", "record_declaration",
        }),
    ),
    "kotlin": TreeSitterLanguage(
        grammar="kotlin",
        definitions=frozenset({"class_declaration", "object_declaration", "function_declaration"}),
        containers=frozenset({"class_declaration", "object_declaration"}),
    ),
    "php": TreeSitterLanguage(
        grammar="php",
        definitions=frozenset({
            "function_definition", "class_declaration", "interface_declaration",
            "trait_declaration", "enum_declaration", "method_declaration",
        }),
        containers=frozenset({
            "class_declaration", "interface_declaration", "trait_declaration", "enum_declaration",
        }),
    ),
}


@lru_cache(maxsize=None)
def _load_language(grammar: str) -> Language:
    return get_language(grammar)


def _text(node: Node) -> str:
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _node_name(node: Node) -> Optional[str]:
    """Name of a definition node, or None for anonymous ones."""
    for field_name in ("name", "type"):
        child = node.child_by_field_name(field_name)
        if child is not None:
            return _text(child)
    for child in node.named_children:
        if child.type.endswith("identifier") or child.type == "constant":
            return _text(child)
        if child.type.endswith("_spec"):
            # Go: type_declaration -> type_spec -> name
            return _node_name(child)
    return None


def _is_definition(node: Node, spec: TreeSitterLanguage) -> bool:
    if node.type not in spec.definitions:
        return False
    if node.type == "variable_declarator":
        value = node.child_by_field_name("value")
        return value is not None and value.type in _FUNCTION_VALUES
    return True


def _symbol_names(node: Node, spec: TreeSitterLanguage) -> List[str]:
    """Qualified names defined under ``node``, in source order."""
    names: List[str] = []
    stack = [(node, "")]
    while stack:
        current, prefix = stack.pop()
        child_prefix = prefix
        if _is_definition(current, spec):
            name = _node_name(current)
            if name:
                qualified = f"{prefix}{name}"
                names.append(qualified)
                child_prefix = f"{qualified}."
            if current.type not in spec.containers:
                # Function bodies are not searched for nested definitions
                continue
        stack.extend((child, child_prefix) for child in reversed(current.named_children))
    return _dedupe(names)


def _last_line(node: Node) -> int:
    row, column = node.end_point[0], node.end_point[1]
    # A node ending at column 0 ends on the previous line
    return max(row + 1 if column > 0 else row, node.start_point[0] + 1)


def tree_sitter_extractor(spec: TreeSitterLanguage) -> StructureExtractor:
    """Build an extractor that splits at top-level definition nodes."""
    def extract(source: str) -> List[Span]:
        total_lines = len(split_lines(source))
        parser = Parser(_load_language(spec.grammar))
        tree = parser.parse(source.replace("\r\n", "\n").encode("utf-8"))

        definitions: List[Span] = []
        leading_start: Optional[int] = None
        for child in tree.root_node.named_children:
            start = child.start_point[0] + 1
            if child.type in spec.leading:
                leading_start = leading_start or start
                continue
            names = _symbol_names(child, spec)
            if names:
                definitions.append(
                    Span(leading_start or start, min(_last_line(child), total_lines), names)
                )
            leading_start = None

        if tree.root_node.has_error:
            logger.debug(f"{spec.grammar} source parsed with errors; spans may be partial")
        return _fill_gaps(definitions, total_lines)

    return extract


for _language, _spec in TREE_SITTER_LANGUAGES.items():
    register_extractor(_language)(tree_sitter_extractor(_spec))
