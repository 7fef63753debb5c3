# wafplane/compiler/render.py
from __future__ import annotations

import re
from typing import Iterable, List

from wafplane.compiler.ir import Arg, Blank, Block, Comment, ConfigFile, Directive, Node, Raw

INDENT = "\t"

# caracteres que obligan a usar comillas en un argumento
_NEEDS_QUOTE_RE = re.compile(r"[\s;{}\"'()\\#]")
_REGEX_META_RE = re.compile(r"([\\.^$|?*+()\[\]{}])")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

TOKEN_MAX_ITEMS = 64
TOKEN_MAX_LEN = 128


def quote_arg(value: str) -> str:
    if value and not _NEEDS_QUOTE_RE.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def escape_regex_literal(token: str) -> str:
    """Escapa un token para match literal dentro de una regex PCRE."""
    return _REGEX_META_RE.sub(r"\\\1", token)


def split_tokens(
    text: str,
    *,
    max_items: int = TOKEN_MAX_ITEMS,
    max_len: int = TOKEN_MAX_LEN,
) -> List[str]:
    """
    Lista de tokens de texto libre (una por linea):
    trim, sin vacios, sin duplicados (case-insensitive), tope de items y largo.
    """
    out: List[str] = []
    seen = set()
    for raw in (text or "").replace("\r\n", "\n").split("\n"):
        tok = _CONTROL_RE.sub("", raw).strip()
        if not tok or len(tok) > max_len:
            continue
        key = tok.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(tok)
        if len(out) >= max_items:
            break
    return out


def alternation_pattern(tokens: Iterable[str]) -> str:
    """(?:tok1|tok2|...) con cada token escapado."""
    return "(?:" + "|".join(escape_regex_literal(t) for t in tokens) + ")"


def _arg(a: Arg) -> str:
    if isinstance(a, Raw):
        return a.text
    if isinstance(a, bool):
        return "1" if a else "0"
    if isinstance(a, int):
        return str(a)
    return quote_arg(str(a))


def _head(name: str, args) -> str:
    parts = [name] + [_arg(a) for a in args]
    return " ".join(parts)


def _render_nodes(nodes: Iterable[Node], depth: int, out: List[str]) -> None:
    pad = INDENT * depth
    for n in nodes:
        if isinstance(n, Blank):
            out.append("")
        elif isinstance(n, Comment):
            for line in str(n.text).splitlines() or [""]:
                out.append(f"{pad}# {line}".rstrip())
        elif isinstance(n, Directive):
            out.append(f"{pad}{_head(n.name, n.args)};")
        elif isinstance(n, Block):
            out.append(f"{pad}{_head(n.name, n.args)} {{")
            _render_nodes(n.body, depth + 1, out)
            out.append(f"{pad}}}")
        else:
            raise TypeError(f"nodo desconocido: {type(n).__name__}")


def render_nodes(nodes: Iterable[Node]) -> str:
    out: List[str] = []
    _render_nodes(nodes, 0, out)
    # sin lineas en blanco al final, siempre newline final
    while out and out[-1] == "":
        out.pop()
    return "\n".join(out) + "\n"


def render_file(cfg: ConfigFile) -> str:
    return render_nodes(cfg.nodes)
