# wafplane/compiler/ir.py
"""
Representacion intermedia de la config del gateway.

Los builders arman arboles de nodos inmutables; `render.render_file` es el
unico lugar que los convierte a texto (indentacion, quoting, escapes).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple, Union


@dataclass(frozen=True)
class Raw:
    """Argumento que se emite tal cual (ej. la condicion de un `if`)."""
    text: str


Arg = Union[str, int, Raw]


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class Blank:
    pass


@dataclass(frozen=True)
class Directive:
    name: str
    args: Tuple[Arg, ...] = ()


@dataclass(frozen=True)
class Block:
    name: str
    args: Tuple[Arg, ...] = ()
    body: Tuple["Node", ...] = field(default_factory=tuple)


Node = Union[Comment, Blank, Directive, Block]


@dataclass(frozen=True)
class ConfigFile:
    name: str
    nodes: Tuple[Node, ...]


def directive(name: str, *args: Arg) -> Directive:
    return Directive(name=name, args=tuple(args))


def block(name: str, *args: Arg, body=()) -> Block:
    return Block(name=name, args=tuple(args), body=tuple(body))


def if_block(condition: str, *body: Node) -> Block:
    return Block(name="if", args=(Raw(f"({condition})"),), body=tuple(body))


def set_var(var: str, value: Arg) -> Directive:
    return Directive(name="set", args=(Raw(f"${var}"), value))
