"""Minimal HTML syntax tree plus conversions from/to HTML and SVG markup."""
from __future__ import annotations

import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from bs4 import BeautifulSoup
from bs4.dammit import EntitySubstitution
from bs4.element import Comment as SoupComment
from bs4.element import Doctype as SoupDoctype
from bs4.element import NavigableString, Tag
from bs4.formatter import HTMLFormatter

_NS_PREFIXES = {
    "http://www.w3.org/1999/xlink": "xlink",
    "http://www.w3.org/XML/1998/namespace": "xml",
    "http://www.w3.org/2000/xmlns/": "xmlns",
}

# Minimal escaping, void elements without a closing slash, empty attributes kept as ="".
_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml, void_element_close_prefix=None
)


@dataclass
class Text:
    value: str
    type: str = field(default="text", init=False)


@dataclass
class Comment:
    value: str
    type: str = field(default="comment", init=False)


@dataclass
class Doctype:
    value: str = "html"
    type: str = field(default="doctype", init=False)


@dataclass
class Element:
    tag_name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    children: List["Node"] = field(default_factory=list)
    position: Optional[Tuple[int, int]] = field(default=None, compare=False, repr=False)
    type: str = field(default="element", init=False)


@dataclass
class Root:
    children: List["Node"] = field(default_factory=list)
    type: str = field(default="root", init=False)


Node = Union[Element, Text, Comment, Doctype]
Parent = Union[Root, Element]


def is_element(node: object, tag_name: Optional[str] = None) -> bool:
    if not isinstance(node, Element):
        return False
    return tag_name is None or node.tag_name == tag_name


def index_of(children: List[Node], node: Node) -> int:
    """Locate ``node`` in ``children`` by identity."""
    for idx, child in enumerate(children):
        if child is node:
            return idx
    raise ValueError("node is not a child of the given parent")


def visit_parents(tree: Parent, visitor: Callable[[Element, List[Parent]], None]) -> None:
    """Call ``visitor(element, ancestors)`` for every element in pre-order.

    ``ancestors`` runs from the root down to the element's parent. The
    list handed to the visitor is a fresh copy, so callers may keep it.
    The tree must not be mutated while walking.
    """

    def _walk(parent: Parent, ancestors: List[Parent]) -> None:
        chain = ancestors + [parent]
        for child in parent.children:
            if isinstance(child, Element):
                visitor(child, list(chain))
                _walk(child, chain)

    _walk(tree, [])


def iter_text(node: Union[Node, Root]) -> Iterator[str]:
    if isinstance(node, Text):
        yield node.value
    elif isinstance(node, (Element, Root)):
        for child in node.children:
            yield from iter_text(child)


def to_text(node: Union[Node, Root]) -> str:
    """Concatenate descendant text in document order, whitespace untouched."""
    return "".join(iter_text(node))


def from_html(markup: str) -> Root:
    """Parse a full HTML document into a tree.

    Parsing follows the HTML5 algorithm: fragments are wrapped in
    ``html``/``head``/``body``, the newline right after ``<pre>`` is dropped,
    and every element records ``position`` as ``(line, column)`` of the end
    of its start tag.
    """
    soup = BeautifulSoup(markup, "html5lib")
    return Root(children=[_from_soup(child) for child in soup.contents])


def _from_soup(node) -> Node:
    if isinstance(node, Tag):
        properties: Dict[str, Any] = {}
        for key, value in node.attrs.items():
            properties[str(key)] = list(value) if isinstance(value, list) else value
        position = None
        line = getattr(node, "sourceline", None)
        if line is not None:
            position = (line, (getattr(node, "sourcepos", None) or 0) + 1)
        return Element(
            tag_name=node.name,
            properties=properties,
            children=[_from_soup(child) for child in node.contents],
            position=position,
        )
    if isinstance(node, SoupDoctype):
        return Doctype(str(node))
    if isinstance(node, SoupComment):
        return Comment(str(node))
    return Text(str(node))


def to_html(tree: Union[Root, Node]) -> str:
    """Serialize a tree back to HTML."""
    soup = BeautifulSoup("", "html.parser")
    nodes = tree.children if isinstance(tree, Root) else [tree]
    for node in nodes:
        soup.append(_to_soup(soup, node))
    return soup.decode(formatter=_FORMATTER)


def _to_soup(soup: BeautifulSoup, node: Node):
    if isinstance(node, Element):
        attrs: Dict[str, str] = {}
        for key, value in node.properties.items():
            rendered = _attribute_value(value)
            if rendered is not None:
                attrs[key] = rendered
        tag = soup.new_tag(node.tag_name, attrs=attrs)
        for child in node.children:
            tag.append(_to_soup(soup, child))
        return tag
    if isinstance(node, Doctype):
        return SoupDoctype(node.value)
    if isinstance(node, Comment):
        return SoupComment(node.value)
    return NavigableString(node.value)


def _attribute_value(value: Any) -> Optional[str]:
    if value is None or value is False:
        return None
    if value is True:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(item) for item in value)
    if isinstance(value, float):
        if math.isclose(value, round(value)):
            return str(int(round(value)))
        return repr(value)
    return str(value)


def from_svg(svg: str) -> Element:
    """Parse an SVG document and return its root as an element node."""
    return _from_etree(ET.fromstring(svg))


def _from_etree(node: ET.Element) -> Element:
    properties: Dict[str, Any] = {}
    for key, value in node.attrib.items():
        properties[_qualified_attr(key)] = value
    children: List[Node] = []
    if node.text:
        children.append(Text(node.text))
    for child in node:
        if isinstance(child.tag, str):
            children.append(_from_etree(child))
        if child.tail:
            children.append(Text(child.tail))
    return Element(tag_name=_local_name(node.tag), properties=properties, children=children)


def _qualified_attr(key: str) -> str:
    if not key.startswith("{"):
        return key
    ns, local = key[1:].split("}", 1)
    prefix = _NS_PREFIXES.get(ns)
    return f"{prefix}:{local}" if prefix else local


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


__all__ = [
    "Comment",
    "Doctype",
    "Element",
    "Node",
    "Parent",
    "Root",
    "Text",
    "from_html",
    "from_svg",
    "index_of",
    "is_element",
    "to_html",
    "to_text",
    "visit_parents",
]
