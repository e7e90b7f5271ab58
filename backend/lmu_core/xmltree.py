"""Generic XML decoding into a plain key/value tree.

The decoded tree follows a fixed convention so that it can be stored as JSON
and shipped between workers unchanged:

* attribute keys carry the ``@_`` prefix;
* text content of an element that also has attributes or children lives
  under ``#text``;
* an element with neither attributes nor children collapses to its text;
* repeated sibling elements collapse to an ordered list, singletons stay
  scalar.

Domain code never inspects that shape directly.  It goes through
:func:`as_list`, :func:`node_text`, :func:`node_attr` and :func:`child_text`,
which always hand back a list, a string or ``None``.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

ATTR_PREFIX = "@_"
TEXT_KEY = "#text"


def decode_xml(content: str | bytes) -> Dict[str, Any]:
    """Decode raw XML into ``{root_tag: tree}``.

    Raises ``ValueError`` when the payload is not well-formed XML.
    """

    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid XML document: {exc}") from exc
    return {root.tag: _element_to_value(root)}


def _element_to_value(element: ET.Element) -> Any:
    attrs = {f"{ATTR_PREFIX}{key}": value for key, value in element.attrib.items()}
    children = list(element)
    text = (element.text or "").strip()

    if not attrs and not children:
        return text

    node: Dict[str, Any] = dict(attrs)
    for child in children:
        value = _element_to_value(child)
        existing = node.get(child.tag)
        if child.tag not in node:
            node[child.tag] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            node[child.tag] = [existing, value]
    if text:
        node[TEXT_KEY] = text
    return node


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_node(value: Any) -> bool:
    return isinstance(value, dict)


def node_text(value: Any) -> str:
    """Return the text of a scalar or structured element ("" when absent)."""

    if value is None:
        return ""
    if isinstance(value, dict):
        text = value.get(TEXT_KEY)
        return "" if text is None else str(text)
    if isinstance(value, list):
        return node_text(value[0]) if value else ""
    return str(value)


def node_attr(value: Any, name: str) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    attr = value.get(f"{ATTR_PREFIX}{name}")
    return None if attr is None else str(attr)


def child_text(node: Any, key: str) -> str:
    """Text of the first ``key`` child of ``node``, stripped."""

    if not isinstance(node, dict):
        return ""
    return node_text(node.get(key)).strip()
