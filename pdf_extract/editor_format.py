"""
Editor Value Serializer
=======================
Renders DocumentNode lists as the rich-text editor's JSON value:
a list of element dicts ({"type": ..., "children": [...]}) whose leaves
are text dicts ({"text": ..., "bold": True, ...}).

Math becomes "equation" / "inline_equation" elements carrying the LaTeX
in "texExpression"; void elements keep a single empty text child.
"""

from __future__ import annotations

from typing import Sequence

from .models import (
    Blockquote,
    CodeBlock,
    Heading,
    HorizontalRule,
    ListBlock,
    MathBlock,
    MathInline,
    Paragraph,
    Table,
    Text,
)

EMPTY_CHILDREN = [{"text": ""}]


def _empty() -> list[dict]:
    return [dict(c) for c in EMPTY_CHILDREN]


def _leaves(children: Sequence) -> list[dict]:
    leaves: list[dict] = []
    for child in children:
        if isinstance(child, Text):
            leaf: dict = {"text": child.text}
            for mark in child.marks:
                leaf[mark] = True
            leaves.append(leaf)
        elif isinstance(child, MathInline):
            leaves.append({
                "type": "inline_equation",
                "texExpression": child.latex,
                "children": _empty(),
            })
    return leaves or _empty()


def _list_item(blocks: Sequence) -> dict:
    children: list[dict] = []
    for block in blocks:
        if isinstance(block, Paragraph):
            children.append({"type": "lic", "children": _leaves(block.children)})
        else:
            children.extend(_element(block))
    if not children:
        children = [{"type": "lic", "children": _empty()}]
    return {"type": "li", "children": children}


def _element(node) -> list[dict]:
    if isinstance(node, Heading):
        return [{"type": f"h{node.level}", "children": _leaves(node.children)}]
    if isinstance(node, Paragraph):
        return [{"type": "p", "children": _leaves(node.children)}]
    if isinstance(node, Blockquote):
        return [{"type": "blockquote", "children": _leaves(node.children)}]
    if isinstance(node, ListBlock):
        return [{
            "type": "ol" if node.ordered else "ul",
            "children": [_list_item(item) for item in node.items],
        }]
    if isinstance(node, Table):
        return [{
            "type": "table",
            "children": [
                {
                    "type": "tr",
                    "children": [
                        {"type": "td", "children": [
                            {"type": "p", "children": _leaves(cell)}
                        ]}
                        for cell in row
                    ],
                }
                for row in node.rows
            ],
        }]
    if isinstance(node, MathBlock):
        return [{
            "type": "equation",
            "texExpression": node.latex,
            "children": _empty(),
        }]
    if isinstance(node, CodeBlock):
        return [{
            "type": "code_block",
            "children": [
                {"type": "code_line", "children": [{"text": line}]}
                for line in node.code.split("\n")
            ],
        }]
    if isinstance(node, HorizontalRule):
        return [{"type": "hr", "children": _empty()}]
    raise TypeError(f"Unsupported node type: {type(node).__name__}")


def to_editor_value(nodes: Sequence) -> list[dict]:
    """
    Convert block nodes to an editor value.

    An empty node list yields a single empty paragraph, the smallest value
    the editor accepts.
    """
    value: list[dict] = []
    for node in nodes:
        value.extend(_element(node))
    return value or [{"type": "p", "children": _empty()}]
