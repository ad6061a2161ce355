"""
Markup Translator
=================
Parses one page's model output into DocumentNode blocks.

Two input shapes are accepted:
    - HTML fragments (the format the instruction prompt asks for), parsed
      leniently with lxml.
    - Markdown-style plain text (what some models return anyway), read by
      a line state machine.

Math delimiters are shared by both paths:
    $…$    → MathInline inside running text
    $$…$$  → MathBlock, splitting the surrounding paragraph
    \\$    → literal dollar sign

Nothing here raises on bad input: unknown tags become paragraph text and
unterminated delimiters stay literal, each recorded as a TranslationWarning.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from lxml import etree
from lxml import html as lxml_html

from .errors import TranslationWarning
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

logger = logging.getLogger(__name__)

# Any opening, closing or self-closing HTML tag
TAG_PATTERN = re.compile(r"</?[A-Za-z][A-Za-z0-9]*(?:\s[^<>]*)?/?>")
WHITESPACE_PATTERN = re.compile(r"\s+")
CLOSING_TAG_PATTERN = re.compile(r"</[A-Za-z]")
# & not already starting an entity (&lt; &#60; &#x3c;)
BARE_AMPERSAND_PATTERN = re.compile(r"&(?!#?[A-Za-z0-9]+;)")

HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}

MARK_TAGS = {
    "strong": "bold",
    "b": "bold",
    "em": "italic",
    "i": "italic",
    "u": "underline",
    "s": "strikethrough",
    "strike": "strikethrough",
    "del": "strikethrough",
    "sup": "superscript",
    "sub": "subscript",
    "code": "code",
}

CONTAINER_TAGS = {
    "html", "body", "div", "section", "article", "figure", "main",
    "header", "footer", "aside", "nav", "tbody", "thead", "center",
}

INLINE_TAGS = {"span", "a", "font", "abbr", "small", "big", "mark", "label", "cite", "q"}

SKIP_TAGS = {"head", "title", "meta", "link", "script", "style", "svg", "noscript"}

INLINE_BLOCK_TAGS = {"p", "div", "li", "tr", "blockquote", "figcaption", "section"} | set(HEADING_TAGS)

Inline = Union[Text, MathInline, MathBlock]


@dataclass
class TranslationResult:
    """Nodes for one page plus any degradations applied on the way."""
    nodes: list = field(default_factory=list)
    warnings: list[TranslationWarning] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# MATH DELIMITERS
# ═══════════════════════════════════════════════════════════════════════════════


def _find_unescaped(text: str, delim: str, start: int) -> int:
    """Index of the next delim at or after start that is not backslash-escaped."""
    i = start
    while True:
        i = text.find(delim, i)
        if i == -1:
            return -1
        backslashes = 0
        j = i - 1
        while j >= 0 and text[j] == "\\":
            backslashes += 1
            j -= 1
        if backslashes % 2 == 0:
            return i
        i += 1


def split_math(
    text: str,
    marks: Optional[list[str]] = None,
    warnings: Optional[list[TranslationWarning]] = None,
) -> list[Inline]:
    """
    Split a text run on $ / $$ delimiters.

    Returns Text, MathInline and MathBlock items in source order.
    Unterminated delimiters are kept as literal text.
    """
    marks = list(marks or [])
    out: list[Inline] = []
    buf: list[str] = []

    def flush():
        if buf:
            out.append(Text(text="".join(buf), marks=list(marks)))
            buf.clear()

    i = 0
    n = len(text)
    while i < n:
        c = text[i]

        if c == "\\":
            # Odd run before $ escapes it; an even run is literal backslashes
            j = i
            while j < n and text[j] == "\\":
                j += 1
            run = j - i
            if j < n and text[j] == "$" and run % 2 == 1:
                buf.append("\\" * (run - 1) + "$")
                i = j + 1
            else:
                buf.append("\\" * run)
                i = j
            continue

        if text.startswith("$$", i):
            end = _find_unescaped(text, "$$", i + 2)
            latex = text[i + 2:end].strip() if end != -1 else ""
            if end == -1 or not latex:
                if warnings is not None:
                    warnings.append(TranslationWarning(
                        "Unterminated $$ delimiter kept as text", text[i:i + 40]
                    ))
                buf.append("$$")
                i += 2
                continue
            flush()
            out.append(MathBlock(latex=latex))
            i = end + 2
            continue

        if c == "$":
            end = _find_unescaped(text, "$", i + 1)
            latex = text[i + 1:end] if end != -1 else ""
            if end == -1 or not latex.strip() or "\n" in latex:
                if warnings is not None:
                    warnings.append(TranslationWarning(
                        "Unterminated $ delimiter kept as text", text[i:i + 40]
                    ))
                buf.append("$")
                i += 1
                continue
            flush()
            out.append(MathInline(latex=latex.strip()))
            i = end + 1
            continue

        buf.append(c)
        i += 1

    flush()
    return out


def _escape_math(latex: str) -> str:
    latex = BARE_AMPERSAND_PATTERN.sub("&amp;", latex)
    return latex.replace("<", "&lt;").replace(">", "&gt;")


def protect_math(markup: str) -> str:
    """
    Entity-escape <, > and bare & inside $…$ / $$…$$ spans so the HTML
    parser hands the LaTeX back as text.

    A candidate span that crosses a closing tag, or an inline span that
    crosses a line, is not math: its opening delimiter is left alone.
    """
    out: list[str] = []
    i = 0
    n = len(markup)
    while i < n:
        start = _find_unescaped(markup, "$", i)
        if start == -1:
            break
        delim = "$$" if markup.startswith("$$", start) else "$"
        body_start = start + len(delim)
        end = _find_unescaped(markup, delim, body_start)
        body = markup[body_start:end] if end != -1 else ""
        if (
            end == -1
            or CLOSING_TAG_PATTERN.search(body)
            or (delim == "$" and "\n" in body)
        ):
            out.append(markup[i:body_start])
            i = body_start
            continue
        out.append(markup[i:start])
        out.append(delim + _escape_math(body) + delim)
        i = end + len(delim)
    out.append(markup[i:])
    return "".join(out)


# ═══════════════════════════════════════════════════════════════════════════════
# INLINE HELPERS
# ═══════════════════════════════════════════════════════════════════════════════


def _as_inline(nodes: list[Inline]) -> list:
    """Demote block math to inline math (headings, table cells, quotes)."""
    return [
        MathInline(latex=n.latex) if isinstance(n, MathBlock) else n
        for n in nodes
    ]


def _clean_inline(nodes: list) -> list:
    """Merge adjacent same-mark text, drop empties, trim the ends."""
    merged: list = []
    for node in nodes:
        if isinstance(node, Text):
            if not node.text:
                continue
            if merged and isinstance(merged[-1], Text) and merged[-1].marks == node.marks:
                merged[-1] = Text(text=merged[-1].text + node.text, marks=node.marks)
                continue
        merged.append(node)

    while merged and isinstance(merged[0], Text) and not merged[0].text.strip():
        merged.pop(0)
    while merged and isinstance(merged[-1], Text) and not merged[-1].text.strip():
        merged.pop()
    if merged and isinstance(merged[0], Text):
        merged[0] = Text(text=merged[0].text.lstrip(), marks=merged[0].marks)
    if merged and isinstance(merged[-1], Text):
        merged[-1] = Text(text=merged[-1].text.rstrip(), marks=merged[-1].marks)
    return merged


def _paragraphs(nodes: list[Inline]) -> list:
    """Inline run → Paragraph blocks, split around block math."""
    blocks: list = []
    current: list = []

    def flush():
        cleaned = _clean_inline(current)
        if cleaned:
            blocks.append(Paragraph(children=cleaned))
        current.clear()

    for node in nodes:
        if isinstance(node, MathBlock):
            flush()
            blocks.append(node)
        else:
            current.append(node)
    flush()
    return blocks


# ═══════════════════════════════════════════════════════════════════════════════
# MARKDOWN LINE STATE MACHINE
# ═══════════════════════════════════════════════════════════════════════════════

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
BULLET_PATTERN = re.compile(r"^[-*+]\s+(.*)$")
ORDERED_PATTERN = re.compile(r"^\d+[.)]\s+(.*)$")
RULE_PATTERN = re.compile(r"^(?:-{3,}|\*{3,}|_{3,})$")
QUOTE_PATTERN = re.compile(r"^>\s?(.*)$")
TABLE_ROW_PATTERN = re.compile(r"^\|.*\|$")
TABLE_SEPARATOR_PATTERN = re.compile(r"^\|?\s*:?-{2,}:?\s*(\|\s*:?-{2,}:?\s*)*\|?$")
FENCE_PATTERN = re.compile(r"^```")


class LineState(Enum):
    """What the markdown reader is currently accumulating."""
    IDLE = "IDLE"
    PARAGRAPH = "PARAGRAPH"
    LIST = "LIST"
    QUOTE = "QUOTE"
    TABLE = "TABLE"
    MATH = "MATH"
    CODE = "CODE"


class _MarkdownReader:
    """
    Finite state machine that turns markdown-style lines into blocks.
    One instance reads one page.
    """

    def __init__(self, warnings: list[TranslationWarning]):
        self.warnings = warnings
        self.state = LineState.IDLE
        self.blocks: list = []
        self.lines: list[str] = []
        self.list_ordered = False
        self.list_items: list[list[str]] = []

    def read(self, text: str) -> list:
        for raw in text.splitlines():
            self._process_line(raw)
        self._finish()
        return self.blocks

    def _process_line(self, raw: str):
        line = raw.strip()

        # ─── Multi-line states consume lines verbatim ───
        if self.state == LineState.CODE:
            if FENCE_PATTERN.match(line):
                self.blocks.append(CodeBlock(code="\n".join(self.lines)))
                self._reset()
            else:
                self.lines.append(raw)
            return

        if self.state == LineState.MATH:
            end = _find_unescaped(line, "$$", 0)
            if end == -1:
                self.lines.append(line)
                return
            self.lines.append(line[:end])
            latex = "\n".join(x for x in self.lines if x).strip()
            self._reset()
            if latex:
                self.blocks.append(MathBlock(latex=latex))
            rest = line[end + 2:].strip()
            if rest:
                self._process_line(rest)
            return

        if not line:
            self._flush()
            return

        # ─── Block openers ───
        if FENCE_PATTERN.match(line):
            self._flush()
            self.state = LineState.CODE
            return

        if line.startswith("$$") and _find_unescaped(line, "$$", 2) == -1:
            self._flush()
            self.state = LineState.MATH
            self.lines = [line[2:].strip()]
            return

        h_match = HEADING_PATTERN.match(line)
        if h_match:
            self._flush()
            children = _clean_inline(_as_inline(
                split_math(h_match.group(2), warnings=self.warnings)
            ))
            self.blocks.append(Heading(level=len(h_match.group(1)), children=children))
            return

        if RULE_PATTERN.match(line):
            self._flush()
            self.blocks.append(HorizontalRule())
            return

        if TABLE_ROW_PATTERN.match(line):
            if self.state != LineState.TABLE:
                self._flush()
                self.state = LineState.TABLE
            self.lines.append(line)
            return

        q_match = QUOTE_PATTERN.match(line)
        if q_match:
            if self.state != LineState.QUOTE:
                self._flush()
                self.state = LineState.QUOTE
            self.lines.append(q_match.group(1))
            return

        b_match = BULLET_PATTERN.match(line)
        o_match = None if b_match else ORDERED_PATTERN.match(line)
        if b_match or o_match:
            ordered = o_match is not None
            if self.state != LineState.LIST or self.list_ordered != ordered:
                self._flush()
                self.state = LineState.LIST
                self.list_ordered = ordered
            self.list_items.append([(b_match or o_match).group(1)])
            return

        # ─── Continuation / plain text ───
        if self.state == LineState.LIST and raw[:1].isspace():
            self.list_items[-1].append(line)
            return
        if self.state not in (LineState.PARAGRAPH, LineState.IDLE):
            self._flush()
        self.state = LineState.PARAGRAPH
        self.lines.append(line)

    def _flush(self):
        """Emit whatever the current state accumulated."""
        if self.state == LineState.PARAGRAPH:
            self.blocks.extend(_paragraphs(
                split_math(" ".join(self.lines), warnings=self.warnings)
            ))
        elif self.state == LineState.QUOTE:
            children = _clean_inline(_as_inline(
                split_math(" ".join(self.lines), warnings=self.warnings)
            ))
            if children:
                self.blocks.append(Blockquote(children=children))
        elif self.state == LineState.LIST:
            items = [
                _paragraphs(split_math(" ".join(parts), warnings=self.warnings))
                for parts in self.list_items
            ]
            self.blocks.append(ListBlock(ordered=self.list_ordered, items=items))
        elif self.state == LineState.TABLE:
            rows = []
            for row in self.lines:
                if TABLE_SEPARATOR_PATTERN.match(row):
                    continue
                cells = [c.strip() for c in row.strip().strip("|").split("|")]
                rows.append([
                    _clean_inline(_as_inline(split_math(c, warnings=self.warnings)))
                    for c in cells
                ])
            if rows:
                self.blocks.append(Table(rows=rows))
        self._reset()

    def _finish(self):
        if self.state == LineState.MATH:
            self.warnings.append(TranslationWarning(
                "Unterminated $$ block kept as text", "\n".join(self.lines)[:40]
            ))
            literal = "$$ " + " ".join(x for x in self.lines if x)
            self._reset()
            self.blocks.append(Paragraph(children=[Text(text=literal.strip())]))
        elif self.state == LineState.CODE:
            self.warnings.append(TranslationWarning("Unterminated code fence"))
            self.blocks.append(CodeBlock(code="\n".join(self.lines)))
            self._reset()
        else:
            self._flush()

    def _reset(self):
        self.state = LineState.IDLE
        self.lines = []
        self.list_items = []


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSLATOR
# ═══════════════════════════════════════════════════════════════════════════════


class MarkupTranslator:
    """
    Markup string → DocumentNode list.

    Pure: no state survives between calls, so translating the same markup
    twice yields structurally identical nodes.
    """

    def translate(self, markup: str) -> list:
        """Translate one page's markup into block nodes."""
        return self.parse(markup).nodes

    def parse(self, markup: str) -> TranslationResult:
        """Translate and also report every degradation applied."""
        result = TranslationResult()
        if not markup or not markup.strip():
            return result

        protected = protect_math(markup)
        if TAG_PATTERN.search(protected):
            try:
                fragments = lxml_html.fragments_fromstring(protected)
            except (etree.ParserError, ValueError, AssertionError) as e:
                result.warnings.append(TranslationWarning(
                    f"HTML could not be parsed ({e}); read as plain text"
                ))
                result.nodes = _MarkdownReader(result.warnings).read(markup)
            else:
                result.nodes = _HtmlReader(result.warnings).read(fragments)
        else:
            result.nodes = _MarkdownReader(result.warnings).read(markup)

        for w in result.warnings:
            logger.debug(f"Translation warning: {w}")
        return result


class _HtmlReader:
    """Walks lxml fragments and builds blocks."""

    def __init__(self, warnings: list[TranslationWarning]):
        self.warnings = warnings

    def read(self, fragments: list) -> list:
        blocks: list = []
        pending: list[Inline] = []

        for fragment in fragments:
            if isinstance(fragment, str):
                pending.extend(self._text(fragment, []))
                continue
            self._block_element(fragment, blocks, pending)

        blocks.extend(_paragraphs(pending))
        return blocks

    # ─── Block context ───

    def _blocks_of(self, el) -> list:
        """Block nodes for the content of a container element."""
        blocks: list = []
        pending: list[Inline] = []
        if el.text:
            pending.extend(self._text(el.text, []))
        for child in el:
            self._block_element(child, blocks, pending)
        blocks.extend(_paragraphs(pending))
        return blocks

    def _block_element(self, el, blocks: list, pending: list):
        """Append el's nodes to blocks; loose inline content goes to pending."""
        if not isinstance(el.tag, str):
            # Comments / processing instructions
            if el.tail:
                pending.extend(self._text(el.tail, []))
            return

        tag = el.tag.lower()
        emitted: list = []

        if tag in SKIP_TAGS:
            pass
        elif tag in HEADING_TAGS:
            children = _clean_inline(_as_inline(self._inline(el, [])))
            emitted.append(Heading(level=HEADING_TAGS[tag], children=children))
        elif tag == "p" or tag == "figcaption":
            emitted.extend(_paragraphs(self._inline(el, [])))
        elif tag in ("ul", "ol"):
            emitted.append(self._list(el, ordered=(tag == "ol")))
        elif tag == "li":
            emitted.append(ListBlock(ordered=False, items=[self._blocks_of(el)]))
        elif tag == "table":
            emitted.extend(self._table(el))
        elif tag == "blockquote":
            children = _clean_inline(_as_inline(self._inline(el, [])))
            if children:
                emitted.append(Blockquote(children=children))
        elif tag in ("pre", "code"):
            emitted.append(CodeBlock(code=el.text_content().strip("\n")))
        elif tag == "hr":
            emitted.append(HorizontalRule())
        elif tag in CONTAINER_TAGS:
            emitted.extend(self._blocks_of(el))
        elif tag in MARK_TAGS or tag in INLINE_TAGS or tag in ("br", "img"):
            pending.extend(self._inline_child(el, []))
            if el.tail:
                pending.extend(self._text(el.tail, []))
            return
        else:
            self.warnings.append(TranslationWarning(
                f"Unrecognized tag <{tag}> treated as paragraph text"
            ))
            if any(isinstance(c.tag, str) and c.tag.lower() in INLINE_BLOCK_TAGS for c in el):
                emitted.extend(self._blocks_of(el))
            else:
                emitted.extend(_paragraphs(self._inline(el, [])))

        if emitted:
            blocks.extend(_paragraphs(pending))
            pending.clear()
            blocks.extend(emitted)
        if el.tail:
            pending.extend(self._text(el.tail, []))

    def _list(self, el, ordered: bool) -> ListBlock:
        items: list = []
        if el.text and el.text.strip():
            items.append(_paragraphs(self._text(el.text, [])))
        for child in el:
            if isinstance(child.tag, str) and child.tag.lower() == "li":
                items.append(self._blocks_of(child))
            elif isinstance(child.tag, str):
                sub: list = []
                loose: list = []
                self._block_element(child, sub, loose)
                sub.extend(_paragraphs(loose))
                if sub:
                    items.append(sub)
            if child.tail and child.tail.strip():
                items.append(_paragraphs(self._text(child.tail, [])))
        return ListBlock(ordered=ordered, items=items)

    def _table(self, el) -> list:
        blocks: list = []
        for caption in el.findall("caption"):
            blocks.extend(_paragraphs(self._inline(caption, [])))
        rows = []
        for tr in el.iter("tr"):
            cells = [
                _clean_inline(_as_inline(self._inline(cell, [])))
                for cell in tr
                if isinstance(cell.tag, str) and cell.tag.lower() in ("td", "th")
            ]
            if cells:
                rows.append(cells)
        if rows:
            blocks.append(Table(rows=rows))
        return blocks

    # ─── Inline context ───

    def _text(self, text: str, marks: list[str]) -> list[Inline]:
        collapsed = WHITESPACE_PATTERN.sub(" ", text)
        return split_math(collapsed, marks, self.warnings)

    def _inline(self, el, marks: list[str]) -> list[Inline]:
        """Inline nodes for el's content (its tail is not included)."""
        out: list[Inline] = []
        if el.text:
            out.extend(self._text(el.text, marks))
        for child in el:
            out.extend(self._inline_child(child, marks))
            if child.tail:
                out.extend(self._text(child.tail, marks))
        return out

    def _inline_child(self, child, marks: list[str]) -> list[Inline]:
        if not isinstance(child.tag, str):
            return []
        tag = child.tag.lower()
        if tag == "br":
            return [Text(text="\n", marks=list(marks))]
        if tag in SKIP_TAGS:
            return []
        if tag == "img":
            alt = (child.get("alt") or "").strip()
            return [Text(text=alt, marks=list(marks))] if alt else []
        if tag in MARK_TAGS:
            mark = MARK_TAGS[tag]
            child_marks = marks if mark in marks else marks + [mark]
            return self._inline(child, child_marks)
        if tag in INLINE_TAGS:
            return self._inline(child, marks)
        if tag in INLINE_BLOCK_TAGS or tag in CONTAINER_TAGS or tag in HEADING_TAGS:
            return self._inline(child, marks) + [Text(text="\n", marks=list(marks))]
        self.warnings.append(TranslationWarning(
            f"Unrecognized tag <{tag}> treated as paragraph text"
        ))
        return self._inline(child, marks)
