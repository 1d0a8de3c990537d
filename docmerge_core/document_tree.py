"""
Document Tree Model
Paragraphs, tables, rows and cells with the primitive read/write operations the merge engine uses.

Attribute values (paragraph, row, cell and table properties) are opaque
strings: the engine captures and replays them without looking inside.
"""

import uuid
from typing import Dict, List, Optional
from dataclasses import dataclass, field


class NodeKind:
    PARAGRAPH = "paragraph"
    TABLE = "table"
    ROW = "row"
    CELL = "cell"
    PAGE_BREAK = "page_break"
    OPAQUE = "opaque"
    BODY = "body"


@dataclass
class TextRun:
    """A run of text sharing one style"""
    text: str = ""
    style: str = ""              # Opaque run properties
    raw: Optional[str] = None    # Non-text content (drawings, field codes) kept verbatim


class _Container:
    """Ordered child list with index-based insert/remove"""

    children: list

    def insert_child(self, index: int, node) -> None:
        self.children.insert(index, node)

    def remove_child(self, index: int):
        return self.children.pop(index)

    def replace_children(self, nodes: list) -> None:
        self.children[:] = list(nodes)

    def index_of(self, node) -> int:
        for i, child in enumerate(self.children):
            if child is node:
                return i
        raise ValueError("node is not a child of this container")


@dataclass(eq=False)
class Paragraph:
    """Block of text made of styled runs"""
    runs: List[TextRun] = field(default_factory=list)
    attributes: str = ""
    kind: str = NodeKind.PARAGRAPH

    @classmethod
    def from_text(cls, text: str, attributes: str = "", style: str = "") -> "Paragraph":
        return cls(runs=[TextRun(text=text, style=style)] if text else [], attributes=attributes)

    def get_text(self) -> str:
        return "".join(run.text for run in self.runs if run.raw is None)

    @property
    def run_style(self) -> str:
        """Style sampled from the first text run"""
        for run in self.runs:
            if run.raw is None:
                return run.style
        return ""

    def set_text(self, text: str, style: Optional[str] = None) -> None:
        """
        Replace the paragraph text with a single run.

        Non-text runs before the first text run stay in front of the new run;
        the others follow it. Unchanged text leaves the runs untouched, so
        multi-run formatting survives a no-op write.
        """
        if style is None and text == self.get_text():
            return

        style = self.run_style if style is None else style
        leading, trailing = [], []
        seen_text = False
        for run in self.runs:
            if run.raw is None:
                seen_text = True
            elif seen_text:
                trailing.append(run)
            else:
                leading.append(run)
        self.runs = leading + ([TextRun(text=text, style=style)] if text else []) + trailing


@dataclass(eq=False)
class PageBreak:
    """Hard page break"""
    attributes: str = ""
    kind: str = NodeKind.PAGE_BREAK

    def get_text(self) -> str:
        return ""


@dataclass(eq=False)
class OpaqueNode:
    """Element the engine does not interpret (section properties, content controls)"""
    xml: str = ""
    kind: str = NodeKind.OPAQUE

    def get_text(self) -> str:
        return ""


@dataclass(eq=False)
class Cell(_Container):
    """Table cell holding a small list of blocks"""
    children: list = field(default_factory=list)
    attributes: str = ""
    kind: str = NodeKind.CELL

    @property
    def paragraphs(self) -> List[Paragraph]:
        return [child for child in self.children if isinstance(child, Paragraph)]

    def first_paragraph(self) -> Optional[Paragraph]:
        paragraphs = self.paragraphs
        return paragraphs[0] if paragraphs else None

    def get_text(self) -> str:
        return "\n".join(p.get_text() for p in self.paragraphs)

    def set_text(self, text: str) -> None:
        """
        Write text back, one paragraph per line.

        When the line count matches the existing paragraphs each keeps its own
        style; otherwise the paragraphs are rebuilt from the first one's
        attributes and run style.
        """
        lines = text.split("\n")
        paragraphs = self.paragraphs

        if len(lines) == len(paragraphs):
            for paragraph, line in zip(paragraphs, lines):
                paragraph.set_text(line)
            return

        first = paragraphs[0] if paragraphs else Paragraph()
        rebuilt = [Paragraph.from_text(line, first.attributes, first.run_style) for line in lines]
        others = [child for child in self.children if not isinstance(child, Paragraph)]
        self.replace_children(rebuilt + others)


@dataclass(eq=False)
class Row(_Container):
    """Table row of cells"""
    children: list = field(default_factory=list)
    attributes: str = ""
    kind: str = NodeKind.ROW

    @property
    def cells(self) -> List[Cell]:
        return self.children

    def get_text(self) -> str:
        return "\t".join(cell.get_text() for cell in self.children)


@dataclass(eq=False)
class Table(_Container):
    """Table of rows"""
    children: list = field(default_factory=list)
    attributes: str = ""
    kind: str = NodeKind.TABLE

    @property
    def rows(self) -> List[Row]:
        return self.children

    def get_text(self) -> str:
        return "\n".join(row.get_text() for row in self.children)


@dataclass(eq=False)
class Body(_Container):
    """Top-level block list of one document part (body, header or footer)"""
    children: list = field(default_factory=list)
    name: str = "body"
    kind: str = NodeKind.BODY

    def get_text(self) -> str:
        return "\n".join(child.get_text() for child in self.children)


@dataclass(eq=False)
class Document:
    """A document as a set of parts, each with its own block tree"""
    parts: Dict[str, Body] = field(default_factory=dict)
    package: bytes = b""                             # Original .docx bytes, if loaded from one
    part_xml: Dict[str, str] = field(default_factory=dict)
    key: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_blocks(cls, blocks: list, name: str = "word/document.xml") -> "Document":
        return cls(parts={name: Body(children=list(blocks), name=name)})

    @property
    def body(self) -> Body:
        return next(iter(self.parts.values()))

    def get_text(self) -> str:
        return "\n".join(part.get_text() for part in self.parts.values())


def iter_paragraphs(nodes: list):
    """Yield every paragraph in a block list, descending into tables"""
    for node in nodes:
        if isinstance(node, Paragraph):
            yield node
        elif isinstance(node, Table):
            for row in node.rows:
                for cell in row.cells:
                    yield from iter_paragraphs(cell.children)


def iter_containers(nodes: list):
    """Yield every block list below the given one (cell child lists), depth first"""
    for node in nodes:
        if isinstance(node, Table):
            for row in node.rows:
                for cell in row.cells:
                    yield cell
                    yield from iter_containers(cell.children)
