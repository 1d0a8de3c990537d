"""
Format Preservation for Replayed Content
Captures row, cell and paragraph formatting once and replays it onto newly built nodes.
"""

from typing import List
from dataclasses import dataclass, field

from .document_tree import Cell, Paragraph, Row


@dataclass
class CellSnapshot:
    """Formatting and text captured from one template cell"""
    text: str                    # Cell text verbatim, paragraphs joined by newlines
    attributes: str = ""         # Opaque cell properties
    paragraph_attributes: str = ""
    run_style: str = ""          # Sampled from the first run of the first paragraph


@dataclass
class RowSnapshot:
    """Formatting and text captured from one template row"""
    attributes: str = ""
    cells: List[CellSnapshot] = field(default_factory=list)


@dataclass
class ParagraphSnapshot:
    """Formatting and text captured from one template paragraph"""
    text: str
    attributes: str = ""
    run_style: str = ""


class FormatPreserver:
    """
    Capture formatting from template nodes and rebuild nodes with it.

    Only one run style per cell is kept: multi-run styling inside a template
    cell collapses to the style of its first run on replayed rows.
    """

    def capture_row(self, row: Row) -> RowSnapshot:
        return RowSnapshot(
            attributes=row.attributes,
            cells=[self.capture_cell(cell) for cell in row.cells],
        )

    def capture_cell(self, cell: Cell) -> CellSnapshot:
        first = cell.first_paragraph()
        return CellSnapshot(
            text=cell.get_text(),
            attributes=cell.attributes,
            paragraph_attributes=first.attributes if first else "",
            run_style=first.run_style if first else "",
        )

    def capture_paragraph(self, paragraph: Paragraph) -> ParagraphSnapshot:
        return ParagraphSnapshot(
            text=paragraph.get_text(),
            attributes=paragraph.attributes,
            run_style=paragraph.run_style,
        )

    def build_row(self, snapshot: RowSnapshot, texts: List[str]) -> Row:
        """
        Materialize a new row from a snapshot.

        Args:
            snapshot: Captured template row
            texts: Final text per cell, in cell order

        Returns:
            New Row carrying the captured attributes
        """
        row = Row(attributes=snapshot.attributes)
        for cell_snapshot, text in zip(snapshot.cells, texts):
            row.children.append(self.build_cell(cell_snapshot, text))
        return row

    def build_cell(self, snapshot: CellSnapshot, text: str) -> Cell:
        # Attributes go on before any text is filled in
        cell = Cell(attributes=snapshot.attributes)
        for line in text.split("\n"):
            cell.children.append(
                Paragraph.from_text(line, snapshot.paragraph_attributes, snapshot.run_style)
            )
        return cell

    def build_paragraph(self, snapshot: ParagraphSnapshot, text: str) -> Paragraph:
        return Paragraph.from_text(text, snapshot.attributes, snapshot.run_style)

    def write_row(self, row: Row, texts: List[str]) -> None:
        """Write final texts into an existing row in place"""
        for cell, text in zip(row.cells, texts):
            if cell.get_text() != text:
                cell.set_text(text)


def create_format_preserver() -> FormatPreserver:
    """Factory function for FormatPreserver"""
    return FormatPreserver()
