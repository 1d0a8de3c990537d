"""Shared fixtures: in-memory tree builders and a minimal .docx factory."""

import io
import zipfile

import pytest

from docmerge_core.document_tree import Cell, Document, Paragraph, Row, Table, iter_paragraphs
from docmerge_core.context import MergeState, build_merge_context
from docmerge_core.config import MergeConfig

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="xml" ContentType="application/xml"/>'
    '<Override PartName="/word/document.xml" '
    'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
    '</Types>'
)

RELS = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
    '<Relationship Id="rId1" '
    'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
    'Target="word/document.xml"/>'
    '</Relationships>'
)


class TreeBuilder:
    """Small helpers for building and reading document trees in tests"""

    def paragraph(self, text, style=""):
        return Paragraph.from_text(text, style=style)

    def cell(self, text):
        return Cell(children=[Paragraph.from_text(line) for line in text.split("\n")])

    def row(self, *cells):
        return Row(children=[self.cell(text) for text in cells])

    def table(self, *rows):
        return Table(children=[self.row(*cells) for cells in rows])

    def document(self, *blocks):
        return Document.from_blocks(list(blocks))

    def texts(self, document):
        """Top-level block texts of the main part"""
        return [block.get_text() for block in document.body.children]

    def rows(self, table):
        return [[cell.get_text() for cell in row.cells] for row in table.rows]

    def all_text(self, document):
        return "\n".join(p.get_text() for p in iter_paragraphs(document.body.children))


@pytest.fixture
def tree():
    return TreeBuilder()


@pytest.fixture
def state():
    return MergeState(MergeConfig(), document_key="test")


@pytest.fixture
def make_context():
    def _make(data=None, field_types=None, named_sources=None):
        return build_merge_context(record=data or {}, field_types=field_types, named_sources=named_sources)
    return _make


def w_paragraph(text, rpr=""):
    """Paragraph XML with one run"""
    return f'<w:p><w:r>{rpr}<w:t xml:space="preserve">{text}</w:t></w:r></w:p>'


def w_table(*rows):
    """Table XML from rows of cell texts"""
    body = "".join(
        "<w:tr>" + "".join(f"<w:tc>{w_paragraph(text)}</w:tc>" for text in cells) + "</w:tr>"
        for cells in rows
    )
    return f'<w:tbl><w:tblPr><w:tblW w:w="0" w:type="auto"/></w:tblPr>{body}</w:tbl>'


@pytest.fixture
def docx_factory():
    """Build .docx bytes from body XML (and optional header XML)"""
    def _make(body_xml, header_xml=None, extra=None):
        document_xml = (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            f'<w:document xmlns:w="{W_NS}"><w:body>{body_xml}'
            '<w:sectPr><w:pgSz w:w="12240" w:h="15840"/></w:sectPr>'
            '</w:body></w:document>'
        )
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("[Content_Types].xml", CONTENT_TYPES)
            zf.writestr("_rels/.rels", RELS)
            zf.writestr("word/document.xml", document_xml)
            if header_xml is not None:
                zf.writestr(
                    "word/header1.xml",
                    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
                    f'<w:hdr xmlns:w="{W_NS}">{header_xml}</w:hdr>',
                )
            for name, content in (extra or {}).items():
                zf.writestr(name, content)
        return buffer.getvalue()
    return _make


def read_part(docx_bytes, name="word/document.xml"):
    with zipfile.ZipFile(io.BytesIO(docx_bytes)) as zf:
        return zf.read(name).decode("utf-8")
