"""
Document Parser and Writer for Word Documents
Reads a .docx package into the merge tree and writes the merged tree back.

Only the body, header and footer parts are parsed. Everything the engine does
not interpret (section properties, drawings, field codes) travels through as
verbatim XML, and every other package member is copied unchanged.
"""

import re
import io
import logging
import zipfile
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

from .document_tree import (
    Body, Cell, Document, OpaqueNode, PageBreak, Paragraph, Row, Table, TextRun,
)
from .errors import DocumentFormatError

logger = logging.getLogger(__name__)

W_NS = 'http://schemas.openxmlformats.org/wordprocessingml/2006/main'
MAIN_PART = 'word/document.xml'


def _w(tag: str) -> str:
    return f'{{{W_NS}}}{tag}'


W_BODY, W_P, W_PPR, W_R, W_RPR, W_T = _w('body'), _w('p'), _w('pPr'), _w('r'), _w('rPr'), _w('t')
W_TAB, W_BR, W_CR, W_TBL, W_TBLPR, W_TBLGRID = _w('tab'), _w('br'), _w('cr'), _w('tbl'), _w('tblPr'), _w('tblGrid')
W_TR, W_TRPR, W_TBLPREX, W_TC, W_TCPR = _w('tr'), _w('trPr'), _w('tblPrEx'), _w('tc'), _w('tcPr')
W_SDT, W_SDTCONTENT, W_TYPE = _w('sdt'), _w('sdtContent'), _w('type')
W_LAST_RENDERED = _w('lastRenderedPageBreak')

# Run containers whose runs are read as if they sat directly in the paragraph
FLATTENED_WRAPPERS = {_w('hyperlink'), _w('ins'), _w('smartTag'), _w('customXml'), _w('fldSimple')}

# Paragraph children with no text that are dropped on rewrite
IGNORED_PARAGRAPH_CHILDREN = {_w('proofErr'), _w('bookmarkStart'), _w('bookmarkEnd'), _w('del')}


class DocumentParser:
    """
    OOXML reader producing the merge document tree.

    Attribute strings (pPr, rPr, trPr, tcPr, tblPr) are kept as serialized
    XML so the writer can put them back untouched.
    """

    PART_PATTERN = re.compile(r'^word/(document|header\d*|footer\d*)\.xml$')
    XMLNS_PATTERN = re.compile(r'xmlns:(\w+)="([^"]*)"')

    def __init__(self):
        self.declared: Dict[str, str] = {}

    def parse_document(self, file_bytes: bytes) -> Document:
        """
        Parse a Word document from bytes.

        Args:
            file_bytes: Raw bytes of the .docx file

        Returns:
            Document with one Body per parsed part

        Raises:
            DocumentFormatError: not a zip package, no main part, or bad XML
        """
        document = Document(package=file_bytes)

        try:
            with zipfile.ZipFile(io.BytesIO(file_bytes)) as zf:
                names = zf.namelist()
                if MAIN_PART not in names:
                    raise DocumentFormatError(f"Package has no {MAIN_PART}")

                parts = [MAIN_PART] + sorted(
                    n for n in names if n != MAIN_PART and self.PART_PATTERN.match(n)
                )
                for name in parts:
                    xml = zf.read(name).decode('utf-8')
                    document.part_xml[name] = xml
                    document.parts[name] = self.parse_part(xml, name)
        except zipfile.BadZipFile as e:
            raise DocumentFormatError(f"Failed to read document: {e}") from e
        except UnicodeDecodeError as e:
            raise DocumentFormatError(f"Document part is not UTF-8: {e}") from e

        logger.info("Parsed %d document parts", len(document.parts))
        return document

    def parse_part(self, xml: str, name: str = MAIN_PART) -> Body:
        """Parse one part's XML into a Body"""
        self._register_namespaces(xml)
        try:
            root = ET.fromstring(xml)
        except ET.ParseError as e:
            raise DocumentFormatError(f"Malformed XML in {name}: {e}") from e

        container = root.find(W_BODY) if root.tag == _w('document') else root
        if container is None:
            raise DocumentFormatError(f"{name} has no body")

        return Body(children=self._parse_blocks(container), name=name)

    def _register_namespaces(self, xml: str) -> None:
        root_tag = re.search(r'<(?!\?)[^>]+>', xml)
        if not root_tag:
            return
        self.declared = dict(self.XMLNS_PATTERN.findall(root_tag.group(0)))
        for prefix, uri in self.declared.items():
            if re.match(r'ns\d+$', prefix):
                continue
            ET.register_namespace(prefix, uri)

    def _serialize(self, element: Optional[ET.Element]) -> str:
        if element is None:
            return ""
        return strip_declarations(ET.tostring(element, encoding='unicode'), self.declared)

    def _parse_blocks(self, element: ET.Element, skip: tuple = ()) -> list:
        blocks = []
        for child in element:
            if child.tag in skip:
                continue
            if child.tag == W_P:
                blocks.append(self._parse_paragraph(child))
            elif child.tag == W_TBL:
                blocks.append(self._parse_table(child))
            elif child.tag == W_SDT and child.find(W_SDTCONTENT) is not None:
                blocks.extend(self._parse_blocks(child.find(W_SDTCONTENT)))
            else:
                blocks.append(OpaqueNode(xml=self._serialize(child)))
        return blocks

    def _parse_paragraph(self, element: ET.Element):
        paragraph = Paragraph(attributes=self._serialize(element.find(W_PPR)))

        for child in element:
            if child.tag == W_R:
                paragraph.runs.extend(self._parse_run(child))
            elif child.tag in FLATTENED_WRAPPERS:
                for sub in child.iter(W_R):
                    paragraph.runs.extend(self._parse_run(sub))
            elif child.tag == W_PPR or child.tag in IGNORED_PARAGRAPH_CHILDREN:
                continue
            else:
                paragraph.runs.append(TextRun(raw=self._serialize(child)))

        if self._is_page_break(paragraph, element):
            return PageBreak(attributes=paragraph.attributes)
        return paragraph

    def _parse_run(self, element: ET.Element) -> List[TextRun]:
        """A run becomes one text run, or one raw run if it holds anything but text"""
        style = self._serialize(element.find(W_RPR))
        parts = []

        for child in element:
            if child.tag in (W_RPR, W_LAST_RENDERED):
                continue
            if child.tag == W_T:
                parts.append(child.text or "")
            elif child.tag == W_TAB:
                parts.append("\t")
            elif child.tag in (W_BR, W_CR) and child.get(W_TYPE) in (None, 'textWrapping'):
                parts.append("\n")
            else:
                return [TextRun(style=style, raw=self._serialize(element))]

        return [TextRun(text="".join(parts), style=style)] if parts else []

    def _is_page_break(self, paragraph: Paragraph, element: ET.Element) -> bool:
        if paragraph.get_text() or len(paragraph.runs) != 1:
            return False
        breaks = [br for br in element.iter(W_BR) if br.get(W_TYPE) == 'page']
        others = [c for r in element.iter(W_R) for c in r if c.tag not in (W_RPR, W_BR)]
        return len(breaks) == 1 and not others

    def _parse_table(self, element: ET.Element) -> Table:
        table = Table(attributes=self._serialize(element.find(W_TBLPR)) + self._serialize(element.find(W_TBLGRID)))

        for tr in element.findall(W_TR):
            row = Row(attributes=self._serialize(tr.find(W_TBLPREX)) + self._serialize(tr.find(W_TRPR)))
            for tc in tr.findall(W_TC):
                row.children.append(Cell(
                    children=self._parse_blocks(tc, skip=(W_TCPR,)),
                    attributes=self._serialize(tc.find(W_TCPR)),
                ))
            table.children.append(row)

        return table


class DocumentWriter:
    """
    Serialize the merge tree back into a .docx package.

    Each parsed part is regenerated by splicing the rendered blocks between
    the original part's body tags, so root namespace declarations and any
    markup-compatibility attributes survive.
    """

    MINIMAL_PACKAGE = {
        '[Content_Types].xml': (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
            '<Default Extension="xml" ContentType="application/xml"/>'
            '<Override PartName="/word/document.xml" ContentType="application/'
            'vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
            '</Types>'
        ),
        '_rels/.rels': (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
            '<Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/'
            'relationships/officeDocument" Target="word/document.xml"/>'
            '</Relationships>'
        ),
        MAIN_PART: (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            f'<w:document xmlns:w="{W_NS}"><w:body></w:body></w:document>'
        ),
    }

    def write_document(self, document: Document) -> bytes:
        """
        Write a merged document to .docx bytes.

        Args:
            document: Tree produced by DocumentParser (or built in memory)

        Returns:
            Bytes of the new package
        """
        output_io = io.BytesIO()

        with zipfile.ZipFile(output_io, 'w', zipfile.ZIP_DEFLATED) as zout:
            if document.package:
                with zipfile.ZipFile(io.BytesIO(document.package), 'r') as zin:
                    for item in zin.infolist():
                        if item.filename in document.parts:
                            data = self.render_part(document, item.filename).encode('utf-8')
                        else:
                            data = zin.read(item.filename)
                        zout.writestr(item, data)
            else:
                for name, xml in self.MINIMAL_PACKAGE.items():
                    if name in document.parts:
                        xml = self.render_part(document, name)
                    zout.writestr(name, xml.encode('utf-8'))

        return output_io.getvalue()

    def render_part(self, document: Document, name: str) -> str:
        body = document.parts[name]
        inner = "".join(self.render_block(node) for node in body.children)
        original = document.part_xml.get(name) or self.MINIMAL_PACKAGE[MAIN_PART]
        return splice_body(original, inner)

    def render_block(self, node) -> str:
        if isinstance(node, Paragraph):
            return self.render_paragraph(node)
        if isinstance(node, Table):
            return self.render_table(node)
        if isinstance(node, PageBreak):
            return f'<w:p>{node.attributes}<w:r><w:br w:type="page"/></w:r></w:p>'
        if isinstance(node, OpaqueNode):
            return node.xml
        raise DocumentFormatError(f"Cannot write node of type {type(node).__name__}")

    def render_paragraph(self, paragraph: Paragraph) -> str:
        runs = "".join(
            run.raw if run.raw is not None else self._create_run(run.text, run.style)
            for run in paragraph.runs
        )
        return f'<w:p>{paragraph.attributes}{runs}</w:p>'

    def render_table(self, table: Table) -> str:
        return f'<w:tbl>{table.attributes}{"".join(self.render_row(r) for r in table.rows)}</w:tbl>'

    def render_row(self, row: Row) -> str:
        return f'<w:tr>{row.attributes}{"".join(self.render_cell(c) for c in row.cells)}</w:tr>'

    def render_cell(self, cell: Cell) -> str:
        blocks = "".join(self.render_block(node) for node in cell.children)
        # A cell must end with a paragraph
        if not cell.children or not isinstance(cell.children[-1], (Paragraph, PageBreak)):
            blocks += '<w:p/>'
        return f'<w:tc>{cell.attributes}{blocks}</w:tc>'

    def _create_run(self, text: str, style: str = "") -> str:
        """Create a run, turning newlines into breaks and tabs into tab elements"""
        if not text:
            return ""
        pieces = []
        for i, line in enumerate(text.split("\n")):
            if i > 0:
                pieces.append('<w:br/>')
            for j, chunk in enumerate(line.split("\t")):
                if j > 0:
                    pieces.append('<w:tab/>')
                if chunk:
                    pieces.append(f'<w:t xml:space="preserve">{self._escape_xml(chunk)}</w:t>')
        return f'<w:r>{style}{"".join(pieces)}</w:r>'

    def _escape_xml(self, text: str) -> str:
        """Escape special XML characters"""
        return (str(text)
            .replace('&', '&amp;')
            .replace('<', '&lt;')
            .replace('>', '&gt;'))


def strip_declarations(xml: str, declared: Dict[str, str]) -> str:
    """Drop xmlns declarations that the part's root element already makes"""
    def replace(match):
        prefix, uri = match.group(1), match.group(2)
        return "" if declared.get(prefix) == uri else match.group(0)
    return re.sub(r'\s+xmlns:(\w+)="([^"]*)"', replace, xml)


def splice_body(original_xml: str, inner: str) -> str:
    """
    Put rendered blocks back inside the original part.

    For the main part the content goes between <w:body> and </w:body>; for
    headers and footers between the root's start and end tags.
    """
    match = re.search(r'<w:body\b[^>]*>', original_xml)
    if match:
        end = original_xml.rfind('</w:body>')
        return original_xml[:match.end()] + inner + original_xml[end:]

    root = re.search(r'<w:(hdr|ftr)\b[^>]*?(/?)>', original_xml)
    if not root:
        raise DocumentFormatError("Part has no body or header/footer root to write into")
    if root.group(2):
        opening = root.group(0)[:-2].rstrip() + '>'
        return original_xml[:root.start()] + opening + inner + f'</w:{root.group(1)}>' + original_xml[root.end():]
    end = original_xml.rfind(f'</w:{root.group(1)}>')
    return original_xml[:root.end()] + inner + original_xml[end:]


def create_document_parser() -> DocumentParser:
    """Factory function for DocumentParser"""
    return DocumentParser()


def create_document_writer() -> DocumentWriter:
    """Factory function for DocumentWriter"""
    return DocumentWriter()
