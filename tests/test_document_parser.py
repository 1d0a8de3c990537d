"""Tests for the .docx reader and writer."""

import io
import zipfile

import pytest

from docmerge_core.document_parser import DocumentParser, DocumentWriter, splice_body, strip_declarations
from docmerge_core.document_tree import Document, OpaqueNode, PageBreak, Paragraph, Table, TextRun
from docmerge_core.errors import DocumentFormatError

from conftest import W_NS, read_part, w_paragraph, w_table


@pytest.fixture
def parser():
    return DocumentParser()


@pytest.fixture
def writer():
    return DocumentWriter()


class TestParseDocument:
    def test_paragraphs_and_tables(self, parser, docx_factory, tree):
        data = docx_factory(w_paragraph("Hello {{Name}}") + w_table(["A", "B"], ["C", "D"]))
        document = parser.parse_document(data)

        blocks = document.body.children
        assert isinstance(blocks[0], Paragraph)
        assert blocks[0].get_text() == "Hello {{Name}}"
        assert isinstance(blocks[1], Table)
        assert tree.rows(blocks[1]) == [["A", "B"], ["C", "D"]]
        assert isinstance(blocks[-1], OpaqueNode)
        assert "sectPr" in blocks[-1].xml

    def test_marker_split_across_runs_is_joined(self, parser, docx_factory):
        body = (
            '<w:p><w:r><w:t>{{Na</w:t></w:r>'
            '<w:r><w:rPr><w:b/></w:rPr><w:t>me}}</w:t></w:r></w:p>'
        )
        document = parser.parse_document(docx_factory(body))
        assert document.body.children[0].get_text() == "{{Name}}"

    def test_run_style_kept(self, parser, docx_factory):
        document = parser.parse_document(docx_factory(w_paragraph("x", "<w:rPr><w:i/></w:rPr>")))
        paragraph = document.body.children[0]
        assert "w:i" in paragraph.run_style
        assert "xmlns" not in paragraph.run_style

    def test_hyperlink_runs_flattened(self, parser, docx_factory):
        body = '<w:p><w:hyperlink><w:r><w:t>{{Url}}</w:t></w:r></w:hyperlink></w:p>'
        document = parser.parse_document(docx_factory(body))
        assert document.body.children[0].get_text() == "{{Url}}"

    def test_tab_and_break(self, parser, docx_factory):
        body = '<w:p><w:r><w:t>a</w:t><w:tab/><w:t>b</w:t><w:br/><w:t>c</w:t></w:r></w:p>'
        document = parser.parse_document(docx_factory(body))
        assert document.body.children[0].get_text() == "a\tb\nc"

    def test_page_break_paragraph(self, parser, docx_factory):
        body = '<w:p><w:r><w:br w:type="page"/></w:r></w:p>'
        document = parser.parse_document(docx_factory(body))
        assert isinstance(document.body.children[0], PageBreak)

    def test_header_part(self, parser, docx_factory):
        data = docx_factory(w_paragraph("body"), header_xml=w_paragraph("Header {{Title}}"))
        document = parser.parse_document(data)
        assert list(document.parts) == ["word/document.xml", "word/header1.xml"]
        assert document.parts["word/header1.xml"].get_text() == "Header {{Title}}"

    def test_not_a_zip(self, parser):
        with pytest.raises(DocumentFormatError, match="Failed to read document"):
            parser.parse_document(b"plain text")

    def test_missing_main_part(self, parser):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("other.xml", "<x/>")
        with pytest.raises(DocumentFormatError, match="word/document.xml"):
            parser.parse_document(buffer.getvalue())

    def test_malformed_xml(self, parser):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("word/document.xml", "<w:document><w:body>")
        with pytest.raises(DocumentFormatError, match="Malformed XML"):
            parser.parse_document(buffer.getvalue())


class TestWriteDocument:
    def test_round_trip_keeps_text_and_other_members(self, parser, writer, docx_factory, tree):
        data = docx_factory(
            w_paragraph("Hello") + w_table(["A", "B"]),
            extra={"word/styles.xml": "<styles/>"},
        )
        document = parser.parse_document(data)
        output = writer.write_document(document)

        reparsed = parser.parse_document(output)
        assert reparsed.body.children[0].get_text() == "Hello"
        assert tree.rows(reparsed.body.children[1]) == [["A", "B"]]
        assert read_part(output, "word/styles.xml") == "<styles/>"

    def test_edits_are_written(self, parser, writer, docx_factory):
        document = parser.parse_document(docx_factory(w_paragraph("{{Name}}")))
        document.body.children[0].set_text("Ada & <Co>")
        xml = read_part(writer.write_document(document))
        assert "Ada &amp; &lt;Co&gt;" in xml
        assert f'xmlns:w="{W_NS}"' in xml
        assert "<w:sectPr>" in xml or "<w:sectPr " in xml

    def test_new_rows_written(self, parser, writer, docx_factory, tree):
        document = parser.parse_document(docx_factory(w_table(["A"])))
        table = document.body.children[0]
        table.children.append(tree.row("B"))
        reparsed = parser.parse_document(writer.write_document(document))
        assert tree.rows(reparsed.body.children[0]) == [["A"], ["B"]]

    def test_newlines_and_tabs_in_runs(self, writer):
        xml = writer.render_paragraph(Paragraph.from_text("a\tb\nc"))
        assert xml == (
            '<w:p><w:r><w:t xml:space="preserve">a</w:t><w:tab/>'
            '<w:t xml:space="preserve">b</w:t><w:br/>'
            '<w:t xml:space="preserve">c</w:t></w:r></w:p>'
        )

    def test_empty_cell_gets_paragraph(self, writer, tree):
        row = tree.row("x")
        row.cells[0].replace_children([])
        assert "<w:tc><w:p/></w:tc>" in writer.render_row(row)

    def test_page_break_node(self, writer):
        assert writer.render_block(PageBreak()) == '<w:p><w:r><w:br w:type="page"/></w:r></w:p>'

    def test_in_memory_document(self, parser, writer, tree):
        document = Document.from_blocks([tree.paragraph("fresh")])
        reparsed = parser.parse_document(writer.write_document(document))
        assert reparsed.body.children[0].get_text() == "fresh"

    def test_header_written(self, parser, writer, docx_factory):
        data = docx_factory(w_paragraph("body"), header_xml=w_paragraph("{{Title}}"))
        document = parser.parse_document(data)
        document.parts["word/header1.xml"].children[0].set_text("Quarterly")
        xml = read_part(writer.write_document(document), "word/header1.xml")
        assert "Quarterly" in xml
        assert xml.rstrip().endswith("</w:hdr>")


class TestParagraphText:
    DRAWING = "<w:r><w:drawing/></w:r>"

    def test_non_text_run_after_text_stays_after(self):
        paragraph = Paragraph(runs=[TextRun(text="Logo: {{Logo}}"), TextRun(raw=self.DRAWING)])
        paragraph.set_text("Logo: ")
        assert [run.raw for run in paragraph.runs] == [None, self.DRAWING]
        assert paragraph.runs[0].text == "Logo: "

    def test_non_text_run_before_text_stays_before(self):
        paragraph = Paragraph(runs=[TextRun(raw=self.DRAWING), TextRun(text="{{Caption}}")])
        paragraph.set_text("Figure 1")
        assert [run.raw for run in paragraph.runs] == [self.DRAWING, None]

    def test_order_survives_write(self, parser, writer, docx_factory):
        body = (
            '<w:p><w:r><w:t xml:space="preserve">Signed by {{Name}}</w:t></w:r>'
            '<w:r><w:drawing/></w:r></w:p>'
        )
        document = parser.parse_document(docx_factory(body))
        document.body.children[0].set_text("Signed by Ada")
        xml = read_part(writer.write_document(document))
        assert xml.index("Signed by Ada") < xml.index("w:drawing")


class TestHelpers:
    def test_strip_declarations(self):
        xml = f'<w:rPr xmlns:w="{W_NS}" xmlns:x="urn:x"><w:b/></w:rPr>'
        assert strip_declarations(xml, {"w": W_NS}) == '<w:rPr xmlns:x="urn:x"><w:b/></w:rPr>'

    def test_splice_body(self):
        original = '<w:document><w:body><w:p/></w:body></w:document>'
        assert splice_body(original, "<new/>") == '<w:document><w:body><new/></w:body></w:document>'

    def test_splice_self_closing_header(self):
        assert splice_body('<w:hdr xmlns:w="x"/>', "<w:p/>") == '<w:hdr xmlns:w="x"><w:p/></w:hdr>'
