"""End-to-end tests for the merge driver."""

from unittest.mock import patch

import pytest

from docmerge_core.config import MergeConfig
from docmerge_core.document_parser import DocumentParser
from docmerge_core.document_tree import PageBreak
from docmerge_core.errors import MissingSectionDataError, UnresolvedFieldError
from docmerge_core.merge import MergeDriver, MergeResult, merge_document, merge_docx
from docmerge_core.context import build_merge_context

from conftest import w_paragraph, w_table


class TestPipeline:
    def test_discount_line(self, tree):
        document = tree.document(tree.paragraph(
            "{{IF DiscountPercent > 0}}Discount ({{DiscountPercent:percent}}){{ELSE}}No Discount{{/IF}}"
        ))
        merge_document(document, {"DiscountPercent": 5.0})
        text = tree.texts(document)[0]
        assert "Discount (5.0%)" in text
        assert "No Discount" not in text

    def test_high_value(self, tree):
        document = tree.document(tree.paragraph("{{IF GrandTotal > 50000}}HIGH VALUE{{ELSE}}Standard{{/IF}}"))
        merge_document(document, {"GrandTotal": 93150.00})
        assert tree.texts(document) == ["HIGH VALUE"]

    def test_line_items_table(self, tree):
        table = tree.table(
            ["#", "Name", "Price"],
            ["{{#LineItems}}{{ROW_NUM}}", "{{Name}}", "{{Price:currency}}{{/LineItems}}"],
            ["", "Total", "{{Total:currency}}"],
        )
        document = tree.document(tree.paragraph("Quote for {{Account.Name}}"), table)
        items = [{"Name": f"Part {i}", "Price": i * 100} for i in range(1, 6)]
        result = merge_document(document, {"LineItems": items, "Total": 1500, "Account": {"Name": "Acme"}})

        assert isinstance(result, MergeResult)
        rows = tree.rows(table)
        assert len(rows) == 7
        assert [row[0] for row in rows[1:6]] == ["1", "2", "3", "4", "5"]
        assert rows[3] == ["3", "Part 3", "$300.00"]
        assert rows[6] == ["", "Total", "$1,500.00"]
        assert tree.texts(document)[0] == "Quote for Acme"

    def test_default_for_null_field(self, tree):
        document = tree.document(tree.paragraph("Call {{ORG.Phone ?? '(000) 000-0000'}}"))
        merge_document(document, {"ORG": {"Phone": None}})
        assert tree.texts(document) == ["Call (000) 000-0000"]

    def test_guarded_section_without_data_succeeds(self, tree):
        document = tree.document(
            tree.paragraph("Intro"),
            tree.paragraph("{{IF ShowSection}}"),
            tree.paragraph("{{#Items}}"),
            tree.paragraph("{{Name}}"),
            tree.paragraph("{{/Items}}"),
            tree.paragraph("{{/IF}}"),
            tree.paragraph("Outro"),
        )
        result = merge_document(document, {"ShowSection": False})
        assert tree.texts(document) == ["Intro", "Outro"]
        assert result.warnings == []

    def test_marker_free_document_unchanged(self, tree):
        document = tree.document(tree.paragraph("Just text."), tree.table(["a", "b"]))
        merge_document(document, {"Unused": 1})
        assert tree.texts(document) == ["Just text.", "a\tb"]

    def test_empty_collection_fails_with_name(self, tree):
        document = tree.document(tree.table(["{{#LineItems}}{{Name}}{{/LineItems}}"]))
        with pytest.raises(MissingSectionDataError, match="LineItems"):
            merge_document(document, {"LineItems": []})

    def test_unresolved_field_fails(self, tree):
        document = tree.document(tree.paragraph("{{Contact.Email}}"))
        with pytest.raises(UnresolvedFieldError, match="Contact.Email"):
            merge_document(document, {})

    def test_repeated_rows_not_reprocessed(self, tree):
        # A value that looks like a marker must survive the later stages
        table = tree.table(["{{#Items}}{{Text}}{{/Items}}"])
        document = tree.document(table)
        merge_document(document, {"Items": [{"Text": "{{Literal}}"}]})
        assert tree.rows(table) == [["{{Literal}}"]]

    def test_nested_fields_resolved_in_cells(self, tree):
        table = tree.table(["Owner", "{{Account.Owner.Name}}"])
        document = tree.document(table)
        merge_document(document, {"Account": {"Owner": {"Name": "Dana"}}})
        assert tree.rows(table) == [["Owner", "Dana"]]

    def test_field_types_table(self, tree):
        document = tree.document(tree.paragraph("Closes {{CloseDate}}"))
        merge_document(document, {"CloseDate": "2024-06-30"}, field_types={"CloseDate": "date"})
        assert tree.texts(document) == ["Closes June 30, 2024"]

    def test_currency_symbol_config(self, tree):
        document = tree.document(tree.paragraph("{{Amount:currency}}"))
        merge_document(document, {"Amount": 12}, config=MergeConfig(currency_symbol="£"))
        assert tree.texts(document) == ["£12.00"]

    def test_page_break_marker(self, tree):
        document = tree.document(tree.paragraph("one"), tree.paragraph("{{PAGE_BREAK}}"), tree.paragraph("two"))
        merge_document(document, {})
        assert isinstance(document.body.children[1], PageBreak)

    def test_leftover_markers_reported(self, tree):
        document = tree.document(tree.paragraph("{{IF a}}never closed"))
        result = merge_document(document, {"a": True})
        assert any("Unclosed conditional" in w for w in result.warnings)

    def test_condition_error_reported(self, tree):
        document = tree.document(tree.paragraph("{{IF a ==}}x{{ELSE}}y{{/IF}}"))
        result = merge_document(document, {"a": 1})
        assert tree.texts(document) == ["y"]
        assert any("Condition treated as false" in w for w in result.warnings)


class TestImagePass:
    def test_handler_receives_pending_images(self, tree):
        received = []
        document = tree.document(tree.paragraph("{{IMAGE:Logo}}"))
        config = MergeConfig(image_handler=received.extend)
        result = merge_document(document, {"Logo": "logo.png"}, config=config)

        assert len(received) == 1
        assert received[0].value == "logo.png"
        assert received[0].node is document.body.children[0]
        assert tree.texts(document) == ["{{IMAGE:Logo}}"]
        assert result.warnings == []

    def test_no_handler_warns(self, tree):
        document = tree.document(tree.paragraph("{{IMAGE:Logo}}"))
        result = merge_document(document, {"Logo": "logo.png"})
        assert any("No image handler" in w for w in result.warnings)
        assert len(result.pending_images) == 1


class TestDriver:
    def test_cache_cleared_per_merge(self, tree):
        driver = MergeDriver()
        first = tree.document(tree.paragraph("{{A}}"))
        driver.merge(first, build_merge_context(record={"A": "x"}))
        second = tree.document(tree.paragraph("{{A}}"))
        driver.merge(second, build_merge_context(record={"A": "y"}))
        assert tree.texts(second) == ["y"]

    def test_all_parts_merged(self, docx_factory):
        data = docx_factory(w_paragraph("{{Name}}"), header_xml=w_paragraph("Header: {{Name}}"))
        document = DocumentParser().parse_document(data)
        merge_document(document, {"Name": "Acme"})
        assert document.parts["word/header1.xml"].get_text() == "Header: Acme"


class TestMergeDocx:
    def test_end_to_end(self, docx_factory):
        template = docx_factory(
            w_paragraph("Dear {{Contact.FirstName}},")
            + w_table(["Item", "Qty"], ["{{#Items}}{{Name}}", "{{Qty}}{{/Items}}"])
        )
        data = {
            "Contact": {"FirstName": "Sam"},
            "Items": [{"Name": "Bolt", "Qty": 4}, {"Name": "Nut", "Qty": 8}],
        }
        result = merge_docx(template, data)

        assert result.content
        document = DocumentParser().parse_document(result.content)
        blocks = document.body.children
        assert blocks[0].get_text() == "Dear Sam,"
        rows = [[cell.get_text() for cell in row.cells] for row in blocks[1].rows]
        assert rows == [["Item", "Qty"], ["Bolt", "4"], ["Nut", "8"]]

    def test_named_source_urls_fetched(self, docx_factory):
        template = docx_factory(w_table(["{{@Contacts}}{{Email}}{{/@Contacts}}"]))
        with patch("docmerge_core.merge.fetch_named_source", return_value=[{"Email": "a@b.c"}]) as fetch:
            result = merge_docx(template, {}, named_sources={"Contacts": "https://example.com/contacts"})
        fetch.assert_called_once_with("https://example.com/contacts", alias="Contacts")
        document = DocumentParser().parse_document(result.content)
        assert document.body.children[0].rows[0].cells[0].get_text() == "a@b.c"

    def test_named_source_lists_passed_through(self, docx_factory):
        template = docx_factory(w_paragraph("{{@Tags}}{{value}} {{/@Tags}}"))
        result = merge_docx(template, {}, named_sources={"Tags": ["a", "b"]})
        document = DocumentParser().parse_document(result.content)
        assert document.body.children[0].get_text() == "a b "

    def test_inline_section_values_not_rescanned(self, docx_factory):
        template = docx_factory(w_paragraph("{{Title}}: {{#Items}}{{Name}} {{/Items}}"))
        data = {"Title": "Names", "Items": [{"Name": "{{Secret}}"}], "Secret": "leaked"}
        result = merge_docx(template, data)
        document = DocumentParser().parse_document(result.content)
        assert document.body.children[0].get_text() == "Names: {{Secret}} "
