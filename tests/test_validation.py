"""Tests for leftover-marker validation."""

from docmerge_core.patterns import MarkerKind
from docmerge_core.validation import ValidationEngine


class TestValidationEngine:
    def test_clean_document(self, tree):
        document = tree.document(tree.paragraph("All done"), tree.table(["a", "b"]))
        result = ValidationEngine().validate_document(document)
        assert result.is_clean
        assert result.warnings == []

    def test_unfilled_placeholders_grouped(self, tree):
        document = tree.document(
            tree.paragraph("{{One}} and {{Two}}"),
            tree.table(["{{Three}}"]),
        )
        result = ValidationEngine().validate_document(document)
        assert [m.text for m in result.leftovers] == ["{{One}}", "{{Two}}", "{{Three}}"]
        assert result.warnings == ["Unfilled placeholders found: ['{{One}}', '{{Two}}', '{{Three}}']"]

    def test_one_warning_per_kind(self, tree):
        document = tree.document(
            tree.paragraph("{{IF a}}open"),
            tree.paragraph("{{ELSE}}"),
            tree.paragraph("{{#Items}}"),
        )
        result = ValidationEngine().validate_document(document)
        kinds = [m.kind for m in result.leftovers]
        assert kinds == [MarkerKind.IF, MarkerKind.ELSE, MarkerKind.SECTION_START]
        assert len(result.warnings) == 3
        assert result.warnings[0].startswith("Unclosed conditional left in output")

    def test_images_ignored_by_default(self, tree):
        document = tree.document(tree.paragraph("{{IMAGE:Logo}}"))
        assert ValidationEngine().validate_document(document).is_clean
        assert not ValidationEngine(include_images=True).validate_document(document).is_clean

    def test_to_dict(self, tree):
        document = tree.document(tree.paragraph("{{/IF}}"))
        data = ValidationEngine().validate_document(document).to_dict()
        assert data["is_clean"] is False
        assert data["leftovers"] == [{"part": "word/document.xml", "kind": "end_if", "text": "{{/IF}}"}]
        assert data["warnings"] == ["Unmatched {{/IF}} left in output: ['{{/IF}}']"]
