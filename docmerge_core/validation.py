"""
Validation Engine for Merged Documents
Reports markers left behind after a merge.
"""

import logging
from typing import Dict, List
from dataclasses import dataclass, field

from .document_tree import Document, iter_paragraphs
from .patterns import MarkerKind, scan_markers

logger = logging.getLogger(__name__)


@dataclass
class LeftoverMarker:
    """A marker still present in the merged output"""
    part: str
    kind: MarkerKind
    text: str


@dataclass
class DocumentValidation:
    """Complete document validation result"""
    leftovers: List[LeftoverMarker] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.leftovers

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            "is_clean": self.is_clean,
            "leftovers": [
                {"part": m.part, "kind": m.kind.value, "text": m.text}
                for m in self.leftovers
            ],
            "warnings": self.warnings,
        }


class ValidationEngine:
    """
    Scan a merged document for markers no stage consumed.

    Leftovers are never errors: an IF with no /IF, a stray ELSE or an unclosed
    section is reported and the output is still produced.
    """

    MESSAGES = {
        MarkerKind.IF: "Unclosed conditional left in output: {markers}",
        MarkerKind.ELSEIF: "ELSEIF outside a conditional left in output: {markers}",
        MarkerKind.ELSE: "ELSE outside a conditional left in output: {markers}",
        MarkerKind.END_IF: "Unmatched {{{{/IF}}}} left in output: {markers}",
        MarkerKind.SECTION_START: "Unclosed repeating section left in output: {markers}",
        MarkerKind.SECTION_END: "Unmatched section closer left in output: {markers}",
        MarkerKind.PAGE_BREAK: "Page break marker not alone in its paragraph: {markers}",
        MarkerKind.FIELD: "Unfilled placeholders found: {markers}",
    }

    def __init__(self, include_images: bool = False):
        self.include_images = include_images

    def validate_document(self, document: Document) -> DocumentValidation:
        """
        Validate every part of a merged document.

        Args:
            document: Merged document tree

        Returns:
            DocumentValidation with leftovers and one warning per marker kind
        """
        result = DocumentValidation()

        for name, body in document.parts.items():
            for paragraph in iter_paragraphs(body.children):
                result.leftovers.extend(self._check_orphaned_markers(name, paragraph.get_text()))

        by_kind: Dict[MarkerKind, List[str]] = {}
        for leftover in result.leftovers:
            by_kind.setdefault(leftover.kind, []).append(leftover.text)

        for kind, texts in by_kind.items():
            message = self.MESSAGES.get(kind)
            if message:
                result.warnings.append(message.format(markers=texts[:3]))

        if result.leftovers:
            logger.info("Validation found %d leftover markers", len(result.leftovers))
        return result

    def _check_orphaned_markers(self, part: str, text: str) -> List[LeftoverMarker]:
        """Check for markers still present in one paragraph"""
        if '{{' not in text:
            return []
        return [
            LeftoverMarker(part=part, kind=marker.kind, text=marker.text)
            for marker in scan_markers(text)
            if self.include_images or marker.kind != MarkerKind.IMAGE
        ]


def create_validation_engine() -> ValidationEngine:
    """Factory function for ValidationEngine"""
    return ValidationEngine()
