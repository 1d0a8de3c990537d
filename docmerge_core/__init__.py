"""
Docmerge Core - Template Merge Engine
Fields, conditionals and repeating sections merged into Word documents.
"""

from .errors import (
    MergeError,
    ExpressionError,
    UnresolvedFieldError,
    MissingSectionDataError,
    UnclosedBlockError,
    IterationLimitError,
    DocumentFormatError,
    SourceFetchError,
)
from .patterns import PATTERNS, MarkerKind, scan_markers
from .config import MergeConfig
from .context import MergeContext, PendingImage, TextCache, UNRESOLVED, build_merge_context, resolve_path
from .expressions import ExpressionEvaluator
from .formatting import format_value
from .fields import FieldSpec, FieldResolver, parse_field_spec, substitute_fields
from .conditionals import InlineConditionalProcessor, BlockConditionalProcessor
from .repeaters import RepeaterEngine
from .document_tree import Document, Body, Paragraph, Table, Row, Cell, PageBreak, OpaqueNode
from .document_parser import DocumentParser, DocumentWriter
from .format_preserver import FormatPreserver
from .validation import ValidationEngine
from .sources import fetch_named_source, fetch_named_sources
from .merge import MergeDriver, MergeResult, merge_document, merge_docx

__version__ = "1.0.0"
__all__ = [
    "MergeError",
    "ExpressionError",
    "UnresolvedFieldError",
    "MissingSectionDataError",
    "UnclosedBlockError",
    "IterationLimitError",
    "DocumentFormatError",
    "SourceFetchError",
    "PATTERNS",
    "MarkerKind",
    "scan_markers",
    "MergeConfig",
    "MergeContext",
    "PendingImage",
    "TextCache",
    "UNRESOLVED",
    "build_merge_context",
    "resolve_path",
    "ExpressionEvaluator",
    "format_value",
    "FieldSpec",
    "FieldResolver",
    "parse_field_spec",
    "substitute_fields",
    "InlineConditionalProcessor",
    "BlockConditionalProcessor",
    "RepeaterEngine",
    "Document",
    "Body",
    "Paragraph",
    "Table",
    "Row",
    "Cell",
    "PageBreak",
    "OpaqueNode",
    "DocumentParser",
    "DocumentWriter",
    "FormatPreserver",
    "ValidationEngine",
    "fetch_named_source",
    "fetch_named_sources",
    "MergeDriver",
    "MergeResult",
    "merge_document",
    "merge_docx",
]
