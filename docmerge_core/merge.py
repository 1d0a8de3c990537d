"""
Merge Driver
Runs the merge pipeline over every part of a document.

Stage order is fixed: block conditionals, repeater expansion, inline
conditionals, field substitution. Block conditionals go first so a guarded
section with no data is removed before anything tries to bind it; inline
conditionals and fields skip regions the repeater has already rendered.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional
from dataclasses import dataclass, field

from .conditionals import BlockConditionalProcessor, InlineConditionalProcessor
from .config import MergeConfig
from .context import MergeContext, MergeState, PendingImage, TextCache, build_merge_context
from .document_parser import DocumentParser, DocumentWriter
from .document_tree import Document, PageBreak, Paragraph, Table, iter_containers
from .expressions import ExpressionEvaluator
from .fields import substitute_fields
from .patterns import MarkerKind, lone_marker
from .repeaters import RepeaterEngine
from .sources import fetch_named_source
from .validation import ValidationEngine

logger = logging.getLogger(__name__)

__all__ = ['MergeConfig', 'MergeDriver', 'MergeResult', 'merge_document', 'merge_docx']


@dataclass
class MergeResult:
    """Outcome of one successful merge"""
    document: Document
    warnings: List[str] = field(default_factory=list)
    content: Optional[bytes] = None                  # Output .docx bytes (merge_docx only)
    pending_images: List[PendingImage] = field(default_factory=list)


class MergeDriver:
    """
    Orchestrates one merge against one document and one merge context.

    Fatal errors propagate unchanged; the caller gets either a MergeResult or
    an exception, never a half-merged result.
    """

    def __init__(self, config: Optional[MergeConfig] = None, cache: Optional[TextCache] = None):
        self.config = config or MergeConfig()
        self.cache = cache or TextCache()
        self.evaluator = ExpressionEvaluator()
        self.block_processor = BlockConditionalProcessor(self.evaluator)
        self.inline_processor = InlineConditionalProcessor(
            self.evaluator, max_iterations=self.config.max_inline_iterations
        )

    def merge(self, document: Document, context: MergeContext) -> MergeResult:
        """
        Merge a document in place.

        Args:
            document: Document tree; mutated by the merge
            context: Merged data context

        Returns:
            MergeResult with the merged document and non-fatal warnings

        Raises:
            MergeError: any fatal condition (unresolved field, missing section
                data, unclosed block, iteration limit)
        """
        self.cache.clear()
        state = MergeState(self.config, self.cache, document.key)

        for name, body in document.parts.items():
            logger.debug("Merging part %s", name)
            self._merge_part(body, context, state)

        self._run_image_pass(state)

        validation = ValidationEngine().validate_document(document)
        for warning in validation.warnings:
            state.warn(warning)

        logger.info(
            "Merge finished with %d warnings (cache hits=%d, misses=%d)",
            len(state.warnings), self.cache.hits, self.cache.misses,
        )
        return MergeResult(
            document=document,
            warnings=list(state.warnings),
            pending_images=list(state.pending_images),
        )

    def _merge_part(self, body, context: MergeContext, state: MergeState) -> None:
        self.block_processor.process_container(body, context, state)
        state.invalidate()
        logger.debug("Block conditionals done")

        RepeaterEngine(state, self.evaluator).process_container(body, context)
        state.invalidate()
        logger.debug("Repeater expansion done")

        for paragraph in self._open_paragraphs(body.children, state):
            self.inline_processor.process_paragraph(paragraph, context, state.warn)
        state.invalidate()
        logger.debug("Inline conditionals done")

        for paragraph in self._open_paragraphs(body.children, state):
            text = paragraph.get_text()
            result = substitute_fields(
                text, context,
                currency_symbol=self.config.currency_symbol,
                on_warning=state.warn,
                pending_images=state.pending_images,
                node=paragraph,
            )
            if result != text:
                paragraph.set_text(result)
        self._insert_page_breaks(body)
        state.invalidate()
        logger.debug("Field substitution done")

    def _open_paragraphs(self, nodes: list, state: MergeState):
        """Paragraphs outside regions the repeater already rendered"""
        for node in nodes:
            if state.is_expanded(node):
                continue
            if isinstance(node, Paragraph):
                yield node
            elif isinstance(node, Table):
                for row in node.rows:
                    if state.is_expanded(row):
                        continue
                    for cell in row.cells:
                        yield from self._open_paragraphs(cell.children, state)

    def _insert_page_breaks(self, body) -> None:
        for container in [body] + list(iter_containers(body.children)):
            children = list(container.children)
            rebuilt = [self._page_break_for(node) or node for node in children]
            if any(a is not b for a, b in zip(rebuilt, children)):
                container.replace_children(rebuilt)

    def _page_break_for(self, node) -> Optional[PageBreak]:
        if not isinstance(node, Paragraph) or '{{' not in node.get_text():
            return None
        marker = lone_marker(node.get_text())
        if marker is not None and marker.kind == MarkerKind.PAGE_BREAK:
            return PageBreak(attributes=node.attributes)
        return None

    def _run_image_pass(self, state: MergeState) -> None:
        if not state.pending_images:
            return
        if self.config.image_handler is not None:
            logger.debug("Handing %d image markers to the image pass", len(state.pending_images))
            self.config.image_handler(list(state.pending_images))
            return
        fields = sorted({image.field for image in state.pending_images})
        state.warn(f"No image handler configured; image markers left in place for: {fields}")


def merge_document(document: Document, data: Mapping, field_types: Optional[Mapping] = None,
                   config: Optional[MergeConfig] = None,
                   named_sources: Optional[Mapping] = None,
                   system_variables: Optional[Mapping] = None) -> MergeResult:
    """
    Merge a document tree against plain data.

    Args:
        document: Document tree to merge in place
        data: Primary record fields
        field_types: Path -> format name for implicit formatting
        config: Merge settings
        named_sources: Alias -> list of records
        system_variables: Extra top-level variables (user, organization)

    Returns:
        MergeResult
    """
    context = build_merge_context(
        record=data,
        system_variables=system_variables,
        named_sources=named_sources,
        field_types=field_types,
    )
    return MergeDriver(config).merge(document, context)


def merge_docx(template_bytes: bytes, data: Mapping, field_types: Optional[Mapping] = None,
               named_sources: Optional[Mapping[str, Any]] = None,
               config: Optional[MergeConfig] = None,
               system_variables: Optional[Mapping] = None) -> MergeResult:
    """
    Merge a .docx template and return the output bytes.

    Named sources may be given as lists of records or as URLs; URLs are
    fetched before the merge starts.

    Returns:
        MergeResult with ``content`` set to the merged .docx bytes
    """
    document = DocumentParser().parse_document(template_bytes)
    sources = load_named_sources(named_sources or {})
    result = merge_document(document, data, field_types, config, sources, system_variables)
    result.content = DocumentWriter().write_document(result.document)
    return result


def load_named_sources(named_sources: Mapping[str, Any]) -> Dict[str, Any]:
    """Fetch every source given as a URL string; pass lists through"""
    loaded = {}
    for alias, source in named_sources.items():
        if isinstance(source, str):
            loaded[alias] = fetch_named_source(source, alias=alias)
        else:
            loaded[alias] = source
    return loaded
