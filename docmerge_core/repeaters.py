"""
Repeater and Table Expansion Engine
Replays a captured row or block once per record of a bound collection.

Two marker syntaxes open a section: ``{{#Name}}`` for a collection on the
current record and ``{{@Alias}}`` for an external named source. In a table the
section is the run of rows from the row holding the opener to the row holding
the matching closer. Outside tables a section is a span of text within one
paragraph, or a run of sibling blocks when the markers sit in different
paragraphs.
"""

import re
import copy
import logging
from typing import List, Optional, Tuple
from dataclasses import dataclass, field

from .context import MergeContext, MergeState, PendingImage, UNRESOLVED, resolve_path
from .conditionals import InlineConditionalProcessor
from .document_tree import Paragraph, Row, Table, iter_paragraphs
from .errors import MissingSectionDataError
from .expressions import ExpressionEvaluator
from .fields import substitute_fields
from .format_preserver import FormatPreserver, ParagraphSnapshot, RowSnapshot
from .patterns import Marker, MarkerKind, scan_markers

logger = logging.getLogger(__name__)

SECTION_KINDS = frozenset({MarkerKind.SECTION_START, MarkerKind.SECTION_END})
COLLECTION = "collection"
NAMED_SOURCE = "source"

# Stands in for a section span while the text around it is rendered
SPAN_TOKEN_OPEN = "\ue000"
SPAN_TOKEN_CLOSE = "\ue001"
SPAN_TOKEN_RE = re.compile(SPAN_TOKEN_OPEN + r"(\d+)" + SPAN_TOKEN_CLOSE)


@dataclass
class Section:
    """A repeating section bound to a list in the merge context"""
    binding_name: str
    binding_kind: str            # COLLECTION or NAMED_SOURCE
    start: Marker
    end: Optional[Marker] = None

    @property
    def label(self) -> str:
        return f"@{self.binding_name}" if self.binding_kind == NAMED_SOURCE else self.binding_name

    @classmethod
    def from_marker(cls, marker: Marker) -> "Section":
        kind = NAMED_SOURCE if marker.named_source else COLLECTION
        return cls(binding_name=marker.argument, binding_kind=kind, start=marker)


@dataclass
class TextSpan:
    """A complete section span inside one text blob"""
    section: Section
    start: int
    end: int
    body: str
    trim_newline: bool = False   # Marker lines ended the text; drop the last rendered newline


@dataclass
class RowTemplate:
    """Rows captured once per table section, replayed for every record"""
    section: Section
    rows: List[RowSnapshot] = field(default_factory=list)


def find_closer(markers: List[Marker], opener: Marker, depth: int = 1) -> Tuple[Optional[Marker], int]:
    """
    Depth-aware search for the marker closing ``opener``.

    Args:
        markers: Section markers after the opener, in order
        opener: The section start marker
        depth: Nesting depth carried over from earlier text

    Returns:
        (closing marker or None, remaining depth)
    """
    for marker in markers:
        if (marker.kind == MarkerKind.SECTION_START
                and marker.argument == opener.argument
                and marker.named_source == opener.named_source):
            depth += 1
        elif marker.closes(opener):
            depth -= 1
            if depth == 0:
                return marker, 0
    return None, depth


class RepeaterEngine:
    """
    Detect repeating sections, bind them to lists and replay their template.

    Binding looks first at the current record and then at the merge context;
    an absent, empty or non-list binding is fatal. In replayed text the
    conditionals and fields around a nested section are resolved first, so a
    false condition drops the section before it binds; rendered values are
    never rescanned for markers. Everything produced is registered as expanded
    so later pipeline stages leave it alone.
    """

    def __init__(self, state: MergeState, evaluator: Optional[ExpressionEvaluator] = None):
        self.state = state
        self.preserver = FormatPreserver()
        self.inline = InlineConditionalProcessor(
            evaluator or ExpressionEvaluator(),
            max_iterations=state.config.max_inline_iterations,
        )

    # =========================================================================
    # TREE WALK
    # =========================================================================

    def process_container(self, container, context: MergeContext, nested: bool = False) -> None:
        """
        Expand every section in a block list and the tables inside it.

        Args:
            container: Body or Cell
            context: Merge context in scope
            nested: True inside a replayed record; {{#X}} then binds to that
                record only
        """
        nodes = list(container.children)
        result = []
        changed = False
        i = 0

        while i < len(nodes):
            node = nodes[i]

            if isinstance(node, Table):
                if not self.state.is_expanded(node):
                    self.process_table(node, context, nested)
                result.append(node)
                i += 1
                continue

            if not isinstance(node, Paragraph) or self.state.is_expanded(node):
                result.append(node)
                i += 1
                continue

            starts = scan_markers(self.state.text_of(node), frozenset({MarkerKind.SECTION_START}))
            if not starts:
                result.append(node)
                i += 1
                continue

            end_index, closer = self._find_block_end(nodes, i, starts[0])
            if end_index is None:
                self.state.warn(f"Section '{starts[0].argument}' has no closing marker; left as is")
                result.append(node)
                i += 1
                continue

            if end_index == i:
                self._expand_paragraph_inline(node, context, nested)
                result.append(node)
                i += 1
                continue

            section = Section.from_marker(starts[0])
            section.end = closer
            result.extend(self._expand_blocks(nodes[i:end_index + 1], section, context, nested))
            changed = True
            i = end_index + 1

        if changed:
            container.replace_children(result)
            self.state.invalidate()

    def process_table(self, table: Table, context: MergeContext, nested: bool = False) -> None:
        """
        Expand row sections in a table, then recurse into untouched cells.

        A table without section markers is left for plain field substitution.
        """
        rows = list(table.rows)
        result = []
        changed = False
        i = 0

        while i < len(rows):
            row = rows[i]
            if self.state.is_expanded(row):
                result.append(row)
                i += 1
                continue

            starts = scan_markers(self.state.text_of(row), frozenset({MarkerKind.SECTION_START}))
            if not starts:
                result.append(row)
                i += 1
                continue

            section = Section.from_marker(starts[0])
            end_index = self._find_row_end(rows, i, section)
            if end_index is None:
                self.state.warn(
                    f"Section '{section.label}' has no closing marker; repeating its first row only"
                )
                end_index = i

            result.extend(self._expand_rows(rows[i:end_index + 1], section, context, nested))
            changed = True
            i = end_index + 1

        if changed:
            table.replace_children(result)
            self.state.invalidate()

        for row in table.rows:
            if self.state.is_expanded(row):
                continue
            for cell in row.cells:
                self.process_container(cell, context, nested)

    # =========================================================================
    # BINDING
    # =========================================================================

    def resolve_binding(self, section: Section, context: MergeContext,
                        record_only: bool = False) -> list:
        """
        Find the non-empty list a section repeats over.

        Args:
            section: Section being expanded
            context: Context in scope; its record is searched first
            record_only: Only look at the current record (nested collections)

        Returns:
            List of records

        Raises:
            MissingSectionDataError: absent, empty or non-list binding
        """
        name = section.binding_name
        candidates = [resolve_path(context.record, name)]
        if not record_only:
            candidates.append(context.resolve(name))

        for value in candidates:
            if isinstance(value, (list, tuple)) and value:
                return list(value)

        found = [value for value in candidates if value is not UNRESOLVED and value is not None]
        if not found:
            where = "the current record" if record_only else "the current record or the merge context"
            raise MissingSectionDataError(section.label, f"no data in {where}")
        if any(isinstance(value, (list, tuple)) for value in found):
            raise MissingSectionDataError(section.label, "an empty list")
        raise MissingSectionDataError(
            section.label, f"a non-list value of type {type(found[0]).__name__}"
        )

    def _records(self, section: Section, context: MergeContext, record_only: bool = False) -> list:
        records = self.resolve_binding(section, context, record_only)
        limit = self.state.config.max_section_rows
        if len(records) > limit:
            self.state.warn(
                f"Section '{section.label}' has {len(records)} records, more than the {limit} expected"
            )
        logger.debug("Expanding section '%s' over %d records", section.label, len(records))
        return records

    # =========================================================================
    # TABLE ROWS
    # =========================================================================

    def _find_row_end(self, rows: List[Row], start_index: int, section: Section) -> Optional[int]:
        depth = 1
        for j in range(start_index, len(rows)):
            markers = scan_markers(self.state.text_of(rows[j]), SECTION_KINDS)
            if j == start_index:
                markers = [m for m in markers if m.start > section.start.start]
            closer, depth = find_closer(markers, section.start, depth)
            if closer is not None:
                section.end = closer
                return j
        return None

    def capture_template(self, rows: List[Row], section: Section) -> RowTemplate:
        """Snapshot the template rows once, with the section markers removed"""
        template = RowTemplate(section=section)
        for row in rows:
            template.rows.append(self.preserver.capture_row(row))

        self._strip_first(template.rows[0], section.start.text)
        if section.end is not None:
            self._strip_last(template.rows[-1], section.end.text)
        return template

    def _expand_rows(self, rows: List[Row], section: Section, context: MergeContext,
                     nested: bool = False) -> List[Row]:
        records = self._records(section, context, nested and section.binding_kind == COLLECTION)
        template = self.capture_template(rows, section)
        produced = []

        for index, record in enumerate(records):
            row_context = context.for_row(record, index)
            for position, snapshot in enumerate(template.rows):
                images = []
                texts = [self.render_text(cell.text, row_context, images) for cell in snapshot.cells]

                if index == 0:
                    row = rows[position]
                    self.preserver.write_row(row, texts)
                else:
                    row = self.preserver.build_row(snapshot, texts)

                self._claim_images(images, list(iter_paragraphs([Table(children=[row])])))
                self.state.mark_expanded(row)
                produced.append(row)

        return produced

    def _strip_first(self, snapshot: RowSnapshot, marker_text: str) -> None:
        for cell in snapshot.cells:
            if marker_text in cell.text:
                cell.text = _strip_marker_line(cell.text, cell.text.index(marker_text), marker_text)
                return

    def _strip_last(self, snapshot: RowSnapshot, marker_text: str) -> None:
        for cell in reversed(snapshot.cells):
            if marker_text in cell.text:
                cell.text = _strip_marker_line(cell.text, cell.text.rindex(marker_text), marker_text)
                return

    # =========================================================================
    # INLINE TEXT
    # =========================================================================

    def render_text(self, text: str, context: MergeContext, images: Optional[list] = None,
                    nested: bool = True) -> str:
        """
        Fully render captured text for one record.

        Complete section spans are set aside first; the surrounding text gets
        its conditionals and fields resolved, then each span still present is
        rendered once per record and put back. Rendered record values are
        never scanned for markers again.

        Args:
            text: Template text
            context: Context in scope
            images: Collector for deferred image markers
            nested: True inside a replayed record; {{#X}} then binds to that
                record only

        Returns:
            Rendered text
        """
        spans = self._find_spans(text)

        pieces = []
        last = 0
        for index, span in enumerate(spans):
            pieces.append(text[last:span.start])
            pieces.append(f"{SPAN_TOKEN_OPEN}{index}{SPAN_TOKEN_CLOSE}")
            last = span.end
        pieces.append(text[last:])
        outer = "".join(pieces)

        outer = self.inline.process_text(outer, context, self.state.warn)
        outer = substitute_fields(
            outer, context,
            currency_symbol=self.state.config.currency_symbol,
            on_warning=self.state.warn,
            pending_images=images,
        )
        if not spans:
            return outer

        return SPAN_TOKEN_RE.sub(
            lambda m: self._render_span(spans[int(m.group(1))], context, nested, images),
            outer,
        )

    def _find_spans(self, text: str) -> List[TextSpan]:
        """Top-level complete section spans in a text blob, left to right"""
        spans = []
        markers = scan_markers(text, SECTION_KINDS)
        search_from = 0

        while True:
            opener = next(
                (m for m in markers if m.kind == MarkerKind.SECTION_START and m.start >= search_from),
                None,
            )
            if opener is None:
                return spans

            closer, _ = find_closer([m for m in markers if m.start > opener.start], opener)
            if closer is None:
                self.state.warn(f"Section '{opener.argument}' has no closing marker; left as is")
                search_from = opener.end
                continue

            section = Section.from_marker(opener)
            section.end = closer
            start, end, body, line_mode = _section_span(text, opener, closer)
            spans.append(TextSpan(section, start, end, body, line_mode and end >= len(text)))
            search_from = end

    def _render_span(self, span: TextSpan, context: MergeContext, nested: bool,
                     images: Optional[list]) -> str:
        record_only = nested and span.section.binding_kind == COLLECTION
        records = self._records(span.section, context, record_only)
        rendered = "".join(
            self.render_text(span.body, context.for_row(record, index), images)
            for index, record in enumerate(records)
        )
        if span.trim_newline and rendered.endswith("\n"):
            rendered = rendered[:-1]
        return rendered

    def _expand_paragraph_inline(self, paragraph: Paragraph, context: MergeContext,
                                 nested: bool = False) -> None:
        images = []
        text = paragraph.get_text()
        result = self.render_text(text, context, images, nested=nested)
        if result != text:
            paragraph.set_text(result)
            self.state.invalidate()
        self._claim_images(images, [paragraph])
        self.state.mark_expanded(paragraph)

    # =========================================================================
    # SIBLING BLOCKS
    # =========================================================================

    def _find_block_end(self, nodes: list, start_index: int,
                        opener: Marker) -> Tuple[Optional[int], Optional[Marker]]:
        depth = 1
        for j in range(start_index, len(nodes)):
            node = nodes[j]
            if not isinstance(node, Paragraph):
                continue
            markers = scan_markers(self.state.text_of(node), SECTION_KINDS)
            if j == start_index:
                markers = [m for m in markers if m.start > opener.start]
            closer, depth = find_closer(markers, opener, depth)
            if closer is not None:
                return j, closer
        return None, None

    def _expand_blocks(self, nodes: list, section: Section, context: MergeContext,
                       nested: bool = False) -> list:
        records = self._records(section, context, nested and section.binding_kind == COLLECTION)

        # Capture before record 0 writes into the originals
        template = []
        for position, node in enumerate(nodes):
            if isinstance(node, Paragraph):
                snapshot = self.preserver.capture_paragraph(node)
                if position == 0:
                    start = snapshot.text.index(section.start.text)
                    snapshot.text = _strip_marker_line(snapshot.text, start, section.start.text)
                if position == len(nodes) - 1:
                    end = snapshot.text.rindex(section.end.text)
                    snapshot.text = _strip_marker_line(snapshot.text, end, section.end.text)
                if position in (0, len(nodes) - 1) and not snapshot.text.strip():
                    continue
                template.append((node, snapshot))
            else:
                template.append((node, copy.deepcopy(node)))

        produced = []
        for index, record in enumerate(records):
            row_context = context.for_row(record, index)
            for original, snapshot in template:
                images = []
                if isinstance(snapshot, ParagraphSnapshot):
                    text = self.render_text(snapshot.text, row_context, images)
                    if index == 0:
                        node = original
                        node.set_text(text)
                    else:
                        node = self.preserver.build_paragraph(snapshot, text)
                    self._claim_images(images, [node])
                else:
                    node = original if index == 0 else copy.deepcopy(snapshot)
                    self._render_in_place(node, row_context, images)
                self.state.mark_expanded(node)
                produced.append(node)

        return produced

    def _render_in_place(self, node, context: MergeContext, images: list) -> None:
        """
        Render a non-paragraph block (a table) for one record.

        Row sections in the table are expanded first, bound to the record;
        the paragraphs they did not render are then rendered one by one.
        """
        if isinstance(node, Table):
            self.process_table(node, context, nested=True)
        for paragraph in list(self._unrendered_paragraphs([node])):
            before = len(images)
            paragraph.set_text(self.render_text(paragraph.get_text(), context, images))
            for image in images[before:]:
                image.node = paragraph
        if isinstance(node, Table):
            for row in node.rows:
                self.state.mark_expanded(row)
        self.state.pending_images.extend(images)

    def _unrendered_paragraphs(self, nodes: list):
        for node in nodes:
            if self.state.is_expanded(node):
                continue
            if isinstance(node, Paragraph):
                yield node
            elif isinstance(node, Table):
                for row in node.rows:
                    if self.state.is_expanded(row):
                        continue
                    for cell in row.cells:
                        yield from self._unrendered_paragraphs(cell.children)

    def _claim_images(self, images: List[PendingImage], paragraphs: List[Paragraph]) -> None:
        for image in images:
            if image.node is None:
                image.node = next(
                    (p for p in paragraphs if image.marker in p.get_text()),
                    paragraphs[0] if paragraphs else None,
                )
        self.state.pending_images.extend(images)


def _strip_marker_line(text: str, index: int, marker_text: str) -> str:
    """Remove a marker; when it stood alone on its line, remove the line too"""
    before = text[:index]
    after = text[index + len(marker_text):]
    line_start = before.rfind("\n") + 1
    alone_before = not before[line_start:].strip()
    newline = after.find("\n")
    alone_after = not (after if newline == -1 else after[:newline]).strip()

    if alone_before and alone_after and "\n" in text:
        if newline != -1:
            return before[:line_start] + after[newline + 1:]
        return before[:max(line_start - 1, 0)]
    return before + after


def _section_span(text: str, opener: Marker, closer: Marker) -> Tuple[int, int, str, bool]:
    """
    Bounds and body of a text section.

    When both markers sit alone on their own lines the body is whole lines and
    the marker lines vanish with the span.
    """
    span_start, span_end = opener.start, closer.end
    body = text[opener.end:closer.start]

    opener_alone = (opener.start == 0 or text[opener.start - 1] == "\n") and \
        text[opener.end:opener.end + 1] == "\n"
    closer_alone = closer.start > 0 and text[closer.start - 1] == "\n" and \
        (closer.end == len(text) or text[closer.end] == "\n")

    if opener_alone and closer_alone:
        body = body[1:]
        if span_end < len(text):
            span_end += 1
        return span_start, span_end, body, True

    return span_start, span_end, body, False


def create_repeater_engine(state: MergeState) -> RepeaterEngine:
    """Factory function for RepeaterEngine"""
    return RepeaterEngine(state)
