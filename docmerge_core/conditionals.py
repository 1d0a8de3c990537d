"""
Conditional Processors for Template Merging
Resolves IF/ELSEIF/ELSE markers inside one text blob and IF spans across whole nodes.
"""

import logging
from typing import Any, List, Optional
from dataclasses import dataclass, field

from .context import MergeContext, MergeState
from .document_tree import Paragraph, Row, Table
from .errors import IterationLimitError, UnclosedBlockError
from .expressions import ExpressionEvaluator
from .patterns import CONDITIONAL_KINDS, Marker, MarkerKind, has_markers, lone_marker, scan_markers

logger = logging.getLogger(__name__)


@dataclass
class Branch:
    """One branch of a conditional: condition None means ELSE"""
    condition: Optional[str]
    content: str


@dataclass
class ConditionalBlock:
    """Represents a complete IF ... /IF span in a text blob"""
    branches: List[Branch] = field(default_factory=list)
    start: int = 0               # Offset of the IF marker
    end: int = 0                 # Offset just past the /IF marker


class InlineConditionalProcessor:
    """
    Resolve nested IF/ELSEIF/ELSE/ENDIF markers within a single text blob.

    Each pass replaces every innermost complete IF.../IF span (one whose body
    holds no other IF) with its selected branch, right to left so earlier
    offsets stay valid. Passes repeat until nothing is left to resolve.
    """

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None, max_iterations: int = 20):
        self.evaluator = evaluator or ExpressionEvaluator()
        self.max_iterations = max_iterations

    def process_text(self, text: str, context: Any, on_warning=None) -> str:
        """
        Resolve all inline conditionals in text.

        Args:
            text: Text blob with conditional markers
            context: MergeContext or mapping used to evaluate conditions
            on_warning: Callback for conditions that fail to evaluate

        Returns:
            Text with every complete conditional replaced by its selected branch

        Raises:
            IterationLimitError: if conditionals remain after max_iterations passes
        """
        if not has_markers(text, CONDITIONAL_KINDS):
            return text

        original = text
        for _ in range(self.max_iterations):
            blocks = self.find_innermost_blocks(text)
            if not blocks:
                return text
            for block in reversed(blocks):
                selected = self.select_branch(block, context, on_warning)
                text = text[:block.start] + selected + text[block.end:]

        if self.find_innermost_blocks(text):
            raise IterationLimitError(self.max_iterations, original)
        return text

    def process_paragraph(self, paragraph: Paragraph, context: Any, on_warning=None) -> bool:
        """Apply to one paragraph; returns True when its text changed"""
        text = paragraph.get_text()
        result = self.process_text(text, context, on_warning)
        if result == text:
            return False
        paragraph.set_text(result)
        return True

    def find_innermost_blocks(self, text: str) -> List[ConditionalBlock]:
        """
        Locate every complete IF span that contains no nested IF.

        Unbalanced markers (an IF with no /IF, a stray ELSE or /IF) are skipped
        and left in the text.
        """
        markers = scan_markers(text, CONDITIONAL_KINDS)
        blocks = []
        stack = []      # frames: [if_marker, has_nested_if, branch_markers]

        for marker in markers:
            if marker.kind == MarkerKind.IF:
                if stack:
                    stack[-1][1] = True
                stack.append([marker, False, []])
            elif marker.kind in (MarkerKind.ELSEIF, MarkerKind.ELSE):
                if stack:
                    stack[-1][2].append(marker)
            elif marker.kind == MarkerKind.END_IF:
                if not stack:
                    continue
                opener, nested, branch_markers = stack.pop()
                if not nested:
                    blocks.append(self._build_block(text, opener, branch_markers, marker))

        blocks.sort(key=lambda b: b.start)
        return blocks

    def select_branch(self, block: ConditionalBlock, context: Any, on_warning=None) -> str:
        """First branch whose condition holds, or the ELSE branch, or nothing"""
        for branch in block.branches:
            if branch.condition is None:
                return branch.content
            if self.evaluator.evaluate_condition(branch.condition, context, on_warning):
                return branch.content
        return ""

    def _build_block(self, text: str, opener: Marker, branch_markers: List[Marker],
                     closer: Marker) -> ConditionalBlock:
        block = ConditionalBlock(start=opener.start, end=closer.end)
        heads = [opener] + branch_markers
        for i, head in enumerate(heads):
            body_end = heads[i + 1].start if i + 1 < len(heads) else closer.start
            condition = None if head.kind == MarkerKind.ELSE else head.argument
            block.branches.append(Branch(condition=condition, content=text[head.end:body_end]))
        return block


class BlockConditionalProcessor:
    """
    Resolve IF spans whose {{IF cond}} and {{/IF}} markers each fill a whole node.

    The body may be any number of sibling nodes, tables included. Lone
    {{ELSEIF cond}} and {{ELSE}} nodes at the span's own depth split it into
    branches; only the selected branch is kept. Sibling lists are rebuilt and
    swapped in rather than edited while scanning.
    """

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.evaluator = evaluator or ExpressionEvaluator()

    def process_container(self, container, context: MergeContext, state: MergeState) -> None:
        """
        Resolve block conditionals in a container and everything below it.

        Args:
            container: Body or Cell whose children are sibling blocks
            context: Merge context for evaluating conditions
            state: Pipeline state (warnings, text cache)

        Raises:
            UnclosedBlockError: when an opener has no matching closer among its siblings
        """
        self._rebuild(container, context, state)

    def _rebuild(self, container, context: MergeContext, state: MergeState) -> None:
        current = list(container.children)
        rebuilt = self._process_nodes(current, context, state)
        if len(rebuilt) != len(current) or any(a is not b for a, b in zip(rebuilt, current)):
            container.replace_children(rebuilt)
            state.invalidate()

    def _process_nodes(self, nodes: list, context: MergeContext, state: MergeState) -> list:
        result = []
        i = 0

        while i < len(nodes):
            node = nodes[i]
            marker = self._block_marker(node, state)

            if marker is not None and marker.kind == MarkerKind.IF:
                closer = self._find_closer(nodes, i, state)
                if closer is None:
                    raise UnclosedBlockError(marker.argument)
                selected = self._select_branch(marker, nodes[i + 1:closer], context, state)
                if selected is None:
                    logger.debug("Removed block '%s' (%d nodes)", marker.argument, closer - i + 1)
                else:
                    result.extend(self._process_nodes(selected, context, state))
                i = closer + 1
                continue

            if marker is not None and marker.kind == MarkerKind.END_IF:
                state.warn("Removed a {{/IF}} block marker with no matching {{IF}}")
                i += 1
                continue

            if isinstance(node, Table):
                self._process_table(node, context, state)
            elif isinstance(node, Row):
                for cell in node.cells:
                    self._rebuild(cell, context, state)

            result.append(node)
            i += 1

        return result

    def _process_table(self, table: Table, context: MergeContext, state: MergeState) -> None:
        self._rebuild(table, context, state)

    def _select_branch(self, opener: Marker, body: list, context: MergeContext,
                       state: MergeState) -> Optional[list]:
        """
        Split a span body at its own ELSEIF/ELSE nodes and pick one branch.

        Args:
            opener: The IF marker of the span
            body: Nodes between the IF and /IF nodes
            context: Merge context for evaluating conditions
            state: Pipeline state

        Returns:
            Nodes of the first true branch or the ELSE branch, None when no
            branch is selected
        """
        branches = [(opener.argument, [])]
        depth = 0

        for node in body:
            marker = self._block_marker(node, state)
            if marker is not None:
                if marker.kind == MarkerKind.IF:
                    depth += 1
                elif marker.kind == MarkerKind.END_IF:
                    depth -= 1
                elif depth == 0:
                    # ELSE has no condition
                    condition = marker.argument if marker.kind == MarkerKind.ELSEIF else None
                    branches.append((condition, []))
                    continue
            branches[-1][1].append(node)

        for condition, nodes in branches:
            if condition is None or self.evaluator.evaluate_condition(condition, context, state.warn):
                return nodes
        return None

    def _find_closer(self, nodes: list, start: int, state: MergeState) -> Optional[int]:
        depth = 0
        for j in range(start, len(nodes)):
            marker = self._block_marker(nodes[j], state)
            if marker is None:
                continue
            if marker.kind == MarkerKind.IF:
                depth += 1
            elif marker.kind == MarkerKind.END_IF:
                depth -= 1
                if depth == 0:
                    return j
        return None

    def _block_marker(self, node, state: MergeState) -> Optional[Marker]:
        if not isinstance(node, (Paragraph, Row)):
            return None
        text = state.text_of(node)
        if '{{' not in text:
            return None
        marker = lone_marker(text)
        if marker is not None and marker.kind in CONDITIONAL_KINDS:
            return marker
        return None


def create_inline_processor(max_iterations: int = 20) -> InlineConditionalProcessor:
    """Factory function for InlineConditionalProcessor"""
    return InlineConditionalProcessor(max_iterations=max_iterations)


def create_block_processor() -> BlockConditionalProcessor:
    """Factory function for BlockConditionalProcessor"""
    return BlockConditionalProcessor()
