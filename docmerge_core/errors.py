"""
Error Taxonomy for the Merge Engine
Fatal errors abort the whole merge; ExpressionError is recovered by the evaluator.
"""

from typing import Optional


class MergeError(Exception):
    """Base class for every error raised while merging a template"""


class ExpressionError(MergeError):
    """A condition could not be tokenized, parsed or evaluated"""

    def __init__(self, message: str, expression: Optional[str] = None, position: Optional[int] = None):
        self.expression = expression
        self.position = position
        if expression is not None:
            where = f" at position {position}" if position is not None else ""
            message = f"{message}{where} in condition '{expression}'"
        super().__init__(message)


class UnresolvedFieldError(MergeError):
    """A field has no value in the merge context and no default"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Field '{path}' could not be resolved and has no default")


class MissingSectionDataError(MergeError):
    """A repeater section is bound to an absent, empty or non-list value"""

    def __init__(self, section: str, reason: str = "no data"):
        self.section = section
        self.reason = reason
        super().__init__(
            f"Repeating section '{section}' has {reason}; "
            f"guard it with {{{{IF {section}}}}} if the data is optional"
        )


class UnclosedBlockError(MergeError):
    """A block-level IF marker has no matching /IF among its siblings"""

    def __init__(self, condition: str):
        self.condition = condition
        super().__init__(f"Block conditional '{{{{IF {condition}}}}}' has no matching {{{{/IF}}}}")


class IterationLimitError(MergeError):
    """Inline conditional resolution did not finish within the iteration cap"""

    def __init__(self, limit: int, text: str):
        self.limit = limit
        self.text = text
        snippet = text if len(text) <= 80 else text[:77] + "..."
        super().__init__(
            f"Inline conditionals still unresolved after {limit} passes: '{snippet}'"
        )


class DocumentFormatError(MergeError):
    """The template package could not be read as a Word document"""


class SourceFetchError(MergeError):
    """A named external source could not be fetched or was not a list"""

    def __init__(self, alias: str, reason: str):
        self.alias = alias
        self.reason = reason
        super().__init__(f"Named source '{alias}' could not be loaded: {reason}")
