"""
Field Resolver for Template Substitution
Parses {{path:format ?? 'default'}} markers and replaces them with rendered values.
"""

import re
import logging
from typing import Any, List, Optional
from dataclasses import dataclass

from .context import MergeContext, PendingImage, UNRESOLVED, is_missing
from .config import DEFAULT_CURRENCY_SYMBOL
from .errors import UnresolvedFieldError
from .formatting import FormatError, format_value, stringify
from .patterns import MARKER_RE, MarkerKind, classify_marker

logger = logging.getLogger(__name__)

_DEFAULT_SPLIT_RE = re.compile(r'\?\?')
_QUOTED_RE = re.compile(r'''^(?P<quote>['"])(?P<body>.*)(?P=quote)$''', re.DOTALL)


@dataclass
class FieldSpec:
    """Parsed field marker: path[:format] [?? 'default']"""
    path: str
    format: Optional[str] = None
    default: Optional[str] = None


def parse_field_spec(raw: str) -> FieldSpec:
    """
    Parse the inside of a field marker.

    Args:
        raw: Text between the braces, e.g. "Amount:currency ?? '0.00'"

    Returns:
        FieldSpec with the default already unquoted
    """
    default = None
    body = raw

    split = _DEFAULT_SPLIT_RE.search(raw)
    if split:
        body = raw[:split.start()]
        default_text = raw[split.end():].strip()
        quoted = _QUOTED_RE.match(default_text)
        default = quoted.group('body') if quoted else default_text

    fmt = None
    body = body.strip()
    if ':' in body:
        body, fmt = body.split(':', 1)
        fmt = fmt.strip() or None

    return FieldSpec(path=body.strip(), format=fmt, default=default)


class FieldResolver:
    """
    Resolve field specs against a merge context and render them.

    Fail-fast: a field with no value and no default raises UnresolvedFieldError.
    """

    def __init__(self, context: MergeContext, currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
                 on_warning=None):
        self.context = context
        self.currency_symbol = currency_symbol
        self.on_warning = on_warning

    def render(self, spec: FieldSpec) -> str:
        """
        Render one field.

        Args:
            spec: Parsed field spec

        Returns:
            Rendered text

        Raises:
            UnresolvedFieldError: when the path is missing and there is no default
        """
        value = self.context.resolve(spec.path)

        if is_missing(value):
            if spec.default is not None:
                return spec.default
            raise UnresolvedFieldError(spec.path)

        fmt = spec.format or self.context.field_type(spec.path)
        try:
            return format_value(value, fmt, self.currency_symbol)
        except FormatError as e:
            self._warn(f"{e} for field '{spec.path}'; using plain text")
            return stringify(value)

    def resolve_value(self, path: str) -> Any:
        value = self.context.resolve(path)
        return None if value is UNRESOLVED else value

    def _warn(self, message: str) -> None:
        if self.on_warning is not None:
            self.on_warning(message)
        else:
            logger.warning(message)


def substitute_fields(text: str, context: MergeContext,
                      currency_symbol: str = DEFAULT_CURRENCY_SYMBOL,
                      on_warning=None,
                      pending_images: Optional[List[PendingImage]] = None,
                      node: Any = None) -> str:
    """
    Replace every field marker in text.

    Control markers (conditionals, sections, page breaks) are left untouched,
    as are IMAGE markers; when ``pending_images`` is given each image marker
    is recorded there with its value resolved in this context.

    Args:
        text: Text containing {{...}} markers
        context: Merge or row context
        currency_symbol: Default currency symbol
        on_warning: Callback for non-fatal problems
        pending_images: Collector for deferred image markers
        node: Tree node the text belongs to, recorded with pending images

    Returns:
        Text with field markers replaced
    """
    if '{{' not in text:
        return text

    resolver = FieldResolver(context, currency_symbol, on_warning)

    def replacer(match):
        info = classify_marker(match.group(1))
        kind = info['kind']

        if kind == MarkerKind.IMAGE:
            if pending_images is not None:
                pending_images.append(PendingImage(
                    node=node,
                    marker=match.group(0),
                    field=info['argument'],
                    value=resolver.resolve_value(info['argument']),
                ))
            return match.group(0)

        if kind != MarkerKind.FIELD:
            return match.group(0)

        spec = parse_field_spec(match.group(1))
        if not spec.path:
            return match.group(0)
        return resolver.render(spec)

    return MARKER_RE.sub(replacer, text)


def create_field_resolver(context: MergeContext) -> FieldResolver:
    """Factory function for FieldResolver"""
    return FieldResolver(context)
