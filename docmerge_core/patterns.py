"""
Marker Grammar for the Merge Engine
Regex definitions and a marker scanner shared by every pipeline stage.
"""

import re
from typing import Dict, List, Optional
from dataclasses import dataclass
from enum import Enum


class MarkerKind(Enum):
    FIELD = "field"
    IF = "if"
    ELSEIF = "elseif"
    ELSE = "else"
    END_IF = "end_if"
    SECTION_START = "section_start"
    SECTION_END = "section_end"
    IMAGE = "image"
    PAGE_BREAK = "page_break"


# =============================================================================
# CORE PATTERN DEFINITIONS
# =============================================================================

# Any {{...}} marker. Inner text never contains a closing brace pair.
MARKER_RE = re.compile(r'\{\{(.*?)\}\}', re.DOTALL)

PATTERNS = {
    # Conditionals
    'if': r'^IF\s+(?P<arg>.+)$',
    'elseif': r'^ELSE\s*IF\s+(?P<arg>.+)$',
    'else': r'^ELSE$',
    'end_if': r'^/\s*IF$',

    # Repeating sections: {{#Items}} / {{@Source}} ... {{/Items}} / {{/@Source}}
    'section_start': r'^(?P<sigil>[#@])\s*(?P<arg>[A-Za-z_][\w.]*)$',
    'section_end': r'^/\s*(?P<sigil>@?)\s*(?P<arg>[A-Za-z_][\w.]*)$',

    # Deferred to the image pass
    'image': r'^IMAGE\s*:\s*(?P<arg>.+)$',

    # Standalone paragraph replaced by a page break node
    'page_break': r'^PAGE_?BREAK$',
}

# Upper-case only, so fields named "Image" or "PageBreak" still resolve
_CASE_SENSITIVE = {'image', 'page_break'}

_COMPILED = {
    name: re.compile(pattern, re.DOTALL if name in _CASE_SENSITIVE else re.IGNORECASE | re.DOTALL)
    for name, pattern in PATTERNS.items()
}

# Checked in this order; END_IF must win over SECTION_END for {{/IF}}
_CLASSIFY_ORDER = [
    ('elseif', MarkerKind.ELSEIF),
    ('if', MarkerKind.IF),
    ('else', MarkerKind.ELSE),
    ('end_if', MarkerKind.END_IF),
    ('section_start', MarkerKind.SECTION_START),
    ('section_end', MarkerKind.SECTION_END),
    ('image', MarkerKind.IMAGE),
    ('page_break', MarkerKind.PAGE_BREAK),
]

CONTROL_KINDS = frozenset({
    MarkerKind.IF,
    MarkerKind.ELSEIF,
    MarkerKind.ELSE,
    MarkerKind.END_IF,
    MarkerKind.SECTION_START,
    MarkerKind.SECTION_END,
    MarkerKind.PAGE_BREAK,
})

CONDITIONAL_KINDS = frozenset({
    MarkerKind.IF,
    MarkerKind.ELSEIF,
    MarkerKind.ELSE,
    MarkerKind.END_IF,
})


@dataclass
class Marker:
    """A single {{...}} marker found in a text blob"""
    kind: MarkerKind
    text: str                    # Full marker text including braces
    inner: str                   # Stripped text between the braces
    start: int                   # Offset of the opening braces
    end: int                     # Offset just past the closing braces
    argument: str = ""           # Condition, section name, field spec or image field
    named_source: bool = False   # True for {{@Alias}} / {{/@Alias}}

    def closes(self, opener: "Marker") -> bool:
        """Check whether this section end marker closes the given start marker"""
        return (self.kind == MarkerKind.SECTION_END
                and opener.kind == MarkerKind.SECTION_START
                and self.argument == opener.argument
                and self.named_source == opener.named_source)


def classify_marker(inner: str) -> Dict:
    """
    Classify the text between a pair of braces.

    Args:
        inner: Marker content without the surrounding braces

    Returns:
        Dictionary with 'kind', 'argument' and 'named_source'
    """
    stripped = inner.strip()

    for name, kind in _CLASSIFY_ORDER:
        match = _COMPILED[name].match(stripped)
        if not match:
            continue
        groups = match.groupdict()
        if kind == MarkerKind.SECTION_END and groups['arg'].upper() == 'IF':
            continue
        return {
            'kind': kind,
            'argument': (groups.get('arg') or '').strip(),
            'named_source': groups.get('sigil') == '@',
        }

    return {'kind': MarkerKind.FIELD, 'argument': stripped, 'named_source': False}


def scan_markers(text: str, kinds: Optional[frozenset] = None) -> List[Marker]:
    """
    Tokenize every marker in text, left to right.

    Args:
        text: Text blob to scan
        kinds: Only return markers of these kinds (None = all)

    Returns:
        List of Marker objects ordered by position
    """
    markers = []

    for match in MARKER_RE.finditer(text):
        info = classify_marker(match.group(1))
        if kinds is not None and info['kind'] not in kinds:
            continue
        markers.append(Marker(
            kind=info['kind'],
            text=match.group(0),
            inner=match.group(1).strip(),
            start=match.start(),
            end=match.end(),
            argument=info['argument'],
            named_source=info['named_source'],
        ))

    return markers


def lone_marker(text: str) -> Optional[Marker]:
    """Return the marker if text consists of exactly one marker and whitespace"""
    stripped = text.strip()
    if not stripped.startswith('{{') or not stripped.endswith('}}'):
        return None

    markers = scan_markers(stripped)
    if len(markers) == 1 and markers[0].start == 0 and markers[0].end == len(stripped):
        return markers[0]
    return None


def has_markers(text: str, kinds: Optional[frozenset] = None) -> bool:
    """Cheap check used before doing any real work on a text blob"""
    if '{{' not in text:
        return False
    if kinds is None:
        return MARKER_RE.search(text) is not None
    return bool(scan_markers(text, kinds))
