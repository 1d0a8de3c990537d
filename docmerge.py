"""
Docmerge - Word Template Merge
Upload a marked-up .docx template and a JSON record, get the merged document back.

Templates use {{Field}} placeholders, {{IF ...}} conditionals and
{{#Collection}} repeating sections; see docmerge_core for the marker grammar.
"""

import streamlit as st
import json
import logging
from datetime import datetime
from typing import Dict, List, Tuple

from docmerge_core import (
    DocumentParser,
    MergeConfig,
    MergeError,
    MarkerKind,
    merge_docx,
    scan_markers,
)
from docmerge_core.document_tree import iter_paragraphs

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("docmerge")

# Page configuration
st.set_page_config(
    page_title="Docmerge - Template Merge",
    page_icon="🧩",
    layout="wide"
)

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

MARKER_ICONS = {
    MarkerKind.FIELD: "🔤",
    MarkerKind.IF: "🔀",
    MarkerKind.ELSEIF: "🔀",
    MarkerKind.ELSE: "🔀",
    MarkerKind.END_IF: "🔀",
    MarkerKind.SECTION_START: "🔁",
    MarkerKind.SECTION_END: "🔁",
    MarkerKind.IMAGE: "🖼️",
    MarkerKind.PAGE_BREAK: "📄",
}


# ============== INPUT READING FUNCTIONS ==============

def read_json_upload(file) -> Dict:
    """Read an uploaded JSON file into a dict"""
    if file is None:
        return {}
    file.seek(0)
    data = json.loads(file.read().decode('utf-8'))
    if not isinstance(data, dict):
        raise ValueError(f"{file.name} must contain a JSON object, not {type(data).__name__}")
    return data


def parse_json_text(text: str, label: str) -> Dict:
    """Parse JSON typed into a text area; empty means no value"""
    if not text.strip():
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{label} must be a JSON object")
    return data


def parse_source_lines(text: str) -> Dict[str, str]:
    """
    Parse "Alias = URL" lines into a mapping.

    Blank lines and lines starting with # are ignored.
    """
    sources = {}
    for line_no, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if '=' not in line:
            raise ValueError(f"Line {line_no}: expected 'Alias = URL'")
        alias, url = (part.strip() for part in line.split('=', 1))
        sources[alias.lstrip('@')] = url
    return sources


def list_template_markers(template_bytes: bytes) -> List[Tuple[str, MarkerKind, str]]:
    """Every marker in the template as (part, kind, marker text)"""
    document = DocumentParser().parse_document(template_bytes)
    found = []
    for name, body in document.parts.items():
        for paragraph in iter_paragraphs(body.children):
            for marker in scan_markers(paragraph.get_text()):
                found.append((name, marker.kind, marker.text))
    return found


# ============== MAIN APP ==============

def main():
    st.title("🧩 Docmerge")
    st.markdown("**Template Merge Engine** | Fields, conditionals and repeating tables for Word templates")

    # Settings
    st.sidebar.header("⚙️ Settings")
    defaults = MergeConfig.from_env()
    currency_symbol = st.sidebar.text_input("Currency symbol", value=defaults.currency_symbol)
    max_section_rows = st.sidebar.number_input(
        "Warn above this many section records", min_value=1, value=defaults.max_section_rows
    )
    max_inline_iterations = st.sidebar.number_input(
        "Inline conditional pass limit", min_value=1, value=defaults.max_inline_iterations
    )
    st.sidebar.info(
        "Markers: `{{Field:format ?? 'default'}}`, `{{IF cond}}…{{ELSE}}…{{/IF}}`, "
        "`{{#Items}}…{{/Items}}`, `{{@Source}}…{{/@Source}}`"
    )

    # Session state
    if 'merged_doc' not in st.session_state:
        st.session_state.merged_doc = None
    if 'warnings' not in st.session_state:
        st.session_state.warnings = []

    st.divider()

    col1, col2 = st.columns(2)

    with col1:
        st.subheader("📋 Template")
        st.caption("Word document with {{markers}}")
        template_file = st.file_uploader(
            "Template",
            type=['docx'],
            key="template",
            label_visibility="collapsed"
        )
        if template_file:
            st.success(f"✅ {template_file.name}")

    with col2:
        st.subheader("📁 Record Data")
        st.caption("JSON object with the record's fields and child collections")
        data_file = st.file_uploader(
            "Data",
            type=['json'],
            key="data",
            label_visibility="collapsed"
        )
        if data_file:
            st.success(f"✅ {data_file.name}")

    with st.expander("🔧 Field types and named sources", expanded=False):
        field_types_text = st.text_area(
            "Field types (JSON: path → format)",
            placeholder='{"Amount": "currency", "CloseDate": "date"}',
        )
        sources_text = st.text_area(
            "Named sources (one 'Alias = URL' per line)",
            placeholder="Contacts = https://example.com/api/contacts",
        )

    if template_file:
        with st.expander("🔍 Template markers", expanded=False):
            try:
                markers = list_template_markers(template_file.getvalue())
            except MergeError as e:
                st.error(f"❌ {e}")
                markers = []
            for part, kind, text in markers[:50]:
                st.text(f"{MARKER_ICONS.get(kind, '•')} [{part}] {text}")
            if len(markers) > 50:
                st.text(f"  ... and {len(markers) - 50} more")

    st.divider()

    # ============== PROCESSING ==============
    can_process = template_file and data_file

    if st.button("🧩 Merge Template", type="primary", disabled=not can_process, use_container_width=True):

        st.session_state.merged_doc = None
        st.session_state.warnings = []

        log_area = st.container()

        def log(msg):
            with log_area:
                st.text(f"[{datetime.now().strftime('%H:%M:%S')}] {msg}")

        try:
            data = read_json_upload(data_file)
            field_types = parse_json_text(field_types_text, "Field types")
            named_sources = parse_source_lines(sources_text)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            st.error(f"❌ Invalid input: {e}")
            return

        log(f"Record has {len(data)} top-level fields")
        if named_sources:
            log(f"Fetching {len(named_sources)} named sources...")

        config = MergeConfig(
            max_inline_iterations=int(max_inline_iterations),
            max_section_rows=int(max_section_rows),
            currency_symbol=currency_symbol or defaults.currency_symbol,
        )

        try:
            result = merge_docx(
                template_file.getvalue(),
                data,
                field_types=field_types,
                named_sources=named_sources,
                config=config,
            )
        except MergeError as e:
            logger.error("Merge failed: %s", e)
            st.error(f"❌ Merge failed: {e}")
            log(f"Error: {e}")
            return

        st.session_state.merged_doc = result.content
        st.session_state.warnings = result.warnings
        log(f"Merged {len(result.document.parts)} document parts")
        log("Document ready for download!")

    # ============== RESULTS ==============
    if st.session_state.merged_doc:
        st.divider()
        st.subheader("✅ Document Ready!")

        col1, col2 = st.columns([3, 1])

        with col1:
            filename = f"Merged_{datetime.now().strftime('%Y%m%d_%H%M%S')}.docx"
            st.download_button(
                "📥 Download Merged Document",
                st.session_state.merged_doc,
                filename,
                DOCX_MIME,
                type="primary",
                use_container_width=True
            )

        with col2:
            st.metric("Warnings", len(st.session_state.warnings))

        for warning in st.session_state.warnings:
            st.warning(f"⚠️ {warning}")


if __name__ == "__main__":
    main()
