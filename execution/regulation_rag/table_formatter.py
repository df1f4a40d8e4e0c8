"""
RAG Table Formatter

Turns raw chunk text into readable output:

- ``--- Tabel Details ---`` sections holding a pipe table, often flattened
  onto a single line by the ingestion pipeline
- ``--- Tabel Samenvatting (Semantisch Verrijkt) ---`` sections holding
  quoted summary sentences
- ad-hoc inline pipe tables in the remaining text

``format_rag_table_content`` renders Markdown for prompt injection and
``format_rag_source_text`` renders inline-styled HTML for the UI. Nothing
here raises on malformed input; a span that cannot be parsed is passed
through as literal text.
"""

import re
import logging
from typing import Iterable, Optional
from dataclasses import dataclass, field

from .language_patterns import (
    TABLE_DETAILS_MARKER_PATTERN,
    TABLE_SUMMARY_MARKER_PATTERN,
    SIMPLE_SUMMARY_MARKER,
    ARTICLE_HEADING_PATTERN,
    TABLE_MENTION_PATTERN,
)

logger = logging.getLogger(__name__)


@dataclass
class ParsedTable:
    """Headers plus rows; after normalization every row has len(headers) cells."""
    headers: list[str]
    rows: list[list[str]] = field(default_factory=list)

    @property
    def is_headerless(self) -> bool:
        return not any(h.strip() for h in self.headers)


@dataclass
class FormattedRAGContent:
    formatted_text: str
    has_table: bool
    table_summaries: list[str]


# A section body ends at the next "--- Tabel ..." marker, a bare "---" line or end of text
_SECTION_END = r"(?=---\s*Tabel\b|^[ \t]*---[ \t]*$|\Z)"

_SUMMARY_SECTION = re.compile(
    rf"{TABLE_SUMMARY_MARKER_PATTERN}(?P<body>[\s\S]*?){_SECTION_END}",
    re.IGNORECASE | re.MULTILINE,
)
_DETAILS_SECTION = re.compile(
    rf"{TABLE_DETAILS_MARKER_PATTERN}(?P<body>[\s\S]*?){_SECTION_END}",
    re.IGNORECASE | re.MULTILINE,
)
_QUOTED = re.compile(r'"([^"]+)"')
_DASH_CELL = re.compile(r"^:?-{3,}:?$")
_SEPARATOR_LINE = re.compile(r"^[\s|:-]+$")

_PLACEHOLDER = "{{{{TABLE_PLACEHOLDER_{}}}}}"
_PLACEHOLDER_RE = re.compile(r"\{\{TABLE_PLACEHOLDER_(\d+)\}\}")

# Table styles
_TABLE_STYLE = "width: 100%; border-collapse: collapse; font-size: 0.875rem; margin: 0.5rem 0;"
_TH_STYLE = (
    "background-color: #f3f4f6; padding: 0.5rem; text-align: left; "
    "font-weight: 600; border: 1px solid #d1d5db;"
)
_TD_STYLE = "padding: 0.5rem; border: 1px solid #e5e7eb;"
_STRIPE_STYLE = "background-color: #fafafa;"
_WRAPPER_OPEN = '<div class="rag-table-wrapper" style="margin: 0.75rem 0;">'


def _escape_html(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


# =============================================================================
# Pipe table parsing
# =============================================================================

def _split_cells(line: str) -> list[str]:
    """Split a pipe row, dropping the empty cells produced by outer pipes."""
    cells = [c.strip() for c in line.split("|")]
    if cells and not cells[0]:
        cells = cells[1:]
    if cells and not cells[-1]:
        cells = cells[:-1]
    return cells


def _parse_multi_line(content: str) -> Optional[ParsedTable]:
    pipe_lines = [line.strip() for line in content.split("\n") if "|" in line and line.strip()]
    if not pipe_lines:
        return None

    # Header-less when the first pipe line is already a separator
    headerless = bool(_SEPARATOR_LINE.match(pipe_lines[0])) and "-" in pipe_lines[0]

    all_rows = []
    for line in pipe_lines:
        if _SEPARATOR_LINE.match(line) and "-" in line:
            continue
        cells = _split_cells(line)
        if any(cells):
            all_rows.append(cells)

    if not all_rows:
        return None

    width = max(len(row) for row in all_rows)
    all_rows = [row + [""] * (width - len(row)) for row in all_rows]

    if headerless:
        return ParsedTable(headers=[""] * width, rows=all_rows)
    return ParsedTable(headers=all_rows[0], rows=all_rows[1:])


def _detect_row_length(cell_count: int, header_count: int) -> int:
    """Row length for flattened data: largest divisor giving at least two rows."""
    for row_len in range(cell_count // 2, header_count - 1, -1):
        if row_len > 0 and cell_count % row_len == 0 and cell_count // row_len >= 2:
            return row_len
    return header_count


def _split_on_row_boundaries(data: list[str], width: int) -> Optional[list[list[str]]]:
    """Rows when every row is introduced by an empty boundary cell ("| |")."""
    stride = width + 1
    if not data or len(data) % stride != 0:
        return None
    if any(data[i] for i in range(0, len(data), stride)):
        return None
    return [data[i + 1:i + stride] for i in range(0, len(data), stride)]


def _parse_flattened(content: str) -> Optional[ParsedTable]:
    cells = _split_cells(content)

    start = next((i for i, c in enumerate(cells) if _DASH_CELL.match(c)), None)
    if start is None:
        return None
    end = start
    while end < len(cells) and _DASH_CELL.match(cells[end]):
        end += 1
    header_count = end - start

    header_cells = cells[:start]
    boundary_style = bool(header_cells) and not header_cells[-1]
    while header_cells and not header_cells[-1]:
        header_cells.pop()
    if not header_cells:
        return None
    headers = header_cells[-header_count:]
    headers = [""] * (header_count - len(headers)) + headers

    data = cells[end:]
    if not any(data):
        return ParsedTable(headers=headers, rows=[])

    rows = _split_on_row_boundaries(data, header_count) if boundary_style else None
    if rows is None:
        row_len = _detect_row_length(len(data), header_count)
        rows = [data[i:i + row_len] for i in range(0, len(data), row_len)]
        rows = [row + [""] * (row_len - len(row)) for row in rows]

    return ParsedTable(headers=headers, rows=[row for row in rows if any(row)])


def _normalize_columns(table: ParsedTable) -> ParsedTable:
    """Conform every row to the header count.

    Fully-empty columns are dropped. When rows remain wider than the
    headers, the excess leftmost cells are merged into the first column
    and the last column is kept as-is. Short rows are padded.
    """
    headers = list(table.headers)
    rows = [list(row) for row in table.rows]
    width = max([len(headers)] + [len(r) for r in rows])
    rows = [r + [""] * (width - len(r)) for r in rows]

    if width > len(headers):
        # Data wider than headers: column positions don't line up with headers
        keep = [i for i in range(width) if any(r[i] for r in rows)]
        rows = [[r[i] for i in keep] for r in rows]
    else:
        keep = [i for i in range(width) if headers[i] or any(r[i] for r in rows)]
        if keep and len(keep) < width:
            headers = [headers[i] for i in keep]
            rows = [[r[i] for i in keep] for r in rows]

    target = len(headers)
    normalized = []
    for row in rows:
        if target and len(row) > target:
            excess = len(row) - target
            merged = " ".join(c for c in row[:excess + 1] if c)
            row = [merged] + row[excess + 1:]
        normalized.append(row + [""] * (target - len(row)))

    return ParsedTable(headers=headers, rows=normalized)


def parse_pipe_table(content: str) -> Optional[ParsedTable]:
    """
    Parse pipe-separated table text.

    Handles proper multi-line tables and single-line tables whose row
    breaks were lost, e.g. ``| A | B | | --- | --- | | 1 | 2 |``.

    Returns:
        Normalized ParsedTable, or None when nothing table-like was found
    """
    content = (content or "").strip()
    if not content:
        return None

    pipe_lines = [line for line in content.split("\n") if "|" in line]
    if len(pipe_lines) > 1:
        table = _parse_multi_line(content)
    elif pipe_lines:
        table = _parse_flattened(pipe_lines[0]) or _parse_multi_line(pipe_lines[0])
    else:
        return None

    if table is None or not table.headers:
        return None
    return _normalize_columns(table)


# =============================================================================
# Rendering
# =============================================================================

def table_to_markdown(table: ParsedTable) -> str:
    """Markdown table with cells padded to the widest value per column."""
    all_rows = [table.headers] + table.rows
    col_widths = [
        max([3] + [len(row[i]) if i < len(row) else 0 for row in all_rows])
        for i in range(len(table.headers))
    ]

    def format_row(row: list[str]) -> str:
        cells = [(row[i] if i < len(row) else "").ljust(w) for i, w in enumerate(col_widths)]
        return "| " + " | ".join(cells) + " |"

    lines = [format_row(table.headers), "| " + " | ".join("-" * w for w in col_widths) + " |"]
    lines.extend(format_row(row) for row in table.rows)
    return "\n".join(lines)


def table_to_html(table: ParsedTable) -> str:
    """Inline-styled HTML table with alternating row shading. Cell text is escaped."""
    parts = [f'<table style="{_TABLE_STYLE}">']

    if not table.is_headerless:
        parts.append("  <thead>\n    <tr>")
        for header in table.headers:
            parts.append(f'      <th style="{_TH_STYLE}">{_escape_html(header)}</th>')
        parts.append("    </tr>\n  </thead>")

    if table.rows:
        parts.append("  <tbody>")
        for i, row in enumerate(table.rows):
            row_style = _STRIPE_STYLE if i % 2 == 1 else ""
            parts.append(f'    <tr style="{row_style}">')
            for cell in row:
                parts.append(f'      <td style="{_TD_STYLE}">{_escape_html(cell)}</td>')
            parts.append("    </tr>")
        parts.append("  </tbody>")

    parts.append("</table>")
    return "\n".join(parts)


# =============================================================================
# Section extraction
# =============================================================================

def _extract_simple_summaries(text: str) -> tuple[list[str], str]:
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if line.strip() != SIMPLE_SUMMARY_MARKER:
            continue
        summaries = []
        j = i + 1
        while j < len(lines) and lines[j].strip():
            sentence = lines[j].strip().lstrip("-•* ").strip().strip('"').strip()
            # Skip trivial lines (bare numbers, stray labels)
            if len(sentence) >= 10:
                summaries.append(sentence)
            j += 1
        if summaries:
            return summaries, "\n".join(lines[:i] + lines[j:])
    return [], text


def extract_summaries(text: str) -> tuple[list[str], str]:
    """
    Pull semantic summary sentences out of a chunk.

    Returns:
        (summaries, text with the summary section removed)
    """
    match = _SUMMARY_SECTION.search(text)
    if not match:
        return _extract_simple_summaries(text)

    lines = [line.strip() for line in match.group("body").split("\n")]
    sentences = []
    for line in lines:
        if line.startswith('"'):
            sentences.extend(_QUOTED.findall(line))
    kept = [line for line in lines if line and not line.startswith('"')]

    # Single-line format: "sentence1" "sentence2"
    if not sentences:
        sentences = _QUOTED.findall(match.group("body"))
        kept = [line for line in kept if not _QUOTED.search(line)]

    cleaned = _rejoin(text[:match.start()], "\n".join(kept), text[match.end():])
    return sentences, cleaned


def extract_table_details(text: str) -> tuple[Optional[ParsedTable], str]:
    """
    Parse the ``--- Tabel Details ---`` section.

    Returns:
        (table or None, remaining text). An unparseable section stays in the text.
    """
    match = _DETAILS_SECTION.search(text)
    if not match:
        return None, text

    table_text, trailing = _split_table_block(match.group("body"))
    table = parse_pipe_table(table_text)
    if table is None:
        logger.debug("Tabel Details section could not be parsed, keeping it as text")
        return None, text
    return table, _rejoin(text[:match.start()], trailing, text[match.end():])


def _split_table_block(body: str) -> tuple[str, str]:
    """Split a section body into its leading pipe lines and whatever follows them."""
    lines = body.split("\n")
    i = 0
    while i < len(lines) and not lines[i].strip():
        i += 1
    start = i
    while i < len(lines) and "|" in lines[i]:
        i += 1
    return "\n".join(lines[start:i]), "\n".join(lines[i:]).strip()


def _rejoin(before: str, middle: str, after: str) -> str:
    """Concatenate text around a removed section, keeping ``middle`` on its own line."""
    if not middle:
        return before + after
    if before and not before.endswith("\n"):
        before += "\n"
    if after and not after.startswith("\n"):
        middle += "\n"
    return before + middle + after


def _tab_header(line: str) -> Optional[list[str]]:
    if "\t" not in line:
        return None
    fields = [f.strip() for f in line.strip().split("\t")]
    return fields if len([f for f in fields if f]) >= 2 else None


def _apply_headers(table: ParsedTable, headers: list[str]) -> ParsedTable:
    width = len(table.headers)
    headers = (list(headers) + [""] * width)[:width]
    return ParsedTable(headers=headers, rows=table.rows)


def extract_inline_tables(
    text: str,
    tab_headers: Optional[list[str]] = None,
) -> tuple[list[ParsedTable], str]:
    """
    Replace runs of two or more pipe lines with placeholders.

    Args:
        text: Text to scan
        tab_headers: Headers for the first headerless table. Without them, a
            tab-separated line right above a headerless table is used.

    Returns:
        (tables, text with ``{{TABLE_PLACEHOLDER_n}}`` tokens)
    """
    result: list[str] = []
    tables: list[ParsedTable] = []
    buffer: list[str] = []
    pending_headers = list(tab_headers) if tab_headers else None

    def flush():
        nonlocal pending_headers
        if len(buffer) < 2:
            result.extend(buffer)
            return
        table = parse_pipe_table("\n".join(buffer))
        if table is None:
            result.extend(buffer)
            return
        if table.is_headerless:
            if pending_headers:
                table = _apply_headers(table, pending_headers)
                pending_headers = None
            elif result and _tab_header(result[-1]):
                table = _apply_headers(table, _tab_header(result.pop()))
        result.append(_PLACEHOLDER.format(len(tables)))
        tables.append(table)

    for line in text.split("\n"):
        stripped = line.strip()
        if "|" in stripped and not stripped.startswith("**") and not stripped.startswith("<"):
            buffer.append(stripped)
            continue
        flush()
        buffer = []
        result.append(line)

    flush()
    return tables, "\n".join(result)


_DATE_ARTIFACT = re.compile(
    r"\d{4}\s+\d+\s+\d{2}-\d{2}-\d{4}\s+\d{2}-\d{2}-\d{4}(?:\s+\d{2}-\d{2}-\d{4})?"
)
_UNIT_ARTIFACT = re.compile(r"\[\s*m\s*\d*\s*\]")
_BARE_NUMBER_LINE = re.compile(r"^\s*\d+\s*$")


def cleanup_artifacts(text: str) -> str:
    """Strip date/version runs, orphaned unit brackets and row-index lines."""
    cleaned = _DATE_ARTIFACT.sub("", text)
    cleaned = _UNIT_ARTIFACT.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return "\n".join(line for line in cleaned.split("\n") if not _BARE_NUMBER_LINE.match(line))


def _is_duplicate_of(table: ParsedTable, details: ParsedTable) -> bool:
    details_rows = {tuple(r) for r in details.rows}
    return bool(table.rows) and all(tuple(r) in details_rows for r in table.rows)


def _extract_all(raw_text: str):
    summaries, text = extract_summaries(raw_text)
    details, text = extract_table_details(text)
    inline_tables, text = extract_inline_tables(text)

    if details is not None:
        inline_tables = [None if _is_duplicate_of(t, details) else t for t in inline_tables]

    text = cleanup_artifacts(text)
    return summaries, details, inline_tables, text


# =============================================================================
# Public formatting entry points
# =============================================================================

def format_rag_table_content(raw_text: str) -> FormattedRAGContent:
    """Format chunk text as Markdown for LLM context."""
    if not raw_text or not isinstance(raw_text, str):
        return FormattedRAGContent(formatted_text=raw_text or "", has_table=False, table_summaries=[])

    summaries, details, inline_tables, text = _extract_all(raw_text)

    parts = []
    if summaries:
        parts.append("**Samenvatting:**\n" + "\n".join(f"- {s}" for s in summaries))
    if details is not None:
        parts.append("**Tabel:**\n" + table_to_markdown(details))

    def render(match):
        index = int(match.group(1))
        if index >= len(inline_tables):
            return match.group(0)
        table = inline_tables[index]
        return "\n" + table_to_markdown(table) + "\n" if table else ""

    body = _PLACEHOLDER_RE.sub(render, text).strip()
    if body:
        parts.append(body)

    return FormattedRAGContent(
        formatted_text="\n\n".join(parts).strip(),
        has_table=details is not None or any(t is not None for t in inline_tables),
        table_summaries=summaries,
    )


def _emphasise_structure(escaped_text: str) -> str:
    text = ARTICLE_HEADING_PATTERN.sub(r"\1<strong>\2</strong>", escaped_text)
    return TABLE_MENTION_PATTERN.sub(r"<strong>\g<0></strong>", text)


def format_rag_source_text(raw_text: str) -> str:
    """Format chunk text as HTML for the sources panel: text, table, then summaries."""
    if not raw_text or not isinstance(raw_text, str):
        return raw_text or ""

    summaries, details, inline_tables, text = _extract_all(raw_text)

    parts = []
    body = _emphasise_structure(_escape_html(text.strip()))
    if body:
        body = body.replace("\n\n", '</p><p style="margin: 0.5rem 0;">').replace("\n", "<br>")

        def render(match):
            index = int(match.group(1))
            if index >= len(inline_tables):
                return match.group(0)
            table = inline_tables[index]
            return f"{_WRAPPER_OPEN}\n{table_to_html(table)}\n</div>" if table else ""

        body = _PLACEHOLDER_RE.sub(render, body)
        parts.append(f'<p style="margin: 0 0 0.75rem 0;">{body}</p>')

    if details is not None:
        parts.append(f"{_WRAPPER_OPEN}\n{table_to_html(details)}\n</div>")

    if summaries:
        items = "\n".join(
            f'<li style="margin-bottom: 0.25rem; color: #4b5563;">{_escape_html(s)}</li>'
            for s in summaries
        )
        parts.append(
            '<div style="background-color: #f9fafb; padding: 0.75rem; margin-top: 0.75rem; '
            'border-radius: 0.5rem; border: 1px solid #e5e7eb;">\n'
            '<strong style="color: #374151; font-size: 0.875rem;">Samenvatting:</strong>\n'
            '<ul style="margin: 0.5rem 0 0 0; padding-left: 1.25rem; font-size: 0.875rem;">\n'
            f"{items}\n</ul>\n</div>"
        )

    return "\n".join(parts).strip()


def format_rag_context_for_prompt(sources: Iterable[dict]) -> str:
    """
    Format several sources for prompt injection.

    Each source is ``{"text": ..., "file": ...}``. Table summaries from all
    sources are deduplicated into one "Key Information" block up front.
    """
    formatted_sources = []
    all_summaries: list[str] = []

    for i, source in enumerate(sources, 1):
        content = format_rag_table_content(source.get("text") or "")
        formatted_sources.append(
            f"[Source {i}: {source.get('file') or 'Unknown'}]\n{content.formatted_text}"
        )
        all_summaries.extend(content.table_summaries)

    result = ""
    if all_summaries:
        unique = list(dict.fromkeys(all_summaries))
        result += "**Key Information from Tables:**\n"
        result += "\n".join(f"• {s}" for s in unique)
        result += "\n\n---\n\n"

    return result + "\n\n".join(formatted_sources)
