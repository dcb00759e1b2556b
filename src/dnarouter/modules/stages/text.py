"""Text extraction for raw uploads.

Plain-text exports are decoded as UTF-8. PDFs go through pypdf; the
extracted text is prefixed with document metadata and any recognizable form
fields, and column-aligned blocks are fenced as tables so the model sees
their structure.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from typing import Any

from dnarouter.core.exceptions import InvalidInput

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"

_FORM_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Personal information
    ("firstName", re.compile(r"First\s*Name\s*:?\s*([^\n\r:;]*)", re.I)),
    ("lastName", re.compile(r"Last\s*Name\s*:?\s*([^\n\r:;]*)", re.I)),
    ("fullName", re.compile(r"Full\s*Name\s*:?\s*([^\n\r:;]*)", re.I)),
    # Contact
    ("email", re.compile(r"Email\s*:?\s*([^\s][\w.%+-]+@[\w.-]+\.[a-zA-Z]{2,})", re.I)),
    (
        "phone",
        re.compile(r"Phone\s*:?\s*([+]?\d{1,3}[-\s.]?\(?\d{3}\)?[-\s.]?\d{3}[-\s.]?\d{4})", re.I),
    ),
    # Address
    ("address", re.compile(r"Address\s*:?\s*([^\n\r:;]*)", re.I)),
    ("city", re.compile(r"City\s*:?\s*([^\n\r:;]*)", re.I)),
    ("state", re.compile(r"State\s*:?\s*([^\n\r:;]*)", re.I)),
    ("zip", re.compile(r"Zip\s*:?\s*(\d{5}(?:-\d{4})?)", re.I)),
    ("country", re.compile(r"Country\s*:?\s*([^\n\r:;]*)", re.I)),
    # Dates
    ("dateOfBirth", re.compile(r"Date\s*of\s*Birth\s*:?\s*(\d{1,2}[-/\s.]\d{1,2}[-/\s.]\d{2,4})", re.I)),
    ("date", re.compile(r"Date\s*:?\s*(\d{1,2}[-/\s.]\d{1,2}[-/\s.]\d{2,4})", re.I)),
    # Identification
    ("ssn", re.compile(r"SSN\s*:?\s*(\d{3}-\d{2}-\d{4})", re.I)),
    ("driversLicense", re.compile(r"Driver'?s?\s*License\s*:?\s*([A-Z0-9-]*)", re.I)),
    ("passport", re.compile(r"Passport\s*:?\s*([A-Z0-9]*)", re.I)),
    # Financial
    ("accountNumber", re.compile(r"Account\s*Number\s*:?\s*([A-Z0-9-]*)", re.I)),
    ("creditCard", re.compile(r"Credit\s*Card\s*:?\s*(\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4})", re.I)),
    # Request details
    ("requestType", re.compile(r"Request\s*Type\s*:?\s*([^\n\r:;]*)", re.I)),
    ("dataRequest", re.compile(r"Data\s*Request\s*:?\s*([^\n\r:;]*)", re.I)),
]

_COLUMN_SEP = re.compile(r"\s{2,}|\t+")
_ALIGNED_ROW = re.compile(r"^\S+(\s{2,}\S+){2,}$")


@dataclass
class ExtractedText:
    text: str
    content_type: str
    metadata: dict[str, Any] = field(default_factory=dict)


def is_pdf(name: str, data: bytes) -> bool:
    return name.lower().endswith(".pdf") or data[:4] == PDF_MAGIC


def guess_content_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "text/plain"


def decode_text(data: bytes) -> str:
    return data.decode("utf-8-sig", errors="replace")


def extract_text(name: str, data: bytes) -> ExtractedText:
    """Turn a raw upload into text plus metadata.

    Raises:
        InvalidInput: the PDF cannot be parsed or nothing readable is left.
    """
    if is_pdf(name, data):
        extracted = pdf_to_text(data)
    else:
        extracted = ExtractedText(text=decode_text(data), content_type=guess_content_type(name))
    if not extracted.text.strip():
        raise InvalidInput(f"{name} contains no extractable text")
    return extracted


def pdf_to_text(data: bytes) -> ExtractedText:
    from pypdf import PdfReader
    from pypdf.errors import PdfReadError

    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        info = reader.metadata or {}
        acro_fields = reader.get_fields() or {}
    except (PdfReadError, ValueError, KeyError) as e:
        raise InvalidInput(f"Failed to extract text from PDF: {e}", code="PDF_UNREADABLE") from e

    raw_text = "\n".join(pages)
    metadata: dict[str, Any] = {"pageCount": len(pages)}
    for attr, label in (("title", "title"), ("author", "author"), ("creator", "creator")):
        value = getattr(info, attr, None)
        if value:
            metadata[label] = str(value)

    form_fields = extract_form_fields(raw_text)
    for name, fld in acro_fields.items():
        value = fld.get("/V") if hasattr(fld, "get") else None
        if value not in (None, ""):
            form_fields.setdefault(str(name), str(value))
    if form_fields:
        metadata["formFields"] = form_fields
    if not raw_text.strip() and not form_fields:
        raise InvalidInput("PDF has no extractable text (scanned image?)", code="PDF_NO_TEXT")

    header = [f"<!-- PDF: {metadata['pageCount']} pages"]
    if "title" in metadata:
        header.append(f" title={metadata['title']}")
    header.append(" -->\n")

    text = "".join(header) + render_form_fields(form_fields) + format_tables(raw_text)
    logger.debug("PDF extracted: pages=%d chars=%d fields=%d", len(pages), len(text), len(form_fields))
    return ExtractedText(text=text, content_type="application/pdf", metadata=metadata)


def extract_form_fields(text: str) -> dict[str, str]:
    """Pull common form fields (name, contact, identifiers) out of flattened text."""
    fields: dict[str, str] = {}
    for key, pattern in _FORM_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            fields[key] = match.group(1).strip()
    return fields


def _label(key: str) -> str:
    spaced = re.sub(r"([A-Z])", r" \1", key)
    return spaced[:1].upper() + spaced[1:]


def render_form_fields(fields: dict[str, str]) -> str:
    if not fields:
        return ""
    lines = ["--- FORM FIELDS ---"]
    lines.extend(f"{_label(k)}: {v}" for k, v in fields.items())
    lines.append("-------------------\n\n")
    return "\n".join(lines)


def _looks_tabular(line: str) -> bool:
    return bool(_COLUMN_SEP.search(line) or _ALIGNED_ROW.match(line))


def format_tables(text: str) -> str:
    """Fence runs of column-aligned lines in ``` blocks.

    A table starts after two consecutive aligned lines, may contain single
    blank lines and short captions, and ends at two blank lines or a long
    prose line. Runs shorter than three lines are left as-is.
    """
    lines = text.split("\n")
    out: list[str] = []
    table: list[str] = []
    in_table = False
    aligned_run = 0

    def flush() -> None:
        if len(table) > 2:
            out.append(_fence_table(table))
        else:
            out.extend(table)
        table.clear()

    for i, line in enumerate(lines):
        stripped = line.strip()
        if not stripped:
            aligned_run = 0
            if not in_table:
                out.append(line)
            elif i + 1 < len(lines) and not lines[i + 1].strip():
                in_table = False
                flush()
            else:
                table.append(line)
            continue

        if _looks_tabular(stripped):
            if in_table:
                table.append(line)
                continue
            aligned_run += 1
            if aligned_run >= 2:
                in_table = True
                # Move the already-emitted aligned lines into the table.
                carried = aligned_run - 1
                table.extend(out[len(out) - carried :])
                del out[len(out) - carried :]
                table.append(line)
            else:
                out.append(line)
            continue

        if in_table:
            if len(stripped.split()) <= 2 or len(stripped) < 10:
                table.append(line)
            else:
                in_table = False
                flush()
                out.append(line)
        else:
            aligned_run = 0
            out.append(line)

    if table:
        flush()
    return "\n".join(out)


def _fence_table(rows: list[str]) -> str:
    header_idx = None
    for idx, row in enumerate(rows[:5]):
        stripped = row.strip()
        if len(stripped) > 10 and len(_COLUMN_SEP.findall(stripped)) >= 2:
            header_idx = idx
            break

    if header_idx is None:
        body = "\n".join(rows)
    else:
        formatted: list[str] = []
        for idx, row in enumerate(rows):
            stripped = row.strip()
            if not stripped:
                formatted.append("")
                continue
            cells = [c.strip() for c in _COLUMN_SEP.split(stripped)]
            formatted.append("  ".join(cells))
            if idx == header_idx:
                formatted.append("  ".join("-" * max(3, len(c)) for c in cells))
        body = "\n".join(formatted)
    return f"\n```\n{body}\n```\n"


def chunk_text(text: str, max_chars: int, overlap: int) -> list[str]:
    """Split ``text`` into windows of at most ``max_chars`` new characters.

    Every chunk after the first also repeats the last ``overlap`` characters
    of its predecessor.
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if len(text) <= max_chars:
        return [text]
    chunks: list[str] = []
    position = 0
    while position < len(text):
        end = min(position + max_chars, len(text))
        start = max(0, position - overlap) if position > 0 else 0
        chunks.append(text[start:end])
        position = end
    return chunks


__all__ = [
    "ExtractedText",
    "chunk_text",
    "decode_text",
    "extract_form_fields",
    "extract_text",
    "format_tables",
    "is_pdf",
    "pdf_to_text",
    "render_form_fields",
]
