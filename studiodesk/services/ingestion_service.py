"""Ingestion service — turn an uploaded file into searchable chunks.

Responsible for:
- Validating the upload (extension, size, per-user file cap, duplicates)
- Extracting plain text from txt / pdf / docx
- Paragraph-aware chunking with word overlap
- Best-effort embedding at upload time (chunks left un-embedded are
  picked up lazily by the query pipeline)

Uses flush() so the caller controls the commit boundary.
"""

import hashlib
import io
import json
import logging
import os
import re
import zipfile

from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from studiodesk.extensions import db
from studiodesk.models.rag import RagChunk, RagDocument
from studiodesk.services.gemini_client import ModelAPIError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"txt", "pdf", "docx"}

# Rough characters-per-word ratio used to turn char budgets into word budgets
CHARS_PER_WORD = 1.33


class IngestionError(Exception):
    """Upload rejected. `status` is the HTTP status the blueprint returns."""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


# ──────────────────────────────────────────────
# Text extraction
# ──────────────────────────────────────────────

def _collapse_whitespace(text):
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_pdf(data):
    """Text of every page, pages separated by blank lines."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError, KeyError) as e:
        raise IngestionError(f"Could not read .pdf file: {e}", 422) from e
    return _collapse_whitespace("\n\n".join(p.strip() for p in pages if p.strip()))


def extract_docx(data):
    try:
        document = Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise IngestionError(f"Could not read .docx file: {e}", 422) from e

    paragraphs = [p.text for p in document.paragraphs if p.text.strip()]
    return _collapse_whitespace("\n\n".join(paragraphs))


def extract_text(filename, data):
    ext = file_extension(filename)
    if ext == "txt":
        return data.decode("utf-8", errors="replace").strip()
    if ext == "pdf":
        return extract_pdf(data)
    if ext == "docx":
        return extract_docx(data)
    raise IngestionError(f"Unsupported file type '.{ext}'")


# ──────────────────────────────────────────────
# Chunking
# ──────────────────────────────────────────────

def chunk_text(text, chunk_size=800, overlap=150):
    """Split text into overlapping word windows, respecting paragraphs.

    Paragraphs are packed into a chunk until the word budget is hit; a
    paragraph larger than the budget is cut into overlapping windows on
    its own. Each new chunk starts with the tail of the previous one.
    """
    if not text or not text.strip():
        return []

    normalized = re.sub(r"\n{3,}", "\n\n", text.strip())
    paragraphs = [p for p in normalized.split("\n\n") if p.strip()]
    word_budget = max(int(chunk_size / CHARS_PER_WORD), 1)
    overlap_words = min(int(overlap / CHARS_PER_WORD), word_budget - 1)

    chunks = []
    current = []
    # True when current has words beyond the carried-over overlap
    pending = False

    for para in paragraphs:
        words = para.split()
        if len(words) > word_budget:
            if pending:
                chunks.append(" ".join(current))
            step = word_budget - overlap_words
            for i in range(0, len(words), step):
                piece = words[i:i + word_budget]
                chunks.append(" ".join(piece))
                if i + word_budget >= len(words):
                    break
            current = chunks[-1].split()[-overlap_words:] if overlap_words else []
            pending = False
            continue

        if len(current) + len(words) <= word_budget:
            current.extend(words)
        else:
            if pending:
                chunks.append(" ".join(current))
            tail = current[-overlap_words:] if overlap_words else []
            current = tail + words
        pending = True

    if pending:
        chunks.append(" ".join(current))

    return [c for c in chunks if c.strip()]


# ──────────────────────────────────────────────
# Upload
# ──────────────────────────────────────────────

def file_extension(filename):
    _, ext = os.path.splitext(filename or "")
    return ext.lstrip(".").lower()


def sanitize_filename(name):
    base = os.path.basename((name or "").replace("\\", "/"))
    cleaned = re.sub(r"[^\w\s\-.]", "", base)[:255]
    return cleaned or "unnamed"


def validate_upload(user_id, filename, data, config):
    """Raise IngestionError if this upload must be rejected."""
    ext = file_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise IngestionError(
            f"File type '.{ext}' is not allowed. Accepted: txt, pdf, docx."
        )

    max_size = config.get("RAG_MAX_FILE_SIZE_BYTES", 5 * 1024 * 1024)
    if len(data) > max_size:
        raise IngestionError(
            f"File is too large. Maximum is {max_size // (1024 * 1024)} MB.", 413
        )
    if not data:
        raise IngestionError("File is empty.")

    max_files = config.get("RAG_MAX_FILES_PER_USER", 3)
    existing = RagDocument.query.filter_by(user_id=user_id).count()
    if existing >= max_files:
        raise IngestionError(
            f"Document limit reached ({max_files}). Delete a document first."
        )


def ingest_document(user_id, filename, data, embedder, config):
    """Validate, extract, chunk and store an uploaded file.

    Returns the new RagDocument (flushed, not committed).
    Raises IngestionError on any rejected upload.
    """
    validate_upload(user_id, filename, data, config)

    file_hash = hashlib.sha256(data).hexdigest()
    duplicate = RagDocument.query.filter_by(
        user_id=user_id, file_hash=file_hash
    ).first()
    if duplicate:
        raise IngestionError("This file has already been uploaded.", 409)

    text = extract_text(filename, data)
    if not text:
        raise IngestionError("No text could be extracted from this file.", 422)

    pieces = chunk_text(
        text,
        chunk_size=config.get("RAG_CHUNK_SIZE", 800),
        overlap=config.get("RAG_CHUNK_OVERLAP", 150),
    )
    if not pieces:
        raise IngestionError("No text could be extracted from this file.", 422)

    # Best-effort: a model outage must not block the upload
    embeddings = [None] * len(pieces)
    try:
        embeddings = embedder.embed_batch(pieces, task_type="RETRIEVAL_DOCUMENT")
    except ModelAPIError as e:
        logger.warning(
            f"Upload-time embedding failed for {filename} ({e}); "
            f"{len(pieces)} chunks will be embedded on first query"
        )

    document = RagDocument(
        user_id=user_id,
        file_name=sanitize_filename(filename),
        file_hash=file_hash,
        size_bytes=len(data),
        chunk_count=len(pieces),
    )
    db.session.add(document)
    db.session.flush()

    for index, (piece, vector) in enumerate(zip(pieces, embeddings)):
        db.session.add(RagChunk(
            document_id=document.id,
            user_id=user_id,
            chunk_index=index,
            chunk_text=piece,
            embedding_json=json.dumps(vector) if vector is not None else None,
        ))
    db.session.flush()

    logger.info(
        f"Ingested {document.file_name} for user {user_id}: {len(pieces)} chunks"
    )
    return document


def delete_document(user_id, document_id):
    """Delete a user's document and its chunks.

    Returns True if deleted, False if not found or not owned by the user.
    """
    document = db.session.get(RagDocument, document_id)
    if not document or document.user_id != user_id:
        return False
    db.session.delete(document)
    db.session.flush()
    return True
