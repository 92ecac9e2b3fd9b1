"""RAG blueprint — /rag/*

Document Q&A over the caller's own uploads.

Route Map:
  POST   /rag/query              — Ask a question (daily quota)
  GET    /rag/documents          — List uploaded documents + today's usage
  POST   /rag/documents          — Upload a txt/pdf/docx file
  DELETE /rag/documents/<id>     — Delete a document and its chunks
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from studiodesk.decorators import api_login_required
from studiodesk.extensions import db, limiter
from studiodesk.models.rag import RagDocument
from studiodesk.services.ingestion_service import (
    IngestionError,
    delete_document,
    ingest_document,
)
from studiodesk.services.rag_service import QuotaExceeded, RagQueryError, RagQueryPipeline

logger = logging.getLogger(__name__)

rag_bp = Blueprint("rag", __name__, url_prefix="/rag")


def _pipeline():
    return RagQueryPipeline(
        db.session,
        current_app.extensions["embedding_gateway"],
        current_app.extensions["answer_generator"],
        current_app.config,
    )


@rag_bp.route("/query", methods=["POST"])
@limiter.limit("30 per minute")
@api_login_required
def query():
    data = request.get_json(silent=True) or {}

    try:
        answer = _pipeline().run(current_user.id, data.get("question"))
    except QuotaExceeded as e:
        return jsonify({
            "error": str(e),
            "questions_used": e.limit,
            "questions_remaining": 0,
        }), 429
    except RagQueryError as e:
        return jsonify({"error": e.message}), e.status

    return jsonify(answer.to_dict()), 200


# ──────────────────────────────────────────────
# Documents
# ──────────────────────────────────────────────

@rag_bp.route("/documents", methods=["GET"])
@api_login_required
def list_documents():
    documents = (
        RagDocument.query
        .filter_by(user_id=current_user.id)
        .order_by(RagDocument.created_at.desc())
        .all()
    )
    used, remaining = _pipeline().usage(current_user.id)
    return jsonify({
        "documents": [d.to_dict() for d in documents],
        "questions_used": used,
        "questions_remaining": remaining,
    }), 200


@rag_bp.route("/documents", methods=["POST"])
@api_login_required
def upload_document():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return jsonify({"error": "No file provided"}), 400

    data = upload.read()
    try:
        document = ingest_document(
            current_user.id,
            upload.filename,
            data,
            current_app.extensions["embedding_gateway"],
            current_app.config,
        )
        db.session.commit()
    except IngestionError as e:
        db.session.rollback()
        return jsonify({"error": e.message}), e.status

    return jsonify(document.to_dict()), 201


@rag_bp.route("/documents/<document_id>", methods=["DELETE"])
@api_login_required
def remove_document(document_id):
    if not delete_document(current_user.id, document_id):
        return jsonify({"error": "Document not found"}), 404
    db.session.commit()
    logger.info(f"Document {document_id} deleted by user {current_user.id}")
    return jsonify({"deleted": True}), 200
