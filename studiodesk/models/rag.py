"""Document Q&A models.

- RagDocument: one uploaded file per row; owns its chunks.
- RagChunk: a text span plus its embedding (JSON list of floats). A chunk
  is searchable once embedding_json is set; chunks stored without one are
  embedded lazily on the next query.
- RagUsage: daily question counter, one row per (user, day).
"""

import uuid

from studiodesk.extensions import db


class RagDocument(db.Model):
    __tablename__ = "rag_documents"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    file_name = db.Column(db.String(255), nullable=False)
    file_hash = db.Column(db.String(64), nullable=False)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)
    chunk_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint("user_id", "file_hash", name="uq_rag_document_user_hash"),
    )

    # --- Relationships ---
    chunks = db.relationship(
        "RagChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="RagChunk.chunk_index",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "file_name": self.file_name,
            "size_bytes": self.size_bytes,
            "chunk_count": self.chunk_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RagDocument {self.file_name}>"


class RagChunk(db.Model):
    __tablename__ = "rag_chunks"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    document_id = db.Column(
        db.String(36),
        db.ForeignKey("rag_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(36), nullable=False, index=True)
    chunk_index = db.Column(db.Integer, nullable=False, default=0)
    chunk_text = db.Column(db.Text, nullable=False)
    embedding_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    document = db.relationship("RagDocument", back_populates="chunks")

    @property
    def is_embedded(self):
        return bool(self.embedding_json) and self.embedding_json != "null"

    def __repr__(self):
        return f"<RagChunk {self.document_id}#{self.chunk_index}>"


class RagUsage(db.Model):
    __tablename__ = "rag_usage"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    usage_date = db.Column(db.Date, nullable=False)
    questions_used = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("user_id", "usage_date", name="uq_rag_usage_user_date"),
    )

    def __repr__(self):
        return f"<RagUsage {self.user_id} {self.usage_date}={self.questions_used}>"
