"""Catalog models.

- Audiobook: the purchasable content item. Carries its list price and the
  content-level is_free flag.
- Chapter: a sub-unit of an audiobook. is_sample chapters are open to
  everyone regardless of entitlement.

Only the columns the commerce core reads live here; media assets, narrators,
approval workflow etc. belong to the presentation layer.
"""

import uuid

from app.extensions import db


class Audiobook(db.Model):
    __tablename__ = "audiobooks"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    is_free = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    chapters = db.relationship(
        "Chapter",
        back_populates="audiobook",
        order_by="Chapter.number",
        lazy="dynamic",
    )

    @property
    def is_free_content(self):
        """Free flag or zero list price: either opens the book to everyone."""
        return bool(self.is_free) or (self.price_cents or 0) == 0

    def __repr__(self):
        return f"<Audiobook {self.title}>"


class Chapter(db.Model):
    __tablename__ = "chapters"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    audiobook_id = db.Column(
        db.String(36), db.ForeignKey("audiobooks.id"), nullable=False, index=True
    )
    title = db.Column(db.String(255), nullable=False)
    number = db.Column(db.Integer, nullable=False, default=1)
    is_sample = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    audiobook = db.relationship("Audiobook", back_populates="chapters")

    def __repr__(self):
        return f"<Chapter {self.number} of {self.audiobook_id}>"
