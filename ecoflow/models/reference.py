"""
Reference data read by the ECO engine.

Products and BOMs are owned by the product-data side of the system; the
engine only checks that a referenced id exists and reads a few columns for
risk summaries.  Nothing in ``ecoflow.services`` writes these tables.
"""

import uuid

from ecoflow.models import db


def _uuid():
    return str(uuid.uuid4())


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    sku = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(100), nullable=True)
    cost = db.Column(db.Float, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "cost": self.cost,
        }

    def __repr__(self):
        return f"<Product {self.sku}: {self.name}>"


class Bom(db.Model):
    __tablename__ = "boms"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    version = db.Column(db.String(20), nullable=False, default="1.0")

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Bom {self.id}: {self.name} v{self.version}>"
