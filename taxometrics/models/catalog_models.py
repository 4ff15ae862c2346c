"""TAXOMETRICS — Catalog Models (read-only snapshot per run).

Catalog authoring happens elsewhere; this service only reads nodes and
products for a tenant.
"""

from typing import List, Optional

from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint


class TaxonomyNode(SQLModel, table=True):
    """A category in the tenant's hierarchy.

    ``path`` is the slash-joined, lowercase list of ancestor segments and is
    unique per tenant. The parent is the node whose path is this one minus its
    last segment.
    """

    __tablename__ = "taxonomy_nodes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "path", name="uq_taxonomy_node_path"),
    )

    id: str = Field(primary_key=True)
    tenant_id: str = Field(default="", index=True)
    path: str = Field(index=True, description="e.g. products/jackets/winter")
    title: str = Field(default="")
    depth: int = Field(default=0, description="Number of path segments")
    aliases: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    url: Optional[str] = Field(default=None, description="Storefront URL, if any")


class Product(SQLModel, table=True):
    """A sellable item, optionally assigned to a category by path."""

    __tablename__ = "products"

    id: str = Field(primary_key=True)
    tenant_id: str = Field(default="", index=True)
    title: str = Field(default="")
    url: str = Field(default="")
    gtin: Optional[str] = Field(default=None, index=True)
    sku: Optional[str] = Field(default=None)
    mpn: Optional[str] = Field(default=None)
    category_path: Optional[str] = Field(default=None)
    price: Optional[float] = Field(default=None)
