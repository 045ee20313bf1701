"""
Database Schemas

MongoDB collection schemas defined as Pydantic models.
Each model maps to one collection; the collection name is the snake_case
model name (see COLLECTIONS).
"""
from pydantic import BaseModel, Field
from typing import List, Optional


class AssetReference(BaseModel):
    url: str = Field(..., min_length=1, description="Public URL of the stored asset")
    public_id: Optional[str] = Field(None, description="Storage provider identifier")
    format: Optional[str] = Field(None, description="Format tag reported by the provider (pdf, png, ...)")
    bytes: Optional[int] = Field(None, ge=0, description="Size in bytes")
    resource_type: str = Field("raw", description="image|video|raw")
    original_filename: Optional[str] = Field(None, description="Name of the file as uploaded")


class DocumentGroup(BaseModel):
    name: str = Field(..., description="Human-assigned group name")
    note: Optional[str] = Field(None, description="Free-form note")
    files: List[AssetReference] = Field(default_factory=list, description="Ordered asset references")


class DocumentGroupIn(BaseModel):
    """Create payload; required fields are checked by the route so it can answer 400."""
    name: Optional[str] = None
    note: Optional[str] = None
    files: List[AssetReference] = Field(default_factory=list)


class Application(BaseModel):
    name: str = Field(..., description="First name")
    family_name: str = Field("", description="Family name")
    phone: str = Field(..., description="Contact phone number")


class ApplicationIn(BaseModel):
    name: Optional[str] = None
    family_name: str = ""
    phone: Optional[str] = None


COLLECTIONS = {
    DocumentGroup: "document_group",
    Application: "application",
}
