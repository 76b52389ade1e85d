"""
Pydantic models for documents entering the pipeline.

DocumentMetadata is validated at the processor entry point so that a
malformed title or tag list fails fast as InvalidInputError instead of
surfacing later as a broken vector filter. DocumentManifest is the file
format accepted by `benefits-rag ingest --manifest`.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DocumentMetadata(BaseModel):
    """
    Document-level metadata copied onto every chunk.

    Unknown keys are kept so tenants can attach their own filter fields
    (e.g. "plan_year", "region").
    """

    model_config = ConfigDict(extra="allow")

    title: str | None = Field(
        default=None,
        description="Human readable title, shown in search results and context",
    )

    category: str | None = Field(
        default=None,
        description="Benefits area (e.g. 'health', 'dental', 'retirement')",
    )

    tags: list[str] = Field(
        default_factory=list,
        description="Free-form labels usable as search filters",
    )

    page_number: int | None = Field(
        default=None,
        ge=1,
        description="Source page for documents extracted from paged formats",
    )

    @field_validator("tags")
    @classmethod
    def _strip_tags(cls, tags: list[str]) -> list[str]:
        return [tag.strip() for tag in tags if tag.strip()]

    def to_chunk_metadata(self) -> dict[str, Any]:
        """Flatten to the dict stored with each chunk, dropping unset fields."""
        return self.model_dump(exclude_none=True)


class ManifestDocument(BaseModel):
    """One document entry in an ingest manifest."""

    id: str = Field(min_length=1, description="Stable document id within the tenant")
    content: str | None = Field(default=None, description="Inline document text")
    path: str | None = Field(default=None, description="Text file to read, relative to the manifest")
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    @field_validator("path")
    @classmethod
    def _blank_path_is_none(cls, path: str | None) -> str | None:
        return path or None

    @model_validator(mode="after")
    def _one_source(self) -> "ManifestDocument":
        if (self.content is None) == (self.path is None):
            raise ValueError(f"Document {self.id!r} needs exactly one of 'content' or 'path'")
        return self


class DocumentManifest(BaseModel):
    """
    Batch of documents for one tenant.

    Example:
        {
          "tenant_id": "acme-corp",
          "documents": [
            {"id": "doc1", "path": "health-plan.txt",
             "metadata": {"title": "Health Plan Overview", "category": "health"}}
          ]
        }
    """

    tenant_id: str = Field(min_length=1)
    documents: list[ManifestDocument] = Field(default_factory=list)
