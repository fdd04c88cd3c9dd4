"""
Document category catalog.

Loads split types, the split-type to category mapping and the per-category
extraction schemas from the bundled catalog.json, and exposes the helpers the
pipeline and the review layer need (JSON schema payloads, critical fields,
display names).
"""
import hashlib
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "catalog.json"

FALLBACK_CATEGORY = "other_recorded"
UNRECOGNIZED_CATEGORIES = {"other_recorded", "other"}

# Display names that plain title-casing gets wrong
_SPECIAL_FIELD_NAMES = {
    "grantor_name": "Grantor (Seller)",
    "grantee_name": "Grantee (Buyer)",
    "trustor_or_borrower_name": "Borrower Name",
    "grantor_signature_present": "Grantor Signature",
    "notary_signature_present": "Notary Signature",
    "surveyor_signature_present": "Surveyor Signature",
    "surveyor_seal_present": "Surveyor Seal",
    "principal_signature_present": "Principal Signature",
    "affiant_signature_present": "Affiant Signature",
    "requires_visual_verification": "Visual Verification Required",
    "parcel_identification_number": "Parcel ID (PIN)",
    "ccr_restrictions": "CC&R Restrictions",
    "hoa_lien": "HOA Lien",
    "ucc_filing": "UCC Filing",
}


def friendly_field_name(key: str) -> str:
    """'tenant_name' -> 'Tenant Name'."""
    if not key:
        return key
    if key in _SPECIAL_FIELD_NAMES:
        return _SPECIAL_FIELD_NAMES[key]
    return " ".join(word[:1].upper() + word[1:] for word in key.split("_"))


class FieldDefinition(BaseModel):
    key: str
    type: str = "string"
    description: Optional[str] = None


class CategorySchema(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    title: Optional[str] = None
    critical_fields: List[str] = Field(default_factory=list)
    fields: List[FieldDefinition] = Field(default_factory=list)

    @property
    def field_keys(self) -> List[str]:
        return [f.key for f in self.fields]

    def json_schema(self, source_quotes: bool = False, reasoning_prompts: bool = False) -> Dict[str, Any]:
        """
        JSON Schema payload sent with an extraction request.

        `source_quotes` and `reasoning_prompts` mark every field with the
        X-SourceQuote / X-ReasoningPrompt extensions, which make the remote API
        return `source___<key>` and `reasoning___<key>` companions.
        """
        properties: Dict[str, Any] = {}
        for field in self.fields:
            prop: Dict[str, Any] = {"type": [field.type, "null"]}
            if field.type == "array":
                prop["items"] = {"type": "object"}
            if field.description:
                prop["description"] = field.description
            if source_quotes:
                prop["X-SourceQuote"] = True
            if reasoning_prompts:
                prop["X-ReasoningPrompt"] = (
                    f"Explain how the {friendly_field_name(field.key).lower()} was determined from the document."
                )
            properties[field.key] = prop
        return {
            "type": "object",
            "title": self.title or self.name,
            "description": self.description or "",
            "properties": properties,
            "required": [],
            "additionalProperties": False,
        }

    def chunking_keys(self) -> List[str]:
        """Array fields the remote API may extract chunk by chunk."""
        return [f.key for f in self.fields if f.type == "array"]

    def fingerprint(self) -> str:
        """Short hash of the base schema; changes whenever the field layout does."""
        canonical = json.dumps(self.json_schema(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


class SplitType(BaseModel):
    name: str
    description: str = ""


class DocumentCatalog:
    def __init__(self, categories: List[CategorySchema], split_types: List[SplitType],
                 split_to_category: Dict[str, str]):
        self._categories: Dict[str, CategorySchema] = {c.id: c for c in categories}
        self.split_types = split_types
        self.split_to_category = dict(split_to_category)
        if FALLBACK_CATEGORY not in self._categories:
            raise ValueError(f"Catalog must define the '{FALLBACK_CATEGORY}' category")

    @classmethod
    def from_file(cls, path: Path = CATALOG_PATH) -> "DocumentCatalog":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        catalog = cls(
            categories=[CategorySchema(**c) for c in raw["categories"]],
            split_types=[SplitType(**s) for s in raw["split_types"]],
            split_to_category=raw.get("split_to_category", {}),
        )
        logger.info(
            f"Loaded document catalog: {len(catalog._categories)} categories, "
            f"{len(catalog.split_types)} split types"
        )
        return catalog

    @property
    def categories(self) -> List[CategorySchema]:
        return list(self._categories.values())

    def get(self, category_id: Optional[str]) -> Optional[CategorySchema]:
        if not category_id:
            return None
        return self._categories.get(category_id)

    def schema_for(self, category_id: Optional[str]) -> CategorySchema:
        """Schema for a category, falling back to the catch-all schema."""
        return self.get(category_id) or self._categories[FALLBACK_CATEGORY]

    def category_for_split(self, split_type: str) -> str:
        if split_type in self._categories:
            return split_type
        return self.split_to_category.get(split_type, FALLBACK_CATEGORY)

    def critical_fields(self, category_id: Optional[str]) -> List[str]:
        schema = self.get(category_id)
        return list(schema.critical_fields) if schema else []

    def display_name(self, category_id: Optional[str]) -> str:
        schema = self.get(category_id)
        if schema:
            return schema.name
        return friendly_field_name(category_id or "") or "Unknown"

    def subdocument_types(self) -> List[Dict[str, str]]:
        """Split types as the split endpoint expects them."""
        return [{"name": s.name, "description": s.description} for s in self.split_types]

    def classification_categories(self) -> List[Dict[str, str]]:
        """Categories as the classify endpoint expects them."""
        return [{"name": c.id, "description": c.description or c.name} for c in self._categories.values()]


@lru_cache()
def get_catalog() -> DocumentCatalog:
    return DocumentCatalog.from_file()
