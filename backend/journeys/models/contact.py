from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class Contact(BaseModel):
    contact_id: str
    owner_id: str
    email: str = Field(default="", examples=["john@example.com"])
    name: Optional[str] = Field(default=None, examples=["John Doe"])
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    unsubscribed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def field_value(self, field: str) -> Any:
        """Standard attribute or custom field value, None when absent."""
        if field in ("email", "name"):
            return getattr(self, field)
        return self.custom_fields.get(field)

    def template_variables(self) -> Dict[str, Any]:
        first_name = (self.name or "").split(" ")[0] if self.name else ""
        return {
            **self.custom_fields,
            "email": self.email,
            "name": self.name or "",
            "first_name": first_name,
        }


class ContactMutation(BaseModel):
    """One ContactStore.mutate operation."""

    op: Literal["add_tag", "remove_tag", "set_field"]
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
