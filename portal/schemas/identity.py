from typing import List, Optional
from pydantic import BaseModel, Field


class Identity(BaseModel):
    """Authenticated caller as carried by the access token."""
    user_id: str
    name: Optional[str] = None
    role: str
    class_section: Optional[str] = None
    student_id: Optional[str] = None
    assigned_class_sections: List[str] = Field(default_factory=list)
