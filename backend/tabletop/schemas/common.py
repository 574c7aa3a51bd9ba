"""Shared schema base: snake_case in Python, camelCase on the wire."""
from typing import Optional

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


class ActionResult(CamelModel):
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    deep_link: Optional[str] = None
