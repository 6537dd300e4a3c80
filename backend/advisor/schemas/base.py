"""Base schema classes with camelCase alias generation.

Python code stays snake_case; JSON on the wire is camelCase. Requests may
use either spelling.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for request schemas. Accepts and outputs camelCase."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
    }


class CamelResponseModel(BaseModel):
    """Base for response schemas built from in-memory dataclasses."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
        "protected_namespaces": (),
    }
