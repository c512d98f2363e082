"""Shared pydantic base for API bodies."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase JSON.

    Responses are serialized by alias (FastAPI does this for ``response_model``)
    and requests accept either spelling.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
