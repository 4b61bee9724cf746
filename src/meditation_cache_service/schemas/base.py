"""Shared base for wire schemas."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys.

    Design Decision: camelCase on the wire
    - The admin dashboard and generation pipeline already consume camelCase
      (usageCount, lastUsedAt, dryRun), so the JSON contract keeps it.
    - Python code keeps snake_case attributes; populate_by_name accepts both.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
