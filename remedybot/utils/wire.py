"""Pydantic base for payloads exchanged as camelCase JSON."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from remedybot.utils.helpers import snake_to_camel


class WireModel(BaseModel):
    """Accepts snake_case or camelCase keys; dumps camelCase with by_alias=True."""

    model_config = ConfigDict(alias_generator=snake_to_camel, populate_by_name=True)
