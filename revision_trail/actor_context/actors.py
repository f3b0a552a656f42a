"""Actor identities.

An actor is either a free-form name or a reference into an external identity
system, never a single field whose meaning depends on its runtime type.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class NamedActor(BaseModel):
    """Actor known only by a free-form name (user name, job name...)."""

    type: Literal["named"] = "named"
    name: str = Field(..., min_length=1)

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return self.name


class IdentifiedActor(BaseModel):
    """Actor identified by a reference into an external identity system."""

    type: Literal["identified"] = "identified"
    kind: str = Field(..., min_length=1, description="Identity kind, e.g. 'User'")
    ref: str = Field(..., min_length=1, description="Identifier within that kind")

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return f"{self.kind}:{self.ref}"


Actor = Annotated[Union[NamedActor, IdentifiedActor], Field(discriminator="type")]

actor_adapter: TypeAdapter = TypeAdapter(Actor)


def coerce_actor(value: Any) -> Any:
    """Turn a bare string into a NamedActor; pass anything else through."""
    if isinstance(value, str):
        return NamedActor(name=value)
    return value
