"""
Card button actions.

Every button on a bot card carries one of these descriptors serialized as
JSON. The set is closed: parsing rejects any tag not listed in CardAction.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from onboarding_hub.features.provisioning.domain.errors import (
    ActionParseError,
    UnknownActionError,
)


class EmailTarget(BaseModel):
    id: str
    name: str
    email: str | None = None


class RideTarget(BaseModel):
    name: str
    phone: str | None = None
    rule_id: str | None = None
    rule_name: str | None = None


class ProvisionEmailAction(EmailTarget):
    action: Literal["provision_email"] = "provision_email"


class ProvisionAllEmailAction(BaseModel):
    action: Literal["provision_all_email"] = "provision_all_email"
    users: list[EmailTarget] = Field(default_factory=list)


class ProvisionRideAction(RideTarget):
    action: Literal["provision_ride"] = "provision_ride"


class ProvisionAllRideAction(BaseModel):
    action: Literal["provision_all_ride"] = "provision_all_ride"
    users: list[RideTarget] = Field(default_factory=list)


class RefreshAction(BaseModel):
    action: Literal["refresh"] = "refresh"


CardAction = Annotated[
    ProvisionEmailAction
    | ProvisionAllEmailAction
    | ProvisionRideAction
    | ProvisionAllRideAction
    | RefreshAction,
    Field(discriminator="action"),
]

_card_action_adapter = TypeAdapter(CardAction)

KNOWN_ACTIONS = frozenset(
    {"provision_email", "provision_all_email", "provision_ride", "provision_all_ride", "refresh"}
)


def encode_action(action: BaseModel) -> str:
    """Serialize an action for a button's ``value`` field."""
    return action.model_dump_json(exclude_none=True)


def parse_action(raw: Any) -> CardAction:
    """
    Decode a button value into a CardAction.

    Args:
        raw: JSON string or already-decoded dict from the callback body

    Raises:
        ActionParseError: payload is not a JSON object or fails validation
        UnknownActionError: payload names an action outside the closed set
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ActionParseError(f"Invalid action payload: {e}") from e

    if not isinstance(raw, dict):
        raise ActionParseError("Action payload must be an object")

    tag = raw.get("action")
    if not tag:
        raise ActionParseError("Action payload has no action tag")
    if tag not in KNOWN_ACTIONS:
        raise UnknownActionError(str(tag))

    try:
        return _card_action_adapter.validate_python(raw)
    except ValidationError as e:
        raise ActionParseError(f"Invalid {tag} payload: {e.error_count()} field error(s)") from e
