"""Typed payloads for remote ad platform actions.

Every call that goes through the dispatcher carries one of these models. The
``action_type`` field is the discriminator, so a stored JSON payload can be
validated back into the right variant before any remote call is attempted.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from campaign_engine.domain.enums import EntityType


class _ActionBase(BaseModel):
    """Common behaviour for action payloads."""

    # Unknown keys are forwarded to the platform as extra parameters
    model_config = ConfigDict(extra="allow")

    def params(self) -> dict[str, Any]:
        """Parameters to send to the platform, without the discriminator."""
        return self.model_dump(mode="json", exclude={"action_type"}, exclude_none=True)


class CreateCampaignAction(_ActionBase):
    action_type: Literal["create_campaign"] = "create_campaign"
    name: str = Field(min_length=1, max_length=400)
    objective: str = "OUTCOME_TRAFFIC"
    status: str = "PAUSED"
    special_ad_categories: list[str] = Field(default_factory=list)
    daily_budget: int | None = Field(default=None, gt=0, description="Minor currency units")
    lifetime_budget: int | None = Field(default=None, gt=0)
    bid_strategy: str | None = None


class CreateAdSetAction(_ActionBase):
    action_type: Literal["create_adset"] = "create_adset"
    name: str = Field(min_length=1, max_length=400)
    campaign_id: str = Field(min_length=1)
    status: str = "PAUSED"
    daily_budget: int | None = Field(default=None, gt=0)
    billing_event: str = "IMPRESSIONS"
    optimization_goal: str = "LINK_CLICKS"
    targeting: dict[str, Any] = Field(default_factory=dict)
    promoted_object: dict[str, Any] | None = None


class CreateAdAction(_ActionBase):
    action_type: Literal["create_ad"] = "create_ad"
    name: str = Field(min_length=1, max_length=400)
    adset_id: str = Field(min_length=1)
    status: str = "PAUSED"
    creative: dict[str, Any] = Field(default_factory=dict)


class _UpdateAction(_ActionBase):
    entity_id: str = Field(min_length=1)
    changes: dict[str, Any] = Field(min_length=1)

    def params(self) -> dict[str, Any]:
        return dict(self.changes)


class UpdateCampaignAction(_UpdateAction):
    action_type: Literal["update_campaign"] = "update_campaign"


class UpdateAdSetAction(_UpdateAction):
    action_type: Literal["update_adset"] = "update_adset"


class UpdateAdAction(_UpdateAction):
    action_type: Literal["update_ad"] = "update_ad"


class DuplicateAction(_ActionBase):
    action_type: Literal["duplicate"] = "duplicate"
    source_id: str = Field(min_length=1)
    entity_type: EntityType = EntityType.CAMPAIGN
    deep_copy: bool = False
    rename_suffix: str | None = None
    status_option: str = "PAUSED"


class BatchAction(_ActionBase):
    """Up to 50 raw sub-requests sent in one Graph API batch call."""

    action_type: Literal["batch"] = "batch"
    operations: list[dict[str, Any]] = Field(min_length=1, max_length=50)


class DeleteEntityAction(_ActionBase):
    """Compensating action issued during rollback."""

    action_type: Literal["delete_entity"] = "delete_entity"
    entity_id: str = Field(min_length=1)
    entity_type: EntityType


Action = Annotated[
    CreateCampaignAction
    | CreateAdSetAction
    | CreateAdAction
    | UpdateCampaignAction
    | UpdateAdSetAction
    | UpdateAdAction
    | DuplicateAction
    | BatchAction
    | DeleteEntityAction,
    Field(discriminator="action_type"),
]

action_adapter: TypeAdapter[Action] = TypeAdapter(Action)


def parse_action(payload: dict[str, Any] | BaseModel) -> Action:
    """Validate a payload into its action variant.

    Raises:
        pydantic.ValidationError: If the payload does not match any variant.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return action_adapter.validate_python(payload)


class ChildSpec(BaseModel):
    """One child of a bulk creation request: an ad set and optionally its ad."""

    adset: dict[str, Any] = Field(default_factory=dict)
    ad: dict[str, Any] | None = None


class ParentSpec(BaseModel):
    """Parent (campaign) of a bulk creation request."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1, max_length=400)
