"""Typed automation actions that make up broker scan and opt-out scripts.

Broker files tag each action with an ``actionType`` string. Here the tag is the
discriminator of a closed union, so every kind carries its own validated
parameters and dispatch never inspects raw dictionaries.
"""

import re
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic.alias_generators import to_camel

TEMPLATE_FIELD_PATTERN = re.compile(r"\$\{\s*(\w+)\s*\}")


class ActionKind(str, Enum):
    """Supported action kinds."""

    NAVIGATE = "navigate"
    CLICK = "click"
    FILL_FORM = "fillForm"
    EXTRACT = "extract"
    GET_CAPTCHA_INFO = "getCaptchaInfo"
    SOLVE_CAPTCHA = "solveCaptcha"
    EXPECTATION = "expectation"
    EMAIL_CONFIRMATION = "emailConfirmation"


class _BrokerModel(BaseModel):
    """Shared configuration: camelCase on the wire, snake_case in Python."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "frozen": True,
        "extra": "ignore",
    }


class PageElement(_BrokerModel):
    """An element on the page addressed by a selector."""

    type: str = Field(..., description="Element role, e.g. button, fullName, email")
    selector: str = Field(..., min_length=1)
    parent: Optional[Dict[str, Any]] = None


class ExtractorField(_BrokerModel):
    """How to read one field of a listing."""

    selector: str = Field(..., min_length=1)
    find_elements: bool = False
    after_text: Optional[str] = None
    before_text: Optional[str] = None
    separator: Optional[str] = None
    identifier_type: Optional[str] = None
    identifier: Optional[str] = None


class Expectation(_BrokerModel):
    """A condition the current page must satisfy."""

    type: Literal["text", "url", "element"]
    selector: Optional[str] = None
    expect: Optional[str] = None


class BaseAction(_BrokerModel):
    """Fields common to every action."""

    id: str = Field(..., min_length=1)

    def required_fields(self) -> FrozenSet[str]:
        """Profile fields this action cannot run without."""
        return frozenset()

    @property
    def needs_email(self) -> bool:
        return False


class NavigateAction(BaseAction):
    action_type: Literal["navigate"] = "navigate"
    url: str = Field(..., min_length=1)
    age_range: Optional[List[str]] = None

    def required_fields(self) -> FrozenSet[str]:
        return frozenset(TEMPLATE_FIELD_PATTERN.findall(self.url)) - {"ageRange"}


class ClickAction(BaseAction):
    action_type: Literal["click"] = "click"
    elements: List[PageElement] = Field(..., min_length=1)


class FillFormAction(BaseAction):
    action_type: Literal["fillForm"] = "fillForm"
    selector: str = Field(..., min_length=1)
    elements: List[PageElement] = Field(..., min_length=1)

    def required_fields(self) -> FrozenSet[str]:
        return frozenset(element.type for element in self.elements)

    @property
    def needs_email(self) -> bool:
        return any(element.type == "email" for element in self.elements)


class ExtractAction(BaseAction):
    action_type: Literal["extract"] = "extract"
    selector: str = Field(..., min_length=1)
    profile: Dict[str, ExtractorField] = Field(default_factory=dict)


class GetCaptchaInfoAction(BaseAction):
    action_type: Literal["getCaptchaInfo"] = "getCaptchaInfo"
    selector: str = Field(..., min_length=1)


class SolveCaptchaAction(BaseAction):
    action_type: Literal["solveCaptcha"] = "solveCaptcha"
    selector: str = Field(..., min_length=1)


class ExpectationAction(BaseAction):
    action_type: Literal["expectation"] = "expectation"
    expectations: List[Expectation] = Field(..., min_length=1)


class EmailConfirmationAction(BaseAction):
    action_type: Literal["emailConfirmation"] = "emailConfirmation"
    polling_time: float = Field(30, gt=0, description="Seconds between inbox polls")


Action = Annotated[
    Union[
        NavigateAction,
        ClickAction,
        FillFormAction,
        ExtractAction,
        GetCaptchaInfoAction,
        SolveCaptchaAction,
        ExpectationAction,
        EmailConfirmationAction,
    ],
    Field(discriminator="action_type"),
]

ACTION_LIST_ADAPTER: TypeAdapter = TypeAdapter(List[Action])


def parse_actions(payload: List[Dict[str, Any]]) -> List[Action]:
    """Validate a list of raw action dictionaries into typed actions.

    Raises:
        pydantic.ValidationError: If an action has an unknown kind or bad parameters
    """
    return ACTION_LIST_ADAPTER.validate_python(payload)
