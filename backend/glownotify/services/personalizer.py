"""Placeholder substitution for notification templates."""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .templates import Template, Priority, Category

PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

DEFAULT_FIRST_NAME = "there"


@dataclass
class RenderedButton:
    text: str
    action: str
    deep_link: Optional[str] = None


@dataclass
class RenderedMessage:
    """A concrete, ready-to-send message."""
    title: str
    body: str
    deep_link: Optional[str] = None
    image_url: Optional[str] = None
    action_buttons: List[RenderedButton] = field(default_factory=list)
    data: Dict[str, str] = field(default_factory=dict)
    template_id: Optional[str] = None
    category: Optional[Category] = None
    priority: Priority = Priority.NORMAL


def interpolate(text: Optional[str], variables: Mapping[str, Any]) -> Optional[str]:
    """Replace ``{key}`` for every key present in variables; leave the rest as-is."""
    if text is None:
        return None

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            value = variables[key]
            return "" if value is None else str(value)
        return match.group(0)

    return PLACEHOLDER.sub(_sub, text)


def render(
    template: Template,
    variables: Optional[Mapping[str, Any]] = None,
    fill_first_name: bool = True,
) -> RenderedMessage:
    """Render a template. ``firstName`` defaults to "there".

    With ``fill_first_name=False`` and no ``firstName`` in variables the
    placeholder is kept so it can be personalized per recipient later.
    """
    values: Dict[str, Any] = dict(variables or {})
    if (fill_first_name or "firstName" in values) and not values.get("firstName"):
        values["firstName"] = DEFAULT_FIRST_NAME

    image_url = interpolate(template.image_url, values)
    # An image placeholder nobody filled would be an invalid URL on device
    if not image_url or PLACEHOLDER.fullmatch(image_url):
        image_url = None

    return RenderedMessage(
        title=interpolate(template.title, values),
        body=interpolate(template.body, values),
        deep_link=interpolate(template.deep_link, values),
        image_url=image_url,
        action_buttons=[
            RenderedButton(
                text=interpolate(button.text, values),
                action=button.action,
                deep_link=interpolate(button.deep_link, values),
            )
            for button in template.action_buttons
        ],
        template_id=template.id,
        category=template.category,
        priority=template.priority,
    )


def personalize(message: RenderedMessage, first_name: Optional[str]) -> RenderedMessage:
    """Fill ``{firstName}`` in an already-built message (ad hoc payloads)."""
    values = {"firstName": first_name or DEFAULT_FIRST_NAME}
    return RenderedMessage(
        title=interpolate(message.title, values),
        body=interpolate(message.body, values),
        deep_link=interpolate(message.deep_link, values),
        image_url=message.image_url,
        action_buttons=[
            RenderedButton(
                text=interpolate(b.text, values),
                action=b.action,
                deep_link=interpolate(b.deep_link, values),
            )
            for b in message.action_buttons
        ],
        data=dict(message.data),
        template_id=message.template_id,
        category=message.category,
        priority=message.priority,
    )
