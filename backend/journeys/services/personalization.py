import logging
import re
from typing import Any, Dict, Iterable, Mapping, Protocol

from journeys.errors import ConfigurationError
from journeys.models.campaign import Campaign
from journeys.models.contact import Contact
from journeys.models.journey import ContactJourney
from journeys.services.conditions import lookup

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"{{\s*(.*?)\s*}}")
TOKEN_NAME = re.compile(r"^[A-Za-z_][\w.\-]*$")


class TemplateRenderer(Protocol):
    def render(self, template: str, variables: Mapping[str, Any], required: Iterable[str] = ()) -> str: ...


class TokenTemplateRenderer:
    """
    `{{token}}` substitution. Tokens may be dotted (`{{event.plan}}`);
    unknown tokens render empty. Malformed tokens and missing required
    fields raise ConfigurationError.
    """

    def render(self, template: str, variables: Mapping[str, Any], required: Iterable[str] = ()) -> str:
        if template is None:
            raise ConfigurationError("Template is missing")

        missing = [field for field in required if _blank(lookup(variables, field))]
        if missing:
            raise ConfigurationError(f"Missing personalization field(s): {', '.join(missing)}")

        leftover = TOKEN_PATTERN.sub("", template)
        if "{{" in leftover or "}}" in leftover:
            raise ConfigurationError("Unterminated template token")

        def replacer(match):
            key = match.group(1)
            if not TOKEN_NAME.match(key):
                raise ConfigurationError(f"Malformed template token: {match.group(0)}")
            value = lookup(variables, key)
            return "" if value is None else str(value)

        return TOKEN_PATTERN.sub(replacer, template)


def _blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def template_variables(contact: Contact, journey: ContactJourney, campaign: Campaign) -> Dict[str, Any]:
    """Campaign variables, then the triggering event payload, then contact fields (highest precedence)."""
    return {
        **campaign.variables,
        **journey.event_data,
        **contact.template_variables(),
        "event": journey.event_data,
        "campaign": {"id": campaign.campaign_id, "name": campaign.name},
    }
