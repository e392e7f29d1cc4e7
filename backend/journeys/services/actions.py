import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from journeys.db.repositories import ContactRepository
from journeys.errors import ContactStoreError
from journeys.models.campaign import AddTagAction, RemoveTagAction, SendWebhookAction, UpdateFieldAction
from journeys.models.contact import ContactMutation
from journeys.models.journey import ContactJourney

logger = logging.getLogger(__name__)


class PostActionExecutor:
    """Runs a step's post-send actions in order and reports the ones that failed."""

    def __init__(
        self,
        contacts: ContactRepository,
        webhook_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.contacts = contacts
        self.webhook_timeout = webhook_timeout
        self.http_client = http_client

    async def run(self, actions: Sequence[Any], journey: ContactJourney, step_id: str) -> List[Dict[str, Any]]:
        errors = []
        for action in actions:
            try:
                await self._run_one(action, journey, step_id)
            except Exception as e:
                logger.error(f"[ACTIONS] {action.type} failed for journey {journey.journey_id} at step {step_id}: {e}")
                errors.append({"step_id": step_id, "action": action.type, "error": str(e)})
        return errors

    async def _run_one(self, action: Any, journey: ContactJourney, step_id: str):
        if isinstance(action, AddTagAction):
            await self._mutate(journey.contact_id, ContactMutation(op="add_tag", tag=action.tag))
        elif isinstance(action, RemoveTagAction):
            await self._mutate(journey.contact_id, ContactMutation(op="remove_tag", tag=action.tag))
        elif isinstance(action, UpdateFieldAction):
            await self._mutate(journey.contact_id, ContactMutation(op="set_field", field=action.field, value=action.value))
        elif isinstance(action, SendWebhookAction):
            await self._post_webhook(action, journey, step_id)
        else:
            raise ValueError(f"Unsupported post action: {action!r}")

    async def _mutate(self, contact_id: str, mutation: ContactMutation):
        if await self.contacts.mutate(contact_id, mutation) is None:
            raise ContactStoreError(f"Contact {contact_id} not found")
        logger.debug(f"[ACTIONS] Contact {contact_id} {mutation.op} applied")

    async def _post_webhook(self, action: SendWebhookAction, journey: ContactJourney, step_id: str):
        body = {
            **action.payload,
            "journey_id": journey.journey_id,
            "campaign_id": journey.campaign_id,
            "contact_id": journey.contact_id,
            "step_id": step_id,
        }
        if self.http_client is not None:
            response = await self.http_client.post(action.url, json=body, timeout=self.webhook_timeout)
        else:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                response = await client.post(action.url, json=body)
        response.raise_for_status()
        logger.info(f"[ACTIONS] Webhook {action.url} returned {response.status_code} for journey {journey.journey_id}")
