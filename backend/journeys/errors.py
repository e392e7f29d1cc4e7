class JourneyEngineError(Exception):
    """Base class for journey engine errors."""


class ConfigurationError(JourneyEngineError):
    """A campaign definition cannot be executed as written (unknown step, bad template, ...)."""


class MailerError(JourneyEngineError):
    """The mailer refused or failed to enqueue a message."""


class ContactStoreError(JourneyEngineError):
    """The contact store could not be read or mutated."""


class InvariantViolation(JourneyEngineError):
    """More than one active journey exists for the same (campaign, contact) pair."""

    def __init__(self, campaign_id: str, contact_id: str, journey_ids: list[str]):
        self.campaign_id = campaign_id
        self.contact_id = contact_id
        self.journey_ids = journey_ids
        super().__init__(
            f"{len(journey_ids)} active journeys for campaign {campaign_id} / contact {contact_id}: {journey_ids}"
        )
