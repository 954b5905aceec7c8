"""
Domain exceptions raised by the campaign send service.
"""


class SendQueueError(Exception):
    """Base class for send queue errors."""


class CampaignNotFoundError(SendQueueError):
    """The referenced campaign does not exist."""

    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign {campaign_id} not found")
        self.campaign_id = campaign_id


class CampaignNotReadyError(SendQueueError):
    """The campaign is missing content required to send."""


class CampaignStateError(SendQueueError):
    """The campaign is not in a status that allows the requested action."""

    def __init__(self, campaign_id: str, status: str, action: str):
        super().__init__(f"Campaign {campaign_id} cannot {action} while {status}")
        self.campaign_id = campaign_id
        self.status = status
        self.action = action
