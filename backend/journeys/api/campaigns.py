import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from journeys.api.deps import get_engine
from journeys.models.campaign import Campaign, CampaignFlow, CampaignSettings, Goal, Trigger
from journeys.models.journey import JourneyStatus
from journeys.services.engine import JourneyEngine

logger = logging.getLogger(__name__)
router = APIRouter()


# Request schema; statistics are owned by the engine and never accepted from clients.
class CampaignRequest(BaseModel):
    campaign_id: Optional[str] = None
    owner_id: str
    name: str
    description: Optional[str] = None
    triggers: List[Trigger] = Field(default_factory=list)
    flow: CampaignFlow = Field(default_factory=CampaignFlow)
    settings: CampaignSettings = Field(default_factory=CampaignSettings)
    goals: List[Goal] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)


class CampaignResponse(BaseModel):
    message: str
    campaign_id: str
    campaign: Campaign


class ActivationRequest(BaseModel):
    is_active: bool


@router.post("/campaigns", response_model=CampaignResponse, status_code=201)
async def create_campaign(request: CampaignRequest, engine: JourneyEngine = Depends(get_engine)):
    """
    Save a campaign definition. The flow graph and every condition/action
    variant are validated here; invalid definitions are rejected with 422.
    """
    data = request.model_dump(exclude_none=True)
    campaign = Campaign(**data)
    if await engine.get_campaign(campaign.campaign_id) is not None:
        raise HTTPException(status_code=409, detail=f"Campaign {campaign.campaign_id} already exists")

    await engine.save_campaign(campaign)
    logger.info(f"Campaign created successfully: {campaign.campaign_id}")
    return CampaignResponse(message="Campaign created successfully", campaign_id=campaign.campaign_id, campaign=campaign)


@router.get("/campaigns/{campaign_id}", response_model=Campaign)
async def get_campaign(campaign_id: str, engine: JourneyEngine = Depends(get_engine)):
    campaign = await engine.get_campaign(campaign_id)
    if campaign is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return campaign


@router.patch("/campaigns/{campaign_id}/active")
async def set_campaign_active(campaign_id: str, request: ActivationRequest, engine: JourneyEngine = Depends(get_engine)):
    """Switch a campaign on or off. Switching it on resumes its paused journeys."""
    result = await engine.set_campaign_active(campaign_id, request.is_active)
    if result is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return result


@router.get("/campaigns/{campaign_id}/analytics")
async def get_campaign_analytics(campaign_id: str, engine: JourneyEngine = Depends(get_engine)):
    analytics = await engine.campaign_analytics(campaign_id)
    if analytics is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return analytics


@router.get("/campaigns/{campaign_id}/journeys")
async def list_campaign_journeys(
    campaign_id: str,
    status: Optional[JourneyStatus] = None,
    engine: JourneyEngine = Depends(get_engine),
):
    if await engine.get_campaign(campaign_id) is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    journeys = await engine.list_journeys(campaign_id, status=status)
    return {
        "campaign_id": campaign_id,
        "total": len(journeys),
        "journeys": [j.model_dump(mode="json", exclude={"event_data"}) for j in journeys],
    }
