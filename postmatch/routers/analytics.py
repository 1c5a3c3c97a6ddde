"""Campaign attribution summary endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from postmatch.deps import get_db
from postmatch.schemas import CampaignRevenueResponse
from postmatch.services.campaign_revenue import campaign_revenue

router = APIRouter(prefix="/campaigns", tags=["Analytics"])


@router.get("/{campaign_id}/revenue", response_model=CampaignRevenueResponse)
def get_campaign_revenue(campaign_id: str, db: Session = Depends(get_db)) -> CampaignRevenueResponse:
    """Revenue attributed to a campaign, split by matched and placeholder profiles."""
    revenue = campaign_revenue(db, campaign_id)
    return CampaignRevenueResponse(
        campaign_id=revenue.campaign_id,
        matched_orders=revenue.matched_orders,
        matched_revenue=revenue.matched_revenue,
        placeholder_orders=revenue.placeholder_orders,
        placeholder_revenue=revenue.placeholder_revenue,
        total_orders=revenue.total_orders,
        total_revenue=revenue.total_revenue,
    )
