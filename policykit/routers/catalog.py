"""Public pricing catalog."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from policykit.schemas.protocol import CatalogEntry
from policykit.services.paywall import Paywall
from policykit.services.pricing import pricing_catalog

router = APIRouter(prefix="/catalog", tags=["catalog"])


def get_paywall(request: Request) -> Paywall:
    """Return the paywall installed on the application at startup."""

    return request.app.state.paywall


@router.get("", response_model=list[CatalogEntry])
def list_priced_endpoints(paywall: Paywall = Depends(get_paywall)) -> list[CatalogEntry]:
    return pricing_catalog(paywall.config)
