"""Alert endpoints for testing Telegram alert delivery."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from kahani.config import Settings
from kahani.dependencies import get_settings
from kahani.services.alert_service import send_alert

router = APIRouter()


class AlertTestResponse(BaseModel):
    success: bool
    message: str


def _require_admin_token(provided: Optional[str], config: Settings) -> None:
    expected = config.alerts_admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ALERTS_ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.post("/alerts/test", response_model=AlertTestResponse)
def alerts_test(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    config: Settings = Depends(get_settings),
):
    _require_admin_token(x_admin_token, config)
    sent = send_alert("INFO", "Alerts test", {"source": "alerts.test"}, config=config)
    if sent:
        return AlertTestResponse(success=True, message="Alert sent")
    return AlertTestResponse(success=False, message="Alert not sent (check ALERT_BOT_TOKEN/ALERT_CHAT_ID)")
