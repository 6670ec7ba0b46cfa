"""
Alerts router
Feeds device reports and settings changes to the alert evaluators
"""

from fastapi import APIRouter, Depends, Query
from sqlmodel import select, col
from typing import Optional
import logging

from app.core.background_tasks import get_non_report_timers
from app.core.deps import Dependencies, get_dependencies
from app.core.exceptions import FleetError, to_http_exception
from app.models.alert import Alert
from app.schemas.alert import AlertEvent, AlertEventResponse, AlertResponse, AlertListResponse
from app.services.alert_evaluators import AlertDispatcher
from app.services.alert_notification import AlertNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["Alerts"])


@router.post("/events", response_model=AlertEventResponse)
async def post_alert_event(
    event: AlertEvent,
    deps: Dependencies = Depends(get_dependencies)
):
    """
    Evaluate the alerts affected by an event.

    Returns the alerts that were started or finished.
    """
    dispatcher = AlertDispatcher(deps, notifier=AlertNotifier(deps), timers=get_non_report_timers())
    try:
        alerts = await dispatcher.dispatch(event.action, event.data)
    except FleetError as e:
        logger.error(f"Alert event {event.action} failed: {e.message}")
        raise to_http_exception(e)
    return AlertEventResponse(alerts=[AlertResponse.model_validate(alert) for alert in alerts])


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    device_id: Optional[int] = Query(None),
    open_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    deps: Dependencies = Depends(get_dependencies)
):
    """List alerts, newest first."""
    query = select(Alert)
    if device_id is not None:
        query = query.where(Alert.device_id == device_id)
    if open_only:
        query = query.where(col(Alert.end_timestamp).is_(None))
    query = query.order_by(col(Alert.start_timestamp).desc(), col(Alert.id).desc()).limit(limit)

    alerts = deps.store.db.exec(query).all()
    return AlertListResponse(alerts=[AlertResponse.model_validate(a) for a in alerts], total=len(alerts))
