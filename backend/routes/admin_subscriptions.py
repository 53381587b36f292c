"""Admin subscription routes.

POST /api/admin/subscriptions/{subscription_id}/action - approve/reject/suspend/reactivate/cancel/withdraw
GET  /api/admin/subscriptions/{subscription_id}        - status, allowed actions, payments, admin history
"""
from fastapi import APIRouter, Depends
from middleware import admin_route_guard
from models import AdminActionRequest
from services.admin_actions import AdminActionProcessor, admin_action_processor, subscription_overview
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/subscriptions", tags=["admin"])


def get_admin_action_processor() -> AdminActionProcessor:
    return admin_action_processor


@router.post("/{subscription_id}/action")
async def perform_subscription_action(
    subscription_id: str,
    payload: AdminActionRequest,
    current_user: dict = Depends(admin_route_guard),
    processor: AdminActionProcessor = Depends(get_admin_action_processor),
):
    """Apply an operator action. refund_initiated is set when a REJECT found payments to refund."""
    result = await processor.perform_action(
        subscription_id,
        payload.action,
        actor_id=current_user["account_id"],
        reason=payload.reason,
        notes=payload.notes,
        actor_role=current_user.get("role", "ADMIN"),
    )
    return result.to_response()


@router.get("/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    current_user: dict = Depends(admin_route_guard),
):
    return await subscription_overview(subscription_id)
