from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}


def build_audit_document(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    auto_diff: bool = True,
) -> Dict[str, Any]:
    diff = None
    if auto_diff and before_state and after_state:
        diff = calculate_diff(before_state, after_state)

    enriched_metadata = metadata.copy() if metadata else {}
    if diff:
        enriched_metadata["diff"] = diff
        enriched_metadata["changes_count"] = (
            len(diff.get("added", {})) +
            len(diff.get("removed", {})) +
            len(diff.get("changed", {}))
        )

    audit_log = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        account_id=account_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=enriched_metadata or None,
        reason_code=reason_code,
        ip_address=ip_address
    )
    return audit_log.model_dump(mode="json")


async def append_audit_log(db, session, **fields) -> str:
    """Write an audit entry as part of an open transaction.

    Unlike create_audit_log, failures propagate so the enclosing unit rolls back.
    """
    doc = build_audit_document(**fields)
    await db.audit_logs.insert_one(doc, session=session)
    return doc["audit_id"]


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Create a standalone audit log entry (best-effort, outside any transaction).

    Args:
        action: The audit action type
        actor_role: Role of the user performing the action
        actor_id: ID of the user performing the action
        account_id: ID of the affected account
        resource_type: Type of resource being modified (e.g., 'subscription', 'payment')
        resource_id: ID of the specific resource
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        reason_code: Optional reason code for the action
        ip_address: IP address of the request
        auto_diff: If True, automatically calculate and store diff
    """
    try:
        db = database.get_db()
        doc = build_audit_document(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            account_id=account_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=metadata,
            reason_code=reason_code,
            ip_address=ip_address,
            auto_diff=auto_diff,
        )
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return doc["audit_id"]
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
