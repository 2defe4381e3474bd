"""
Seller subscription and request lifecycle rules.

Everything here is a pure function over plain documents (dicts as stored in
MongoDB). Callers pass the current time in and write the returned updates
themselves, so the rules can be exercised without a database or a clock.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

SUBSCRIPTION_DAYS = {"monthly": 30, "yearly": 365}

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
REQUEST_STATUSES = (PENDING, APPROVED, REJECTED)

ACTIONS = {"approve": APPROVED, "reject": REJECTED}

REACTIVATION = "reactivation"
VERIFICATION = "verification"


class SubscriptionOutcome(str, Enum):
    OK = "OK"
    REQUIRED = "SUBSCRIPTION_REQUIRED"
    EXPIRED = "SUBSCRIPTION_EXPIRED"


@dataclass(frozen=True)
class SubscriptionCheck:
    outcome: SubscriptionOutcome
    demotion: Optional[Dict[str, Any]] = None

    @property
    def allowed(self) -> bool:
        return self.outcome is SubscriptionOutcome.OK


@dataclass(frozen=True)
class Decision:
    """The writes produced by processing a request: one per document."""
    status: str
    request_update: Dict[str, Any]
    user_update: Optional[Dict[str, Any]] = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Documents read from a non tz-aware client come back naive (UTC)
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def has_active_subscription(user: Dict[str, Any], now: datetime) -> bool:
    if not user.get("subscribed"):
        return False
    end = as_utc(user.get("subscriptionEndDate"))
    return end is None or now <= end


def is_expired(user: Dict[str, Any], now: datetime) -> bool:
    end = as_utc(user.get("subscriptionEndDate"))
    return end is not None and now > end


def demotion_update(now: datetime) -> Dict[str, Any]:
    return {
        "subscribed": False,
        "type": "customer",
        "subscriptionStatus": "expired",
        "updatedAt": now,
    }


def check_subscription(user: Dict[str, Any], now: datetime) -> SubscriptionCheck:
    """Decide whether a user may perform a seller-only action.

    A seller whose end date has passed is reported as EXPIRED together with
    the update that demotes them; the caller persists it before rejecting.
    Anyone else without a live subscription is REQUIRED.
    """
    if user.get("type") == "seller" and is_expired(user, now):
        return SubscriptionCheck(SubscriptionOutcome.EXPIRED, demotion_update(now))
    if user.get("type") != "seller" or not user.get("subscribed"):
        return SubscriptionCheck(SubscriptionOutcome.REQUIRED)
    return SubscriptionCheck(SubscriptionOutcome.OK)


def needs_demotion(user: Dict[str, Any], now: datetime) -> bool:
    """Login-time variant: only lapsed sellers are touched."""
    return user.get("type") == "seller" and is_expired(user, now)


def subscription_window(subscription_type: str, now: datetime) -> Tuple[datetime, datetime]:
    try:
        days = SUBSCRIPTION_DAYS[subscription_type]
    except KeyError:
        raise ValueError(f"Unknown subscription type: {subscription_type!r}")
    return now, now + timedelta(days=days)


def seller_activation(subscription_type: str, now: datetime) -> Dict[str, Any]:
    start, end = subscription_window(subscription_type, now)
    return {
        "type": "seller",
        "subscribed": True,
        "subscriptionType": subscription_type,
        "subscriptionStartDate": start,
        "subscriptionEndDate": end,
        "subscriptionStatus": "active",
        "updatedAt": now,
    }


def can_process_request(request: Dict[str, Any]) -> bool:
    return request.get("status") == PENDING


def resolve_action(action: str) -> str:
    try:
        return ACTIONS[action]
    except KeyError:
        raise ValueError('Invalid action. Must be "approve" or "reject"')


def apply_approval(kind: str, request: Dict[str, Any], params: Dict[str, Any], admin_id: Any, now: datetime) -> Decision:
    """Build the request and user updates for an admin decision.

    params: {"action": approve|reject, "adminNote": str, "subscriptionType": monthly|yearly}
    Raises ValueError for an unknown action, kind or subscription type, and
    for requests that are no longer pending.
    """
    if not can_process_request(request):
        raise ValueError("Request has already been processed")
    status = resolve_action(params.get("action", ""))
    request_update = {
        "status": status,
        "processedAt": now,
        "adminId": admin_id,
        "adminNote": (params.get("adminNote") or "").strip(),
    }
    if status == REJECTED:
        return Decision(status, request_update)

    if kind == REACTIVATION:
        subscription_type = params.get("subscriptionType") or "monthly"
        user_update = seller_activation(subscription_type, now)
        request_update["subscriptionType"] = subscription_type
    elif kind == VERIFICATION:
        user_update = {"verified": True, "verifiedAt": now, "updatedAt": now}
    else:
        raise ValueError(f"Unknown request kind: {kind!r}")
    return Decision(status, request_update, user_update)


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("type") == "admin"


def is_owner(resource: Dict[str, Any], user_id: Any) -> bool:
    """True if user_id owns the resource: a product's seller or the user document itself."""
    owner = resource.get("sellerId", resource.get("_id"))
    return owner is not None and str(owner) == str(user_id)


def can_act_for(subject_id: Any, user: Dict[str, Any]) -> bool:
    return str(subject_id) == str(user.get("_id")) or is_admin(user)


def conversation_id(user_a: Any, user_b: Any) -> str:
    first, second = sorted([str(user_a), str(user_b)])
    return f"{first}-{second}"
