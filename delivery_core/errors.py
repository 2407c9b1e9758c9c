from __future__ import annotations


class DeliveryError(Exception):
    """
    Base for every error the API reports to its caller.

    Carries the HTTP status, a machine-checkable `code` and any extra fields
    the client needs to render a precise message (e.g. `available_zones`).
    """

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, **self.extra}


class InvalidRequest(DeliveryError):
    code = "invalid_request"


class NotFound(DeliveryError):
    status_code = 404
    code = "not_found"


class Unauthorized(DeliveryError):
    status_code = 401
    code = "unauthorized"


class AccessDenied(DeliveryError):
    status_code = 403
    code = "access_denied"


class ZoneNotFound(DeliveryError):
    code = "zone_not_found"


# ----------------------
# Coupons
# ----------------------


class CouponRejected(DeliveryError):
    code = "coupon_invalid"


class CouponBelowMinimum(CouponRejected):
    code = "coupon_below_minimum"


class CouponExhausted(CouponRejected):
    code = "coupon_exhausted"


class CouponUserLimit(CouponRejected):
    code = "coupon_user_limit"


# ----------------------
# Dispatch
# ----------------------


class OfferUnavailable(DeliveryError):
    code = "offer_unavailable"


class OfferExpired(DeliveryError):
    code = "offer_expired"


class OrderAlreadyAssigned(DeliveryError):
    """Another courier claimed the order first; the client should re-poll offers."""

    code = "already_accepted"


class CapacityExceeded(DeliveryError):
    code = "capacity_exceeded"


class OrderNotReady(DeliveryError):
    code = "order_not_ready"


class CourierUnavailable(DeliveryError):
    code = "courier_unavailable"


class DispatchFailed(DeliveryError):
    status_code = 500
    code = "dispatch_failed"


class RateLimited(DeliveryError):
    status_code = 429
    code = "rate_limited"
