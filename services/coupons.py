import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import update

from errors import ConflictError, ForbiddenError, NotFoundError, PolicyError, ValidationError
from models.booking import Booking, CANCELLED
from models.coupon import BookingCoupon, Coupon, FLAT, PERCENTAGE
from services.tx import conditional_update, money, transaction
from utils.audit import log_event

logger = logging.getLogger(__name__)


def normalize_code(code) -> str:
    return (code or "").strip().upper()


@dataclass
class CouponQuote:
    coupon: Coupon
    discount_amount: Decimal
    final_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "valid": True,
            "coupon": {
                "id": self.coupon.id,
                "code": self.coupon.code,
                "name": self.coupon.name,
                "discount_type": self.coupon.discount_type,
                "discount_value": str(self.coupon.discount_value),
            },
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
        }


class CouponEngine:
    def __init__(self, session, clock):
        self.session = session
        self.clock = clock

    def validate(self, code, amount, user_id) -> CouponQuote:
        code = normalize_code(code)
        if not code:
            raise ValidationError("Coupon code is required")
        amount = money(amount)

        now = self.clock.now()
        coupon = (
            self.session.query(Coupon)
            .filter(
                Coupon.code == code,
                Coupon.is_active.is_(True),
                Coupon.valid_from <= now,
                Coupon.valid_until >= now,
            )
            .first()
        )
        if coupon is None:
            raise NotFoundError("Invalid or expired coupon code")

        if coupon.usage_limit is not None and coupon.current_usage >= coupon.usage_limit:
            raise PolicyError("Coupon usage limit exceeded")

        if coupon.min_booking_amount is not None and amount < money(coupon.min_booking_amount):
            raise PolicyError(f"Minimum booking amount of {money(coupon.min_booking_amount)} required")

        if coupon.user_usage_limit is not None:
            used = self.user_usage(coupon.id, user_id)
            if used >= coupon.user_usage_limit:
                raise PolicyError("You have exceeded the usage limit for this coupon")

        discount = self.discount_for(coupon, amount)
        return CouponQuote(
            coupon=coupon,
            discount_amount=discount,
            final_amount=max(Decimal("0.00"), amount - discount),
        )

    @staticmethod
    def discount_for(coupon, amount) -> Decimal:
        value = money(coupon.discount_value)
        if coupon.discount_type == PERCENTAGE:
            discount = money(amount * value / Decimal(100))
        else:
            discount = value
        if coupon.max_discount_amount is not None and discount > money(coupon.max_discount_amount):
            discount = money(coupon.max_discount_amount)
        return min(discount, amount)

    def user_usage(self, coupon_id, user_id) -> int:
        # uses attached to bookings that were not cancelled
        return (
            self.session.query(BookingCoupon)
            .join(Booking, BookingCoupon.booking_id == Booking.id)
            .filter(
                BookingCoupon.coupon_id == coupon_id,
                Booking.user_id == user_id,
                Booking.status != CANCELLED,
            )
            .count()
        )

    def redeem(self, quote: CouponQuote, booking) -> BookingCoupon:
        """Counts a use against the coupon. Must run inside the booking's transaction."""
        coupon = quote.coupon
        changed = conditional_update(
            self.session,
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                (Coupon.usage_limit.is_(None)) | (Coupon.current_usage < Coupon.usage_limit),
            )
            .values(current_usage=Coupon.current_usage + 1),
        )
        if changed != 1:
            raise PolicyError("Coupon usage limit exceeded")

        link = BookingCoupon(
            booking_id=booking.id,
            coupon_id=coupon.id,
            discount_amount=quote.discount_amount,
        )
        self.session.add(link)
        return link

    def release(self, booking_id) -> bool:
        """Gives back the use held by a booking that was never paid."""
        link = self.session.query(BookingCoupon).filter_by(booking_id=booking_id).first()
        if link is None:
            return False
        changed = conditional_update(
            self.session,
            update(Coupon)
            .where(Coupon.id == link.coupon_id, Coupon.current_usage > 0)
            .values(current_usage=Coupon.current_usage - 1),
        )
        return changed == 1

    def create(self, actor, **fields) -> Coupon:
        if not actor.is_admin:
            raise ForbiddenError("Only admins can manage coupons")

        code = normalize_code(fields.get("code"))
        if not code:
            raise ValidationError("code is required")

        discount_type = (fields.get("discount_type") or PERCENTAGE).strip().upper()
        if discount_type not in (PERCENTAGE, FLAT):
            raise ValidationError("discount_type must be PERCENTAGE or FLAT")

        try:
            value = money(fields.get("discount_value"))
            min_amount = money(fields["min_booking_amount"]) if fields.get("min_booking_amount") is not None else None
            max_discount = money(fields["max_discount_amount"]) if fields.get("max_discount_amount") is not None else None
        except (InvalidOperation, ValueError):
            raise ValidationError("Amounts must be numeric")
        if value <= 0:
            raise ValidationError("discount_value must be positive")
        if discount_type == PERCENTAGE and value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")

        valid_from = fields.get("valid_from")
        valid_until = fields.get("valid_until")
        if not valid_from or not valid_until or valid_until < valid_from:
            raise ValidationError("valid_from and valid_until are required and must form a range")

        with transaction(self.session):
            if self.session.query(Coupon.id).filter_by(code=code).first():
                raise ConflictError("Coupon code already exists")
            coupon = Coupon(
                code=code,
                name=fields.get("name"),
                description=fields.get("description"),
                discount_type=discount_type,
                discount_value=value,
                min_booking_amount=min_amount,
                max_discount_amount=max_discount,
                usage_limit=fields.get("usage_limit"),
                user_usage_limit=fields.get("user_usage_limit"),
                current_usage=0,
                valid_from=valid_from,
                valid_until=valid_until,
                is_active=fields.get("is_active", True),
            )
            self.session.add(coupon)
            self.session.flush()
            log_event("COUPON_CREATE", user_id=actor.user_id, entity="coupon", entity_id=coupon.id,
                      metadata={"code": code}, session=self.session)

        logger.info("Coupon %s created", code)
        return coupon
