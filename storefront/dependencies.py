"""FastAPI dependencies resolving the services built by ``create_app``."""

from fastapi import Request

from .checkout import CheckoutService
from .config import Settings
from .coupons import CouponValidator
from .inventory import ReservationManager
from .notifications import Notifier
from .payments import WebhookProcessor
from .sweeper import ReservationSweeper


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_reservations(request: Request) -> ReservationManager:
    return request.app.state.reservations


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_coupons(request: Request) -> CouponValidator:
    return request.app.state.coupons


def get_webhooks(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_sweeper(request: Request) -> ReservationSweeper:
    return request.app.state.sweeper
