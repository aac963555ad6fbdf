"""
Service wiring for the job lifecycle feature.

build_services() assembles one graph of store, presence, broadcaster,
dispatcher, engine and the satellite services from Settings. Any collaborator
can be passed in explicitly (tests inject an in-memory store and fakes).
"""

from dataclasses import dataclass

from app.config import Settings
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.redis_client import fast_redis

from .domain.rules import BusinessRules
from .realtime.broadcaster import LocalRoomBroadcaster
from .realtime.gateway import RealtimeGateway
from .realtime.presence import InMemoryPresenceStore, PresenceStore, RedisPresenceStore
from .repository.base import EntityStore
from .repository.memory_store import InMemoryEntityStore
from .repository.postgres_store import PostgresEntityStore
from .services.messaging_service import MessagingService
from .services.notification_dispatcher import NotificationDispatcher
from .services.notification_inbox import NotificationInbox
from .services.payment_gateway import PaymentGateway, StripePaymentGateway
from .services.payment_service import PaymentService
from .services.push_sender import ExpoPushSender, NullPushSender, PushSender
from .services.rating_aggregator import RatingAggregator
from .services.review_service import ReviewService
from .services.transition_engine import TransitionEngine

logger = get_logger(__name__)


@dataclass
class MarketplaceServices:
    store: EntityStore
    presence: PresenceStore
    broadcaster: LocalRoomBroadcaster
    dispatcher: NotificationDispatcher
    engine: TransitionEngine
    messaging: MessagingService
    reviews: ReviewService
    payments: PaymentService
    inbox: NotificationInbox
    gateway: RealtimeGateway
    rules: BusinessRules


def _build_store(settings: Settings) -> EntityStore:
    if settings.STORE_BACKEND == "memory":
        return InMemoryEntityStore()
    return PostgresEntityStore()


def _build_presence(settings: Settings) -> PresenceStore:
    if settings.PRESENCE_BACKEND == "redis":
        return RedisPresenceStore(fast_redis, ttl_s=settings.PRESENCE_TTL_S)
    return InMemoryPresenceStore()


def _build_push_sender(settings: Settings, store: EntityStore) -> PushSender:
    if settings.push_configured():
        return ExpoPushSender(store, settings.EXPO_PUSH_URL, settings.EXPO_ACCESS_TOKEN)
    return NullPushSender()


def build_services(
    settings: Settings,
    *,
    store: EntityStore | None = None,
    presence: PresenceStore | None = None,
    push_sender: PushSender | None = None,
    payment_gateway: PaymentGateway | None = None,
) -> MarketplaceServices:
    store = store or _build_store(settings)
    presence = presence or _build_presence(settings)
    push_sender = push_sender or _build_push_sender(settings, store)
    payment_gateway = payment_gateway or StripePaymentGateway(
        settings.STRIPE_SECRET_KEY, settings.STRIPE_API_URL
    )
    rules = BusinessRules.from_settings(settings)
    currency = settings.PAYMENT_CURRENCY

    broadcaster = LocalRoomBroadcaster()
    dispatcher = NotificationDispatcher(store, presence, broadcaster, push_sender)
    engine = TransitionEngine(store, broadcaster, dispatcher, rules=rules, currency=currency)
    messaging = MessagingService(store, broadcaster, dispatcher)
    reviews = ReviewService(store, RatingAggregator(store), dispatcher)
    payments = PaymentService(store, payment_gateway, engine, rules=rules, currency=currency)
    gateway = RealtimeGateway(
        store, broadcaster, presence, engine, messaging, presence_refresh_s=settings.PRESENCE_TTL_S / 2
    )

    logger.info(
        "Job lifecycle services built",
        store=type(store).__name__,
        presence=type(presence).__name__,
        push=type(push_sender).__name__,
    )
    return MarketplaceServices(
        store=store,
        presence=presence,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
        engine=engine,
        messaging=messaging,
        reviews=reviews,
        payments=payments,
        inbox=NotificationInbox(store),
        gateway=gateway,
        rules=rules,
    )
