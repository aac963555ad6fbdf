from .messaging_service import MessagingService  # noqa: F401
from .notification_dispatcher import NotificationDispatcher  # noqa: F401
from .notification_inbox import NotificationInbox  # noqa: F401
from .payment_gateway import PaymentGatewayError, StripePaymentGateway  # noqa: F401
from .payment_service import PaymentService  # noqa: F401
from .push_sender import ExpoPushSender, NullPushSender  # noqa: F401
from .rating_aggregator import RatingAggregator  # noqa: F401
from .review_service import ReviewService  # noqa: F401
from .transition_engine import TransitionEngine  # noqa: F401
