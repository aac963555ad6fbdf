"""HTTP and WebSocket routers for the job lifecycle feature."""

from . import jobs, messages, notifications, payments, quotes, realtime, reviews  # noqa: F401

routers = [
    jobs.router,
    quotes.router,
    reviews.router,
    notifications.router,
    messages.router,
    payments.router,
    realtime.router,
]
