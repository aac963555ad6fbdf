"""Domain models, error taxonomy and business rules for the job lifecycle."""

from .errors import (  # noqa: F401
    ConflictError,
    DuplicateRecordError,
    ErrorKind,
    Outcome,
    ServiceError,
    StorageUnavailableError,
)
from .models import (  # noqa: F401
    ChatMessage,
    Job,
    JobStatus,
    JobTimelineEntry,
    MechanicProfile,
    Notification,
    NotificationType,
    Payment,
    Quote,
    QuoteStatus,
    Review,
)
from .rules import BusinessRules  # noqa: F401
