from .base import EntityStore  # noqa: F401
from .memory_store import InMemoryEntityStore  # noqa: F401
from .postgres_store import PostgresEntityStore  # noqa: F401
