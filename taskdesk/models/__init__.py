# SQLModel definitions, imported here so SQLModel.metadata holds every table.
from .base import StringIdMixin, TimestampMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .organization_user import OrganizationUser  # noqa: F401
from .user import UserProfile  # noqa: F401
