"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from control_plane.models.privacy import (
    BreachRecordRow,
    ConsentRecordRow,
    PrivacyAuditRow,
    PrivacyRequestRow,
)

__all__ = [
    "BreachRecordRow",
    "ConsentRecordRow",
    "PrivacyAuditRow",
    "PrivacyRequestRow",
]
