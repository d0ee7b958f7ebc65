from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.ext.asyncio import AsyncAttrs


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models.

    Inherits from AsyncAttrs so attributes can be loaded lazily under the
    SQLAlchemy 2.0 async ORM.
    """
    pass
