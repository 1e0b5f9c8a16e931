"""
Base repository with generic CRUD operations.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from aiobscura.models.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository over one mapped table.

    Repositories never commit; the caller owns the transaction.
    """

    def __init__(self, model: Type[ModelType], session: Session):
        self.model = model
        self.session = session

    def get(self, id: Any) -> Optional[ModelType]:
        """
        Get a row by primary key.

        Args:
            id: Primary key value (a tuple for composite keys)

        Returns:
            Model instance or None
        """
        return self.session.get(self.model, id)

    def create(self, **kwargs) -> ModelType:
        """
        Create and flush a new row.

        Args:
            **kwargs: Model field values

        Returns:
            Created model instance (primary key populated)
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        self.session.flush()
        return instance

    def count(self) -> int:
        return self.session.query(self.model).count()
