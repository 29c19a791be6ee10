"""
Authorization Collaborator

Resolves whether an actor owns the product tied to an infringement.
"""
from typing import Protocol

from sqlalchemy.orm import Session

from ...models.db_models import InfringementDB, ProductDB


class Authorizer(Protocol):
    def owns_product(self, actor_id: str, infringement: InfringementDB) -> bool:
        ...


class ProductOwnershipAuthorizer:
    """Actor is authorized when they are the user on the linked product."""

    def __init__(self, db: Session):
        self.db = db

    def owns_product(self, actor_id: str, infringement: InfringementDB) -> bool:
        if not actor_id:
            return False
        owner_id = (
            self.db.query(ProductDB.user_id)
            .filter(ProductDB.id == infringement.product_id)
            .scalar()
        )
        return owner_id is not None and owner_id == actor_id
