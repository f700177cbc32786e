from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session


class BaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def _add_unique(self, obj) -> bool:
        """Insert obj inside a savepoint; False if a unique constraint rejected it."""
        try:
            with self.db.begin_nested():
                self.db.add(obj)
                self.db.flush()
            return True
        except IntegrityError:
            return False
