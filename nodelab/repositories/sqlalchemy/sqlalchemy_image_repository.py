from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from nodelab.database import models
from nodelab.repositories.interfaces import IImageRepository


class SqlalchemyImageRepository(IImageRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, image_model: models.Image) -> models.Image:
        self.db.add(image_model)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        self.db.refresh(image_model)
        return image_model

    def find_by_id(self, image_id: str) -> Optional[models.Image]:
        return self.db.query(models.Image).filter(models.Image.id == image_id).first()

    def find_by_name(self, name: str) -> Optional[models.Image]:
        return self.db.query(models.Image).filter(models.Image.name == name).first()

    def list_all(self) -> List[models.Image]:
        return self.db.query(models.Image).order_by(models.Image.name.asc()).all()

    def count_children(self, image_id: str) -> int:
        return self.db.query(models.Image).filter(models.Image.parent_id == image_id).count()

    def delete(self, image: models.Image) -> bool:
        if image:
            self.db.delete(image)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise
            return True
        return False
