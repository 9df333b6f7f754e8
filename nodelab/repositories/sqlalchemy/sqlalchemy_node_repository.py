from typing import Any, List, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from nodelab.database import models
from nodelab.repositories.interfaces import INodeRepository


class SqlalchemyNodeRepository(INodeRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, node_model: models.Node) -> models.Node:
        self.db.add(node_model)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        self.db.refresh(node_model)
        return node_model

    def find_by_id(self, node_id: str) -> Optional[models.Node]:
        return self.db.query(models.Node).filter(models.Node.id == node_id).first()

    def find_by_name(self, name: str) -> Optional[models.Node]:
        return self.db.query(models.Node).filter(models.Node.name == name).first()

    def list_all(self) -> List[models.Node]:
        return self.db.query(models.Node).order_by(models.Node.created_at.desc(), models.Node.name.asc()).all()

    def list_by_status(self, *statuses: models.NodeStatus) -> List[models.Node]:
        values = [models.NodeStatus(s).value for s in statuses]
        return self.db.query(models.Node).filter(models.Node.status.in_(values)).order_by(models.Node.name.asc()).all()

    def count_by_image_id(self, image_id: str) -> int:
        return self.db.query(models.Node).filter(models.Node.image_id == image_id).count()

    def transition(self, node_id: str, from_status: models.NodeStatus, to_status: models.NodeStatus, **fields: Any) -> bool:
        # 조건부 UPDATE 한 번으로 검사와 기록을 동시에 수행 (read-then-write 금지)
        stmt = (
            update(models.Node)
            .where(
                models.Node.id == node_id,
                models.Node.status == models.NodeStatus(from_status).value,
            )
            .values(status=models.NodeStatus(to_status).value, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        return result.rowcount == 1

    def delete(self, node: models.Node) -> bool:
        if node:
            self.db.delete(node)
            self.db.commit()
            return True
        return False
