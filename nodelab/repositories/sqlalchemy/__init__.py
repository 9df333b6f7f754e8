from .sqlalchemy_image_repository import SqlalchemyImageRepository
from .sqlalchemy_node_repository import SqlalchemyNodeRepository

__all__ = ["SqlalchemyImageRepository", "SqlalchemyNodeRepository"]
