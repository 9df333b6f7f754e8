from .image import IImageRepository
from .node import INodeRepository

__all__ = ["IImageRepository", "INodeRepository"]
