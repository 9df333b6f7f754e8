from .image import Image
from .node import Node, NodeStatus

__all__ = ["Image", "Node", "NodeStatus"]
