# (c) 2024 Niels Provos
#
"""
Coordinate transforms between the stage, screen, layer-local and native
pixel spaces of the canvas.

Every scene node carries a local affine transform. Its absolute transform is
the product of the local transforms along the full ancestor chain, starting at
the stage. Strokes arrive in stage space and are mapped into a node's local
space with

    local = inverse(absolute(node)) . absolute(stage) . point
"""

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)


class AffineTransform:
    """A 2D affine transform stored as a 3x3 homogeneous matrix."""

    __slots__ = ("_matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            matrix = np.eye(3, dtype=np.float64)
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (3, 3):
            raise ValueError(f"matrix must be 3x3, got {matrix.shape}")
        self._matrix = matrix

    @property
    def matrix(self):
        return self._matrix

    @staticmethod
    def identity():
        return AffineTransform()

    @staticmethod
    def translation(tx, ty):
        return AffineTransform([[1, 0, tx], [0, 1, ty], [0, 0, 1]])

    @staticmethod
    def rotation(degrees):
        radians = math.radians(degrees)
        cos, sin = math.cos(radians), math.sin(radians)
        return AffineTransform([[cos, -sin, 0], [sin, cos, 0], [0, 0, 1]])

    @staticmethod
    def scaling(sx, sy):
        return AffineTransform([[sx, 0, 0], [0, sy, 0], [0, 0, 1]])

    def copy(self):
        return AffineTransform(self._matrix.copy())

    def multiply(self, other):
        """Returns self . other, i.e. other is applied first."""
        return AffineTransform(self._matrix @ other.matrix)

    def invert(self):
        det = np.linalg.det(self._matrix[:2, :2])
        if abs(det) < 1e-12:
            raise ValueError("Cannot invert a singular transform")
        return AffineTransform(np.linalg.inv(self._matrix))

    def point(self, point):
        x, y = point
        m = self._matrix
        return (
            m[0, 0] * x + m[0, 1] * y + m[0, 2],
            m[1, 0] * x + m[1, 1] * y + m[1, 2],
        )

    def points(self, points):
        """Maps an (N, 2) sequence of points."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return pts @ self._matrix[:2, :2].T + self._matrix[:2, 2]

    def __eq__(self, other):
        if not isinstance(other, AffineTransform):
            return False
        return np.allclose(self._matrix, other.matrix)

    def __repr__(self):
        return f"AffineTransform({self._matrix[:2].tolist()})"


class SceneNode:
    __slots__ = (
        "node_id",
        "x",
        "y",
        "width",
        "height",
        "rotation",
        "scale_x",
        "scale_y",
        "offset_x",
        "offset_y",
        "parent",
        "children",
    )

    def __init__(
        self,
        node_id,
        x=0.0,
        y=0.0,
        width=0.0,
        height=0.0,
        rotation=0.0,
        scale_x=1.0,
        scale_y=1.0,
        offset_x=0.0,
        offset_y=0.0,
    ):
        """
        A node of the scene graph.

        Args:
            node_id (str): The id of the node, shared with its layer.
            x (float): The x position in the parent's space.
            y (float): The y position in the parent's space.
            width (float): The display width of the node.
            height (float): The display height of the node.
            rotation (float): The rotation in degrees, clockwise on screen.
            scale_x (float): The horizontal scale.
            scale_y (float): The vertical scale.
            offset_x (float): The local x coordinate that is placed at (x, y).
            offset_y (float): The local y coordinate that is placed at (x, y).
        """
        self.node_id = node_id
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.rotation = rotation
        self.scale_x = scale_x
        self.scale_y = scale_y
        self.offset_x = offset_x
        self.offset_y = offset_y
        self.parent = None
        self.children = []

    @property
    def size(self):
        return (self.width, self.height)

    def local_transform(self):
        transform = AffineTransform.translation(self.x, self.y)
        transform = transform.multiply(AffineTransform.rotation(self.rotation))
        transform = transform.multiply(
            AffineTransform.scaling(self.scale_x, self.scale_y)
        )
        return transform.multiply(
            AffineTransform.translation(-self.offset_x, -self.offset_y)
        )

    def ancestors(self):
        """Returns the chain from the root down to this node."""
        chain = []
        node = self
        while node is not None:
            chain.append(node)
            node = node.parent
        chain.reverse()
        return chain

    def absolute_transform(self):
        transform = AffineTransform.identity()
        for node in self.ancestors():
            transform = transform.multiply(node.local_transform())
        return transform

    def absolute_scale(self):
        scale_x, scale_y = 1.0, 1.0
        for node in self.ancestors():
            scale_x *= node.scale_x
            scale_y *= node.scale_y
        return scale_x, scale_y


class Scene:
    """A minimal scene graph rooted at the stage node."""

    STAGE_ID = "stage"

    def __init__(self, stage=None):
        self.stage = stage if stage is not None else SceneNode(self.STAGE_ID)
        self._nodes = {self.stage.node_id: self.stage}

    def add(self, node, parent_id=None):
        parent = self.stage if parent_id is None else self._nodes[parent_id]
        node.parent = parent
        parent.children.append(node)
        self._nodes[node.node_id] = node
        return node

    def find(self, node_id):
        return self._nodes.get(node_id)

    def remove(self, node_id):
        node = self._nodes.get(node_id)
        if node is None or node is self.stage:
            return False
        if node.parent is not None:
            node.parent.children.remove(node)
            node.parent = None
        pending = [node]
        while pending:
            current = pending.pop()
            self._nodes.pop(current.node_id, None)
            pending.extend(current.children)
        return True

    def __contains__(self, node_id):
        return node_id in self._nodes


def pair_points(points):
    """Accepts a flat [x0, y0, x1, y1, ...] list or (x, y) pairs."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.size == 0:
        return np.zeros((0, 2), dtype=np.float64)
    if pts.size % 2 != 0:
        raise ValueError("point list must have an even number of coordinates")
    return pts.reshape(-1, 2)


def flatten_points(points):
    return [float(v) for v in np.asarray(points, dtype=np.float64).reshape(-1)]


class TransformPipeline:
    def __init__(self, scene):
        self.scene = scene

    def map_point(self, point, source_id, target_id):
        """
        Maps a point from the local space of one node into another's.

        Returns None if either node no longer exists.
        """
        source = self.scene.find(source_id)
        target = self.scene.find(target_id)
        if source is None or target is None:
            return None
        transform = target.absolute_transform().invert()
        transform = transform.multiply(source.absolute_transform())
        return transform.point(point)

    def stage_to_screen(self, point):
        return self.scene.stage.absolute_transform().point(point)

    def screen_to_local(self, point, node_id):
        node = self.scene.find(node_id)
        if node is None:
            return None
        return node.absolute_transform().invert().point(point)

    def stage_to_local_transform(self, node_id):
        """The combined stage -> node-local transform, or None."""
        node = self.scene.find(node_id)
        if node is None:
            return None
        inverse = node.absolute_transform().invert()
        return inverse.multiply(self.scene.stage.absolute_transform())

    def stage_to_local(self, points, node_id):
        """
        Maps a stroke from stage space into the local space of a node.

        Args:
            points: The stroke as (x, y) pairs or a flat list.
            node_id (str): The target node.

        Returns:
            numpy.ndarray: (N, 2) local points, or None if the node is gone.
        """
        transform = self.stage_to_local_transform(node_id)
        if transform is None:
            logger.debug(f"Node {node_id} not found, stroke not mapped")
            return None
        return transform.points(pair_points(points))

    @staticmethod
    def local_to_native(point, display_size, native_size):
        """Scales a node-local point into the pixel grid of the decoded asset."""
        ratio_x = native_size[0] / display_size[0]
        ratio_y = native_size[1] / display_size[1]
        return (point[0] * ratio_x, point[1] * ratio_y)
