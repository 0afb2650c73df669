"""
体素世界

本模块提供体素世界模型和碰撞查询：
- AABB: 轴对齐包围盒
- Block: 方块描述（颜色和类型）
- VoxelWorld: 以整数坐标为键的方块索引，支持放置/移除、AABB 查询和射线拾取

方块是以整数坐标为中心的单位立方体，覆盖 [c - 0.5, c + 0.5]。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple
import math

from .vector import Vec3

Cell = Tuple[int, int, int]

FACE_NORMALS: Tuple[Cell, ...] = (
    (1, 0, 0),
    (-1, 0, 0),
    (0, 1, 0),
    (0, -1, 0),
    (0, 0, 1),
    (0, 0, -1),
)


def round_coord(v: float) -> int:
    """就近取整（.5 向正方向）"""
    return int(math.floor(v + 0.5))


@dataclass(frozen=True)
class AABB:
    """
    轴对齐包围盒

    属性:
        min (Vec3): 最小角
        max (Vec3): 最大角
    """
    min: Vec3
    max: Vec3

    @classmethod
    def from_center(cls, center: Vec3, half_extent: Vec3) -> 'AABB':
        return cls(center - half_extent, center + half_extent)

    @classmethod
    def of_cell(cls, x: int, y: int, z: int) -> 'AABB':
        """单位方块的包围盒"""
        return cls(Vec3(x - 0.5, y - 0.5, z - 0.5), Vec3(x + 0.5, y + 0.5, z + 0.5))

    def overlaps(self, other: 'AABB') -> bool:
        """
        重叠检测

        使用严格不等式，仅接触表面不算重叠。
        """
        return (self.min.x < other.max.x and self.max.x > other.min.x and
                self.min.y < other.max.y and self.max.y > other.min.y and
                self.min.z < other.max.z and self.max.z > other.min.z)


class BlockKind(Enum):
    """方块来源"""
    TERRAIN = 'terrain'
    PLACED = 'placed'


@dataclass(frozen=True)
class Block:
    """
    方块描述

    属性:
        color (int): 0xRRGGBB 颜色
        kind (BlockKind): 地形生成还是玩家放置
    """
    color: int
    kind: BlockKind = BlockKind.PLACED


@dataclass(frozen=True)
class RayHit:
    """
    射线命中结果

    属性:
        cell: 命中的方块坐标
        face: 命中面的法线（射线起点在方块内部时为 (0, 0, 0)）
        point: 命中点
        distance: 沿射线的距离
    """
    cell: Cell
    face: Cell
    point: Vec3
    distance: float


class VoxelWorld:
    """
    体素世界

    以整数坐标 (x, y, z) 为键的方块字典。每个坐标至多一个方块，
    坐标存在当且仅当该格被占据。碰撞查询只遍历查询盒附近的候选格，
    不扫描全部方块。

    属性:
        blocks (Dict[Cell, Block]):
            所有方块。
            键为方块坐标，值为 Block。
    """

    def __init__(self):
        """初始化空世界"""
        self.blocks: Dict[Cell, Block] = {}

    def __len__(self) -> int:
        return len(self.blocks)

    def __contains__(self, cell: Cell) -> bool:
        return cell in self.blocks

    @staticmethod
    def cell_of(point: Vec3) -> Cell:
        """点所在的方块坐标"""
        return (round_coord(point.x), round_coord(point.y), round_coord(point.z))

    def get(self, x: int, y: int, z: int) -> Optional[Block]:
        return self.blocks.get((x, y, z))

    def is_occupied(self, x: int, y: int, z: int) -> bool:
        return (x, y, z) in self.blocks

    def cells(self) -> Iterator[Tuple[Cell, Block]]:
        return iter(self.blocks.items())

    def place(self, x: float, y: float, z: float, color: int,
              avoid: Optional[AABB] = None,
              kind: BlockKind = BlockKind.PLACED) -> bool:
        """
        放置方块

        坐标先就近取整。目标格已被占据，或方块会与 avoid（通常是玩家
        当前包围盒）重叠时不做任何修改。

        Args:
            x, y, z: 目标坐标
            color: 方块颜色
            avoid: 不允许重叠的包围盒
            kind: 方块来源

        Returns:
            True 如果放置成功
        """
        if not all(math.isfinite(v) for v in (x, y, z)):
            return False
        cell = (round_coord(x), round_coord(y), round_coord(z))
        if cell in self.blocks:
            return False
        if avoid is not None and AABB.of_cell(*cell).overlaps(avoid):
            return False
        self.blocks[cell] = Block(color=color, kind=kind)
        return True

    def remove(self, x: float, y: float, z: float) -> bool:
        """
        移除方块

        Returns:
            True 如果该坐标原本有方块
        """
        if not all(math.isfinite(v) for v in (x, y, z)):
            return False
        cell = (round_coord(x), round_coord(y), round_coord(z))
        if cell not in self.blocks:
            return False
        del self.blocks[cell]
        return True

    def intersects_aabb(self, box_min: Vec3, box_max: Vec3) -> bool:
        """
        包围盒与任意方块是否重叠

        只检查与查询盒可能重叠的候选格。

        Args:
            box_min: 查询盒最小角
            box_max: 查询盒最大角

        Returns:
            True 如果有重叠
        """
        # 非有限角点没有可检查的候选格
        if not (box_min.is_finite() and box_max.is_finite()):
            return False
        query = AABB(box_min, box_max)
        for x in range(round_coord(box_min.x), round_coord(box_max.x) + 1):
            for y in range(round_coord(box_min.y), round_coord(box_max.y) + 1):
                for z in range(round_coord(box_min.z), round_coord(box_max.z) + 1):
                    if (x, y, z) in self.blocks and AABB.of_cell(x, y, z).overlaps(query):
                        return True
        return False

    def raycast_first(self, origin: Vec3, direction: Vec3,
                      max_distance: float = 8.0) -> Optional[RayHit]:
        """
        射线拾取第一个方块

        体素遍历（Amanatides & Woo），按到达顺序逐格前进，
        因此返回的一定是沿射线最近的命中。

        Args:
            origin: 射线起点
            direction: 射线方向（无需归一化）
            max_distance: 最大检测距离

        Returns:
            RayHit，未命中返回 None
        """
        if not (origin.is_finite() and direction.is_finite() and math.isfinite(max_distance)):
            return None
        d = direction.normalized()
        if d.length() == 0:
            return None

        # 平移半格，使方块 c 覆盖 [c, c+1)
        o = (origin.x + 0.5, origin.y + 0.5, origin.z + 0.5)
        dv = (d.x, d.y, d.z)
        cell = [int(math.floor(v)) for v in o]
        step = [0, 0, 0]
        t_max = [math.inf, math.inf, math.inf]
        t_delta = [math.inf, math.inf, math.inf]

        for axis in range(3):
            if dv[axis] > 0:
                step[axis] = 1
                t_max[axis] = (cell[axis] + 1 - o[axis]) / dv[axis]
                t_delta[axis] = 1.0 / dv[axis]
            elif dv[axis] < 0:
                step[axis] = -1
                t_max[axis] = (o[axis] - cell[axis]) / -dv[axis]
                t_delta[axis] = -1.0 / dv[axis]

        if tuple(cell) in self.blocks:
            return RayHit(tuple(cell), (0, 0, 0), origin.copy(), 0.0)

        while True:
            axis = min(range(3), key=lambda a: t_max[a])
            t = t_max[axis]
            if t > max_distance:
                return None
            cell[axis] += step[axis]
            key = (cell[0], cell[1], cell[2])
            if key in self.blocks:
                face = [0, 0, 0]
                face[axis] = -step[axis]
                return RayHit(key, tuple(face), origin + d * t, t)
            t_max[axis] += t_delta[axis]

    @staticmethod
    def placement_target(hit: RayHit) -> Cell:
        """命中面外侧相邻的格子，用于放置方块"""
        return (hit.cell[0] + hit.face[0],
                hit.cell[1] + hit.face[1],
                hit.cell[2] + hit.face[2])

    def snapshot(self) -> Dict[Cell, int]:
        """
        渲染层使用的快照

        Returns:
            坐标到颜色的字典副本
        """
        return {cell: block.color for cell, block in self.blocks.items()}
