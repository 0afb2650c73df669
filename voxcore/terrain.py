"""
地形生成

- HeightmapField: 不可变的二维高度场
- PerlinNoise2D: noise.pnoise2 的种子化包装，默认噪声源
- generate: 由噪声函数生成高度场
- terrain_color: 高度到颜色的五段映射
- build_terrain: 把高度场写入 VoxelWorld
"""

from dataclasses import dataclass
from typing import Callable, Tuple
import math

import noise

from .world import BlockKind, VoxelWorld

NoiseFn = Callable[[float, float], float]

NOISE_FREQUENCY = 50.0

# pnoise2 的置换表只有 256 项，base 需落在其中
NOISE_BASES = 256

# 颜色分段：(上界, 颜色)，高度 < 上界时使用该颜色
WATER = 0x1E90FF
SAND = 0xC2B280
GRASS = 0x228B22
STONE = 0x808080
SNOW = 0xFFFFFF

COLOR_BANDS: Tuple[Tuple[int, int], ...] = (
    (1, WATER),
    (2, SAND),
    (3, GRASS),
    (4, STONE),
)


@dataclass(frozen=True)
class HeightmapField:
    """
    高度场

    属性:
        width (int): X 方向尺寸
        depth (int): Z 方向尺寸
        heights (Tuple[Tuple[int, ...], ...]):
            heights[x][z] 为该列的整数高度。
    """
    width: int
    depth: int
    heights: Tuple[Tuple[int, ...], ...]

    def height_at(self, x: int, z: int) -> int:
        if not (0 <= x < self.width and 0 <= z < self.depth):
            raise IndexError(f"({x}, {z}) outside {self.width}x{self.depth} heightmap")
        return self.heights[x][z]


class PerlinNoise2D:
    """
    二维 Perlin 噪声

    相同种子、相同坐标得到相同结果，输出约在 [-1, 1]。

    属性:
        base (int): 传给 pnoise2 的置换表偏移，由种子取模得到
        octaves (int): 叠加倍频数
    """

    def __init__(self, seed: int = 0, octaves: int = 1):
        self.base = seed % NOISE_BASES
        self.octaves = octaves

    def __call__(self, x: float, z: float) -> float:
        return noise.pnoise2(
            x, z,
            octaves=self.octaves,
            repeatx=1024,
            repeaty=1024,
            base=self.base,
        )


def generate(width: int, depth: int, noise_fn: NoiseFn,
             world_height: int = 5, frequency: float = NOISE_FREQUENCY) -> HeightmapField:
    """
    生成高度场

    height = floor(((noise(x / frequency, z / frequency) + 1) / 2) * world_height)

    Args:
        width: X 方向尺寸
        depth: Z 方向尺寸
        noise_fn: 输出 [-1, 1] 的二维噪声函数
        world_height: 最大高度缩放
        frequency: 坐标缩放除数

    Returns:
        HeightmapField
    """
    if width < 0 or depth < 0:
        raise ValueError("heightmap dimensions must be non-negative")

    heights = tuple(
        tuple(
            int(math.floor(((noise_fn(x / frequency, z / frequency) + 1) / 2) * world_height))
            for z in range(depth)
        )
        for x in range(width)
    )
    return HeightmapField(width=width, depth=depth, heights=heights)


def terrain_color(height: int) -> int:
    """水 <1，沙 <2，草 <3，石 <4，雪 >=4"""
    for upper, color in COLOR_BANDS:
        if height < upper:
            return color
    return SNOW


def build_terrain(world: VoxelWorld, field: HeightmapField, fill: bool = False) -> int:
    """
    按高度场放置地形方块

    Args:
        world: 目标世界
        field: 高度场
        fill: True 时填满整列（0..height），否则只放表层方块

    Returns:
        放置的方块数量
    """
    placed = 0
    for x in range(field.width):
        for z in range(field.depth):
            h = field.heights[x][z]
            bottom = 0 if fill else h
            for y in range(min(bottom, h), h + 1):
                if world.place(x, y, z, terrain_color(y if fill else h), kind=BlockKind.TERRAIN):
                    placed += 1
    return placed
