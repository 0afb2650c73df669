"""
Core module for the voxel sandbox: world, physics, input and sync protocol
"""

from .world import VoxelWorld, AABB, Block, BlockKind, RayHit
from .terrain import HeightmapField, PerlinNoise2D, generate, terrain_color, build_terrain
from .physics import CollisionEngine, PlayerState
from .input import PlayerController, InputFlags
from .state import Game, RemotePlayer
from .protocol import InvalidState
from .vector import Vec3

__all__ = [
    'VoxelWorld', 'AABB', 'Block', 'BlockKind', 'RayHit',
    'HeightmapField', 'PerlinNoise2D', 'generate', 'terrain_color', 'build_terrain',
    'CollisionEngine', 'PlayerState',
    'PlayerController', 'InputFlags',
    'Game', 'RemotePlayer',
    'InvalidState',
    'Vec3',
]
