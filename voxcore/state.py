"""
游戏上下文

本模块把原本散落的全局状态收拢为显式对象：
- RemotePlayer: 远程玩家的最新姿态（只由网络快照修改）
- Game: 持有体素世界、本地玩家控制器和远程玩家快照，驱动每个 tick
"""

from dataclasses import dataclass
from typing import List, Optional

from .config import Config, get_config
from .input import PlayerController
from .physics import PlayerState
from .terrain import HeightmapField, NoiseFn, PerlinNoise2D, build_terrain, generate
from .vector import Vec3
from .world import VoxelWorld


@dataclass
class RemotePlayer:
    """
    远程玩家姿态

    属性:
        position (Vec3): 位置
        rotation (Vec3): 欧拉角（x = pitch，y = yaw）
    """
    position: Vec3
    rotation: Vec3

    def to_dict(self) -> dict:
        return {'position': self.position.to_dict(), 'rotation': self.rotation.to_dict()}


class Game:
    """
    游戏上下文

    远程快照通过 apply_remote_snapshot() 整体替换一个“待应用”值，
    在下一个 tick 开始时才生效，网络接收不会阻塞物理 tick。

    属性:
        world (VoxelWorld):
            体素世界。

        controller (PlayerController):
            本地玩家控制器，PlayerState 的唯一修改者。

        remote_players (List[RemotePlayer]):
            当前 tick 使用的远程玩家列表。

        heightmap (Optional[HeightmapField]):
            生成世界时使用的高度场。

        tick_count (int):
            已推进的 tick 数。
    """

    def __init__(self, world: Optional[VoxelWorld] = None,
                 controller: Optional[PlayerController] = None,
                 config: Optional[Config] = None):
        self.config = config or get_config()
        self.world = world or VoxelWorld()
        self.controller = controller or PlayerController(
            physics=self.config.physics,
            input_config=self.config.input,
        )
        self.remote_players: List[RemotePlayer] = []
        self.heightmap: Optional[HeightmapField] = None
        self.tick_count = 0
        self._pending_remote: Optional[List[RemotePlayer]] = None

    @classmethod
    def create(cls, config: Optional[Config] = None,
               noise_fn: Optional[NoiseFn] = None) -> 'Game':
        """
        生成地形并在世界中心上方放置玩家

        Args:
            config: 配置，默认全局配置
            noise_fn: 噪声函数，默认 PerlinNoise2D(world.seed)

        Returns:
            Game 实例
        """
        config = config or get_config()
        wc = config.world
        game = cls(config=config)

        noise = noise_fn or PerlinNoise2D(wc.seed)
        game.heightmap = generate(wc.width, wc.depth, noise, wc.world_height, wc.noise_frequency)
        build_terrain(game.world, game.heightmap, fill=wc.fill_columns)

        cx, cz = wc.width // 2, wc.depth // 2
        ground = game.heightmap.height_at(cx, cz) if wc.width and wc.depth else 0
        half_y = config.physics.player_half_extent[1]
        spawn_y = max(config.physics.floor_y, ground + 0.5 + half_y)
        game.player.position = Vec3(float(cx), spawn_y, float(cz))
        return game

    @property
    def player(self) -> PlayerState:
        return self.controller.state

    def apply_remote_snapshot(self, players: List[RemotePlayer]):
        """替换待应用的远程快照（下个 tick 生效）"""
        self._pending_remote = list(players)

    def tick(self):
        """推进一个 tick：先应用最新远程快照，再推进本地物理"""
        if self._pending_remote is not None:
            self.remote_players = self._pending_remote
            self._pending_remote = None

        self.controller.tick(self.world)
        self.tick_count += 1

    def snapshot(self) -> dict:
        """
        渲染层使用的世界快照

        Returns:
            包含方块、本地玩家姿态和远程玩家的字典
        """
        position, rotation = self.player.pose()
        return {
            'tick': self.tick_count,
            'blocks': self.world.snapshot(),
            'player': {'position': position.to_dict(), 'rotation': rotation.to_dict()},
            'remote_players': [p.to_dict() for p in self.remote_players],
        }
